#!/usr/bin/env python3
"""Content-addressed favicon cache under tree/favicon/.

Every item icon that is an absolute URL or a data URI is resolved to bytes,
stored as tree/favicon/<sha1><.ext>, and the item's icon is rewritten to a
path relative to its index file. Each distinct source is resolved at most
once per run; failures are remembered too, so a dead URL is tried only once.
"""

from __future__ import annotations

import base64
import binascii
import mimetypes
import re
from dataclasses import dataclass
from email.message import Message
from typing import Callable, Optional, Union
from urllib.parse import unquote_to_bytes

import httpx

from indexer_lib import (
    FAVICON_PREFIX,
    Item,
    OutputSet,
    Reporter,
    filename_parts,
    sha1_bytes,
    url_to_filename,
    utc_now,
)

DEFAULT_FETCH_TIMEOUT = 5.0
GENERIC_BINARY_TYPE = "application/octet-stream"

DATA_URI_RE = re.compile(r"^data:([^,]*),(.*)\Z", re.S)
FAVICON_REF_RE = re.compile(r"^(?:\.\./){1,2}(tree/favicon/.*)$")


class FaviconError(Exception):
    """An icon source that could not be turned into cacheable bytes."""


@dataclass
class FetchedIcon:
    """What the network fetch tells us about one icon URL."""
    data: bytes
    url: str                            # final URL after redirects
    content_type: Optional[str] = None
    filename: Optional[str] = None      # from Content-Disposition


@dataclass
class CachedFavicon:
    name: str
    data: bytes

    @property
    def path(self) -> str:
        return FAVICON_PREFIX + self.name


# ─── Header / URI parsing ───────────────────────────────────────────────────

def parse_data_uri(uri: str) -> tuple[bytes, str]:
    """Decode a data: URI into (bytes, mime type)."""
    m = DATA_URI_RE.match(uri)
    if not m:
        raise FaviconError("Malformed data URI.")
    params = m.group(1).split(";")
    mime = params[0].strip().lower() or "text/plain"
    payload = m.group(2)
    if any(p.strip().lower() == "base64" for p in params[1:]):
        try:
            return base64.b64decode(unquote_to_bytes(payload), validate=False), mime
        except binascii.Error as e:
            raise FaviconError(f"Bad base64 data: {e}") from e
    return unquote_to_bytes(payload), mime


def parse_content_disposition_filename(header: Optional[str]) -> Optional[str]:
    """Filename parameter of a Content-Disposition header (RFC 2231 aware)."""
    if not header:
        return None
    msg = Message()
    msg["Content-Disposition"] = header
    return msg.get_filename()


def parse_content_type(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    return header.split(";", 1)[0].strip().lower() or None


def extension_for(filename: str, mime: str) -> str:
    """".ext" from the filename, else guessed from the mime type, else ""."""
    _, ext = filename_parts(filename or "")
    if not ext:
        guessed = mimetypes.guess_extension(mime) or ""
        ext = guessed.lstrip(".")
    return f".{ext}" if ext else ""


# ─── Fetchers ───────────────────────────────────────────────────────────────

def fetch_favicon(url: str, client: Optional[httpx.Client] = None,
                  timeout: float = DEFAULT_FETCH_TIMEOUT) -> FetchedIcon:
    """GET ``url`` following redirects. Raises FaviconError on any failure."""
    try:
        if client is not None:
            resp = client.get(url, timeout=timeout, follow_redirects=True)
        else:
            resp = httpx.get(url, timeout=timeout, follow_redirects=True)
        resp.raise_for_status()
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise FaviconError(f"Unable to fetch URL: {e}") from e
    return FetchedIcon(
        data=resp.content,
        url=str(resp.url),
        content_type=parse_content_type(resp.headers.get("content-type")),
        filename=parse_content_disposition_filename(resp.headers.get("content-disposition")),
    )


def make_http_fetcher(timeout: float = DEFAULT_FETCH_TIMEOUT,
                      client: Optional[httpx.Client] = None) -> Callable[[str], FetchedIcon]:
    def fetch(url: str) -> FetchedIcon:
        return fetch_favicon(url, client, timeout)
    return fetch


def offline_fetcher(url: str) -> FetchedIcon:
    raise FaviconError("Unable to fetch URL: network access is disabled.")


# ─── Cache ──────────────────────────────────────────────────────────────────

class FaviconCache:
    """Resolves icons for one run and stages new cache files in ``outputs``."""

    def __init__(self, previous_files: dict, outputs: OutputSet, reporter: Reporter,
                 fetcher: Callable[[str], FetchedIcon] = offline_fetcher,
                 clock: Callable = utc_now):
        self.previous_files = previous_files
        self.outputs = outputs
        self.reporter = reporter
        self.fetcher = fetcher
        self.clock = clock
        self.memo: dict[str, Union[CachedFavicon, FaviconError]] = {}

    def _load(self, url: str) -> CachedFavicon:
        if url.startswith("data:"):
            data, mime = parse_data_uri(url)
            return CachedFavicon(sha1_bytes(data) + extension_for("", mime), data)

        fetched = self.fetcher(url)
        mime = fetched.content_type or GENERIC_BINARY_TYPE
        if not mime.startswith("image/") and mime != GENERIC_BINARY_TYPE:
            raise FaviconError(f"Invalid image mimetype '{mime}'.")
        ext = extension_for(fetched.filename or url_to_filename(fetched.url), mime)
        return CachedFavicon(sha1_bytes(fetched.data) + ext, fetched.data)

    def resolve(self, url: str) -> CachedFavicon:
        """Resolve ``url`` once; later calls replay the result or the error."""
        if url not in self.memo:
            try:
                self.memo[url] = self._load(url)
            except FaviconError as e:
                self.memo[url] = e
        result = self.memo[url]
        if isinstance(result, FaviconError):
            raise result
        return result

    def cache_item_icons(self, meta: dict[str, Item]) -> None:
        self.reporter.info("Inspecting favicons...")
        for item_id, item in meta.items():
            icon = item.icon
            if not icon or ":" not in icon:
                continue
            preview = self.reporter.crop(icon)
            try:
                cached = self.resolve(icon)
            except FaviconError as e:
                self.reporter.error(f"Removed invalid favicon '{preview}' for '{item_id}': {e}")
                item.icon = ""
                continue

            prev = self.previous_files.get(cached.path)
            if prev is None or prev.size == 0:
                self.outputs.add(cached.path, cached.data, self.clock())
                self.reporter.info(f"Saved favicon '{preview}' for '{item_id}' at '{cached.path}'.")
            else:
                self.reporter.info(f"Use saved favicon for '{preview}' for '{item_id}' at '{cached.path}'.")

            up = "../" if "/" in (item.index or "") else ""
            item.icon = f"{up}../{cached.path}"

    def sweep(self, meta: dict[str, Item]) -> None:
        """Report dangling favicon references, blank out unused cache files."""
        referred = set()
        for item_id, item in meta.items():
            m = FAVICON_REF_RE.match(item.icon or "")
            if not m:
                continue
            path = m.group(1)
            referred.add(path)
            if path not in self.previous_files and path not in self.outputs:
                self.reporter.error(f"Missing favicon: '{path}' (used by '{item_id}')")

        for path in sorted(self.previous_files):
            if not path.startswith(FAVICON_PREFIX) or path in referred:
                continue
            if self.previous_files[path].size == 0:
                self.reporter.info(f"Skipped emptied favicon '{path}'.")
                continue
            self.reporter.error(f"Unused favicon: '{path}'")
            self.outputs.add(path, b"", self.clock())
