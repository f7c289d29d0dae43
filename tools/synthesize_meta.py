#!/usr/bin/env python3
"""Synthesize metadata for items that only exist as files under data/.

For every item id with data files but no metadata entry (sorted order):

  1. legacy data/<id>/index.dat is imported when the item has no index file
     or its index is the folder form <id>/index.html
  2. the index file is probed in a fixed order of candidates
  3. "modify" is raised to the index file's last-modified time
  4. unless index.dat supplied the metadata, the index document is opened
     (directly, or from inside a .htz / .maff archive) and data-scrapbook-*
     attributes, <title> and the favicon are read from it

Failures are reported per item and never end the run.
"""

from __future__ import annotations

import base64
import io
import json
import mimetypes
import posixpath
import re
import xml.etree.ElementTree as ET
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Optional

from bs4 import BeautifulSoup

from indexer_lib import InputFile, Item, Reporter, date_to_id
from legacy_import import merge_legacy_meta, parse_index_dat, parse_legacy_date

INDEX_SUFFIXES = (
    "/index.html", ".html", ".htm", ".xhtml", ".xht",
    ".maff", ".htz", ".mht", ".epub",
)
HTML_SUFFIXES = ("/index.html", ".html", ".htm", ".xhtml", ".xht")

MAF_NS = "http://maf.mozdev.org/metadata/rdf#"
RDF_NS = "http://www.w3.org/1999/02/22-rdf-syntax-ns#"
MAF_FIELDS = ("originalurl", "title", "archivetime", "indexfilename")

# what zipfile raises for damaged or unsupported members
ZIP_READ_ERRORS = (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError, EOFError)

# data-scrapbook-* attributes copied onto the item when present
DOCUMENT_ATTRS = ("id", "type", "source", "title", "create", "comment", "folder", "exported")

# data URI placeholder written by single-file HTML captures
RESOURCE_MARKER_RE = re.compile(r"\bdata:([^,]+);scrapbook-resource=(\d+),(#[^'\")\s]+)?")
PAGELOADER_DATA_RE = re.compile(r"\([\n\r]+(.+)[\n\r]+\);\Z")


class IndexLoadError(Exception):
    """An item's index file could not be opened or interpreted."""


# ─── Archive containers ─────────────────────────────────────────────────────

class ArchiveFolder:
    """A folder inside a zip-based index file (.htz or .maff)."""

    def __init__(self, zf: zipfile.ZipFile, root: str = ""):
        self.zf = zf
        self.root = root

    def names(self) -> list[str]:
        return [n[len(self.root):] for n in self.zf.namelist()
                if n.startswith(self.root) and not n.endswith("/")]

    def has(self, name: str) -> bool:
        try:
            self.zf.getinfo(self.root + name)
        except KeyError:
            return False
        return True

    def read(self, name: str) -> bytes:
        name = posixpath.normpath(name).lstrip("/")
        try:
            return self.zf.read(self.root + name)
        except KeyError as e:
            raise IndexLoadError(f"'{name}' not found in archive") from e
        except ZIP_READ_ERRORS as e:
            raise IndexLoadError(f"Unable to read '{name}' from archive: {e}") from e


@dataclass
class IndexDocument:
    """A parsed index document and, for archived indexes, its container."""
    soup: BeautifulSoup
    container: Optional[ArchiveFolder] = None
    archive_meta: dict = field(default_factory=dict)


# ─── Index probing and loading ──────────────────────────────────────────────

def get_index_path(item_files: dict, item_id: str) -> Optional[str]:
    """First existing index candidate for ``item_id``, or None."""
    for suffix in INDEX_SUFFIXES:
        candidate = item_id + suffix
        if candidate in item_files:
            return candidate
    return None


def parse_html(data: bytes) -> BeautifulSoup:
    return BeautifulSoup(data, "html.parser")


def parse_maff_rdf(data: bytes) -> dict:
    """Read the MAF descriptor (index.rdf) of a .maff archive folder."""
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise IndexLoadError(f"Bad index.rdf: {e}") from e
    result = {}
    for name in MAF_FIELDS:
        elem = root.find(f".//{{{MAF_NS}}}{name}")
        if elem is not None:
            result[name] = elem.get(f"{{{RDF_NS}}}resource")
    return result


def _open_zip(f: InputFile) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(f.read()))
    except ZIP_READ_ERRORS as e:
        raise IndexLoadError(f"Bad archive: {e}") from e


def load_index_document(index: str, item_files: dict) -> IndexDocument:
    """Open the document behind ``index`` (a path relative to data/)."""
    f = item_files[index]
    if index.endswith(HTML_SUFFIXES):
        return IndexDocument(parse_html(f.read()))

    if index.endswith(".htz"):
        container = ArchiveFolder(_open_zip(f))
        return IndexDocument(parse_html(container.read("index.html")), container)

    if index.endswith(".maff"):
        zf = _open_zip(f)
        names = zf.namelist()
        if not names:
            raise IndexLoadError(f"Empty archive 'data/{index}'")
        container = ArchiveFolder(zf, names[0].split("/", 1)[0] + "/")
        if container.has("index.rdf"):
            rdf_meta = parse_maff_rdf(container.read("index.rdf"))
            if not rdf_meta.get("indexfilename"):
                raise IndexLoadError("index.rdf names no index file")
            soup = parse_html(container.read(rdf_meta["indexfilename"]))
            return IndexDocument(soup, container, rdf_meta)
        for name in container.names():
            if name.startswith("index."):
                return IndexDocument(parse_html(container.read(name)), container)
        raise IndexLoadError(f"Unable to load index file 'data/{index}'")

    # .mht and .epub are recognised but not opened
    raise IndexLoadError(f"Unable to load index file 'data/{index}'")


# ─── Document inspection ────────────────────────────────────────────────────

def document_title(soup: BeautifulSoup) -> str:
    if soup.title is None:
        return ""
    return " ".join(soup.title.get_text().split())


def apply_archive_meta(item: Item, archive_meta: dict) -> None:
    if archive_meta.get("title"):
        item.title = archive_meta["title"]
    if archive_meta.get("originalurl"):
        item.source = archive_meta["originalurl"]
    if archive_meta.get("archivetime"):
        dt = parse_legacy_date(archive_meta["archivetime"])
        if dt:
            item.create = date_to_id(dt)


def apply_document_meta(item: Item, doc: IndexDocument) -> Item:
    """Copy data-scrapbook-* attributes of the root element onto ``item``."""
    html = doc.soup.find("html")
    attrs = html.attrs if html is not None else {}
    for name in DOCUMENT_ATTRS:
        key = f"data-scrapbook-{name}"
        if key in attrs:
            setattr(item, name, attrs[key])
        elif name == "title":
            item.title = document_title(doc.soup) or item.title
    return item


def resolve_resource_marker(icon: str, soup: BeautifulSoup) -> str:
    """Replace a scrapbook-resource data URI by the bytes of the page loader."""
    m = RESOURCE_MARKER_RE.search(icon)
    if not m:
        return icon
    res_type, res_id = m.group(1), m.group(2)
    loader = soup.select_one('script[data-scrapbook-elem="pageloader"]')
    if loader is None:
        raise IndexLoadError("Page loader script not found")
    d = PAGELOADER_DATA_RE.search(loader.string or "")
    if not d:
        return icon
    try:
        table = json.loads(d.group(1))
        entry = table[int(res_id)] if isinstance(table, list) else table[res_id]
        return f"data:{res_type};base64,{entry['d']}"
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise IndexLoadError(f"Bad page loader resource '{res_id}': {e}") from e


def extract_favicon(doc: IndexDocument, index: str, reporter: Reporter) -> Optional[str]:
    html = doc.soup.find("html")
    icon = html.get("data-scrapbook-icon") if html is not None else None
    if icon is None:
        link = doc.soup.select_one('link[rel~="icon"][href]')
        if link is not None:
            icon = link["href"]
    if not icon:
        return None

    if doc.container is not None:
        try:
            data = doc.container.read(icon)
        except IndexLoadError as e:
            reporter.error(f"Unable to retrieve favicon at '{icon}' for packed 'data/{index}': {e}")
            return None
        mime = mimetypes.guess_type(icon)[0] or "application/octet-stream"
        data_uri = f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"
        reporter.info(f"Retrieved favicon at '{icon}' for packed 'data/{index}' "
                      f"as '{reporter.crop(data_uri)}'")
        return data_uri

    return resolve_resource_marker(icon, doc.soup)


# ─── Per-item pass ──────────────────────────────────────────────────────────

def import_index_dat(item_id: str, files: dict, meta: dict[str, Item], reporter: Reporter) -> bool:
    dat_path = f"{item_id}/index.dat"
    dat_file = files.get(dat_path)
    if dat_file is None:
        return False
    reporter.info(f"Found 'data/{dat_path}' for legacy ScrapBook. Importing...")
    legacy = parse_index_dat(dat_file.read().decode("utf-8", errors="replace"))
    if legacy is None:
        return False
    try:
        merge_legacy_meta(meta.setdefault(item_id, Item()), legacy, item_id)
    except ValueError as e:
        reporter.error(f"Error importing 'data/{dat_path}': {e}")
        return False
    return True


def synthesize_missing_meta(meta: dict[str, Item], item_files: dict, reporter: Reporter) -> dict[str, Item]:
    reporter.info("Inspecting data files...")
    for item_id in sorted(item_files):
        if item_id in meta:
            continue
        files = item_files[item_id]
        index = get_index_path(files, item_id)

        imported = False
        if not index or index.endswith("/index.html"):
            imported = import_index_dat(item_id, files, meta, reporter)

        if not index:
            if item_id not in meta:
                reporter.error(f"Skipped 'data/{item_id}': Missing index file.")
            continue

        item = meta.setdefault(item_id, Item())
        item.index = index
        file_modify = date_to_id(files[index].last_modified)
        if file_modify > (item.modify or ""):
            item.modify = file_modify

        if imported:
            continue

        reporter.info(f"Generating metadata entry from 'data/{index}'...")
        try:
            doc = load_index_document(index, files)
            apply_archive_meta(item, doc.archive_meta)
            apply_document_meta(item, doc)
            item.icon = extract_favicon(doc, index, reporter) or item.icon
        except IndexLoadError as e:
            reporter.error(f"Error inspecting 'data/{index}': {e}")
    return meta
