#!/usr/bin/env python3
"""Shared model and helpers for the ScrapBook index rebuilder.

Everything the pipeline stages pass between each other lives here:
  - Item: one metadata entry of tree/meta.js (fixed shape, transient subset)
  - InputFile: one raw input file (path relative to the collection root)
  - Reporter: per-run accumulator of (level, message) log records
  - Timestamp ids: 17-digit UTC ids and 14-digit legacy local-time ids
  - URL / filename helpers shared by the synthesizer and the favicon cache

No stage keeps module-level state; the reporter and the clock are always
passed in by the caller.
"""

from __future__ import annotations

import hashlib
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from urllib.parse import unquote

# ─── Constants ──────────────────────────────────────────────────────────────

ROOT_ID = "root"
HIDDEN_ID = "hidden"
RESERVED_IDS = (ROOT_ID, HIDDEN_ID)

# Types that do not need data files under data/
CONTAINER_TYPES = ("folder", "separator", "bookmark")

DATA_PREFIX = "data/"
TREE_PREFIX = "tree/"
BACKUP_PREFIX = "tree.bak/"
FAVICON_PREFIX = "tree/favicon/"
LEGACY_RDF_PATH = "scrapbook.rdf"

ID_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})(\d{3})$")
LEGACY_ID_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})$")

DEFAULT_PREVIEW_LENGTH = 256


# ─── Reporter ───────────────────────────────────────────────────────────────

@dataclass
class LogRecord:
    """One reported line."""
    level: str                    # "info" or "error"
    message: str


class Reporter:
    """Collects log records for one indexing run.

    Informational lines are echoed to stdout, errors to stderr with an
    ``ERROR:`` prefix, unless ``echo`` is False. ``quiet`` keeps the echo
    for errors only.
    """

    def __init__(self, echo: bool = True, preview_length: int = DEFAULT_PREVIEW_LENGTH,
                 quiet: bool = False):
        self.echo = echo
        self.quiet = quiet
        self.preview_length = preview_length
        self.records: list[LogRecord] = []

    def info(self, msg: str) -> None:
        self.records.append(LogRecord("info", msg))
        if self.echo and not self.quiet:
            print(msg)

    def error(self, msg: str) -> None:
        self.records.append(LogRecord("error", msg))
        if self.echo:
            print(f"ERROR: {msg}", file=sys.stderr)

    def crop(self, text: str) -> str:
        return crop(text, self.preview_length)

    def infos(self) -> list[str]:
        return [r.message for r in self.records if r.level == "info"]

    def errors(self) -> list[str]:
        return [r.message for r in self.records if r.level == "error"]

    @property
    def has_errors(self) -> bool:
        return any(r.level == "error" for r in self.records)


# ─── Item record ────────────────────────────────────────────────────────────

# Emission order of tree/meta.js entries
ITEM_FIELDS = (
    "index", "title", "type", "create", "modify", "source", "icon", "comment",
    "charset", "locked", "marked",
)
TRANSIENT_FIELDS = ("id", "folder", "exported")


@dataclass
class Item:
    """One metadata entry.

    ``id``, ``folder`` and ``exported`` are only meaningful while the index is
    being rebuilt and are never written to tree/meta.js. ``extra`` keeps keys
    this tool does not know about so that they survive a rebuild.
    """
    index: Optional[str] = None
    title: Optional[str] = None
    type: Optional[str] = None
    create: Optional[str] = None
    modify: Optional[str] = None
    source: Optional[str] = None
    icon: Optional[str] = None
    comment: Optional[str] = None
    charset: Optional[str] = None
    locked: Any = None
    marked: Any = None
    # transient
    id: Optional[str] = None
    folder: Optional[str] = None
    exported: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Item":
        item = cls()
        item.merge(data)
        return item

    def merge(self, data: dict) -> "Item":
        """Shallow merge: every key present in ``data`` overwrites."""
        for key, value in data.items():
            if key in ITEM_FIELDS or key in TRANSIENT_FIELDS:
                setattr(self, key, value)
            else:
                self.extra[key] = value
        return self

    def strip_transient(self) -> None:
        self.id = None
        self.folder = None
        self.exported = None

    def to_dict(self) -> dict:
        out = {}
        for key in ITEM_FIELDS:
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        for key, value in self.extra.items():
            if key not in out and value is not None:
                out[key] = value
        return out

    @property
    def needs_data(self) -> bool:
        return self.type not in CONTAINER_TYPES


# ─── Input files ────────────────────────────────────────────────────────────

class InputFile:
    """A raw input file: collection-relative path, mtime, lazy bytes."""

    def __init__(self, path: str, last_modified: datetime,
                 loader: Callable[[], bytes], size: Optional[int] = None):
        self.path = path
        self.last_modified = last_modified
        self._loader = loader
        self._size = size
        self._data: Optional[bytes] = None

    @classmethod
    def from_bytes(cls, path: str, data: bytes,
                   last_modified: Optional[datetime] = None) -> "InputFile":
        if last_modified is None:
            last_modified = datetime.now(timezone.utc)
        return cls(path, last_modified, lambda: data, len(data))

    def read(self) -> bytes:
        if self._data is None:
            self._data = self._loader()
        return self._data

    @property
    def size(self) -> int:
        """Byte length, from the directory entry when known."""
        if self._size is None:
            self._size = len(self.read())
        return self._size

    def __repr__(self):
        return f"InputFile({self.path!r})"


# ─── Output files ───────────────────────────────────────────────────────────

@dataclass
class OutputFile:
    data: bytes
    timestamp: datetime


class OutputSet:
    """Files staged for emission, keyed by collection-relative path."""

    def __init__(self):
        self._files: dict[str, OutputFile] = {}

    def add(self, path: str, data, timestamp: Optional[datetime] = None) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._files[path] = OutputFile(data, timestamp or utc_now())

    def remove(self, path: str) -> None:
        self._files.pop(path, None)

    def get(self, path: str) -> Optional[OutputFile]:
        return self._files.get(path)

    def paths(self) -> list[str]:
        return list(self._files)

    def items(self):
        return self._files.items()

    @property
    def has_files(self) -> bool:
        return bool(self._files)

    def __contains__(self, path: str) -> bool:
        return path in self._files

    def __len__(self) -> int:
        return len(self._files)


# ─── Timestamp ids ──────────────────────────────────────────────────────────

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def date_to_id(dt: Optional[datetime] = None) -> str:
    """Aware datetime → 17-digit UTC id (YYYYMMDDHHMMSSmmm)."""
    if dt is None:
        dt = utc_now()
    if dt.tzinfo is None:
        dt = dt.astimezone()
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y%m%d%H%M%S") + f"{dt.microsecond // 1000:03d}"


def id_to_date(id_str: str) -> Optional[datetime]:
    """17-digit UTC id → aware datetime, or None if not an id."""
    m = ID_PATTERN.match(id_str or "")
    if not m:
        return None
    y, mo, d, h, mi, s, ms = (int(g) for g in m.groups())
    try:
        return datetime(y, mo, d, h, mi, s, ms * 1000, tzinfo=timezone.utc)
    except ValueError:
        return None


def legacy_id_to_date(id_str: str) -> Optional[datetime]:
    """14-digit legacy id (local wall-clock time) → aware datetime."""
    m = LEGACY_ID_PATTERN.match(id_str or "")
    if not m:
        return None
    y, mo, d, h, mi, s = (int(g) for g in m.groups())
    try:
        return datetime(y, mo, d, h, mi, s).astimezone(timezone.utc)
    except ValueError:
        return None


def legacy_id_to_id(id_str: str) -> str:
    """Convert a legacy timestamp to a canonical one ("" if unparseable)."""
    dt = legacy_id_to_date(id_str)
    return date_to_id(dt) if dt else ""


def get_unique_id(id_str: str, taken) -> str:
    """Return ``id_str``, or the next free id one millisecond at a time."""
    if id_str not in taken:
        return id_str
    dt = id_to_date(id_str)
    if dt is None:
        raise ValueError(f"Cannot derive a unique id from '{id_str}'")
    while id_str in taken:
        dt += timedelta(milliseconds=1)
        id_str = date_to_id(dt)
    return id_str


# ─── URL / filename helpers ─────────────────────────────────────────────────

def crop(text: str, max_length: int = DEFAULT_PREVIEW_LENGTH) -> str:
    if text is None:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


def url_to_filename(url: str) -> str:
    """Last path segment of a URL, query and fragment removed, percent-decoded."""
    name = url.split("?", 1)[0].split("#", 1)[0]
    name = name.rsplit("/", 1)[-1]
    return unquote(name)


def filename_parts(filename: str) -> tuple[str, str]:
    """("base", "ext") split at the last dot; ext has no dot."""
    pos = filename.rfind(".")
    if pos <= 0:
        return filename, ""
    return filename[:pos], filename[pos + 1:]


def sha1_bytes(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
