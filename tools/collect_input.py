#!/usr/bin/env python3
"""Collect the raw file set of a ScrapBook collection.

Inputs are either a zip of the collection folder or the folder itself.
Every file becomes an InputFile whose path is relative to the collection
root (the folder holding data/ and tree/), then the files are partitioned:

  - scrapbook.rdf          legacy collection descriptor
  - tree/**                sidecar and navigation files of a previous run
  - data/<id>/** or
    data/<id>.<ext>        item files, grouped by <id>

A file set without any data/ path is not a collection and is rejected.
"""

from __future__ import annotations

import io
import os
import re
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from indexer_lib import (
    DATA_PREFIX,
    LEGACY_RDF_PATH,
    TREE_PREFIX,
    InputFile,
    Reporter,
)

# ─── Layout anchors for directory inputs ────────────────────────────────────
# The first path segment is the name of the picked directory. Depending on
# which directory was picked, the collection root is that directory, or its
# parent (picked data/ or tree/), or its grandparent (picked a folder inside
# data/).

RIGHT_DIR_ANCHORS = (
    re.compile(r"^[^/]+/data/"),
    re.compile(r"^[^/]+/tree/"),
)
DATA_ROOT_ANCHORS = (
    re.compile(r"^data/\d{17}[/.]"),
    re.compile(r"^data/"),
    re.compile(r"^tree/"),
)
ITEM_DIR_ANCHOR = re.compile(r"^\d{17}/")

ITEM_FILE_RE = re.compile(r"^data/(([^/]+)(?:/.+|[.][^.]+))$")


class InvalidInputError(Exception):
    """The input could not be read at all (as opposed to: not a collection)."""


@dataclass
class CollectionInput:
    """All files of one input, paths relative to the collection root."""
    name: str
    files: list[InputFile] = field(default_factory=list)

    @property
    def has_data_dir(self) -> bool:
        return any(f.path.startswith(DATA_PREFIX) for f in self.files)


@dataclass
class ClassifiedInput:
    """Result of classify_inputs."""
    legacy_rdf: Optional[InputFile]
    tree_files: dict[str, InputFile]
    item_files: dict[str, dict[str, InputFile]]


# ─── Zip input ──────────────────────────────────────────────────────────────

def _zip_entry_time(info: zipfile.ZipInfo) -> datetime:
    # Zip entries store local wall-clock time
    try:
        return datetime(*info.date_time).astimezone(timezone.utc)
    except ValueError:
        return datetime(1980, 1, 1, tzinfo=timezone.utc)


def load_zip_input(source: Union[str, Path, bytes], name: Optional[str] = None,
                   reporter: Optional[Reporter] = None) -> Optional[CollectionInput]:
    """Read a zipped collection.

    Returns None (reported) for a readable zip that is not a collection.
    Raises InvalidInputError for data that is not a zip at all.
    """
    reporter = reporter or Reporter(echo=False)
    if isinstance(source, bytes):
        raw = source
        name = name or "scrapbook"
    else:
        path = Path(source)
        raw = path.read_bytes()
        name = name or path.stem
        reporter.info(f"Got file '{path.name}'.")

    reporter.info("Extracting zip content...")
    try:
        zf = zipfile.ZipFile(io.BytesIO(raw))
        infos = zf.infolist()
    except (zipfile.BadZipFile, OSError) as e:
        raise InvalidInputError(f"Skipped invalid zip file '{name}': {e}") from e

    cut = 0
    top_dir = name + "/"
    names = [i.filename for i in infos]
    if top_dir in names and all(n.startswith(top_dir) for n in names):
        reporter.error(f"Stripped root directory path '{top_dir}' for all entries.")
        cut = len(top_dir)

    collection = CollectionInput(name=name)
    for info in infos:
        if info.is_dir():
            continue
        rel = info.filename[cut:]
        collection.files.append(InputFile(
            rel,
            _zip_entry_time(info),
            lambda zf=zf, info=info: zf.read(info),
            info.file_size,
        ))

    if not collection.has_data_dir:
        reporter.error("Skipped invalid zip of ScrapBook folder.")
        return None

    reporter.info(f"Found {len(collection.files)} files.")
    return collection


# ─── Directory input ────────────────────────────────────────────────────────

def normalize_picker_paths(paths: list[str],
                           reporter: Optional[Reporter] = None) -> tuple[list[str], str]:
    """Map picker-style paths ("<picked>/...") to collection-relative paths.

    Returns (relative_paths, layout) where layout is one of
    "root", "data-root", "item-dir" or "unknown".
    """
    reporter = reporter or Reporter(echo=False)
    layout = "unknown"
    for p in paths:
        if any(a.match(p) for a in RIGHT_DIR_ANCHORS):
            layout = "root"
            break
        if any(a.match(p) for a in DATA_ROOT_ANCHORS):
            layout = "data-root"
            break
        if ITEM_DIR_ANCHOR.match(p):
            layout = "item-dir"
            break

    if layout == "data-root":
        reporter.info("Common ancestor directory name seems incorrect. "
                      "Adjust as it were the collection's data/ or tree/ folder.")
        return list(paths), layout
    if layout == "item-dir":
        reporter.info("Common ancestor directory name seems incorrect. "
                      "Adjust as it were a folder inside data/.")
        return [DATA_PREFIX + p for p in paths], layout

    # Collection root picked (or nothing recognisable): drop the picked name
    out = []
    for p in paths:
        pos = p.find("/")
        out.append(p[pos + 1:] if pos != -1 else p)
    return out, layout


def load_directory_input(path: Union[str, Path],
                         reporter: Optional[Reporter] = None) -> Optional[CollectionInput]:
    """Walk a directory into a CollectionInput (None if not a collection)."""
    reporter = reporter or Reporter(echo=False)
    root = Path(path).resolve()
    reporter.info(f"Got directory '{root.name}'.")
    reporter.info("Inspecting files...")

    picker_paths = []
    disk_paths = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for fn in sorted(filenames):
            fp = Path(dirpath) / fn
            rel = fp.relative_to(root).as_posix()
            picker_paths.append(f"{root.name}/{rel}")
            disk_paths.append(fp)

    rel_paths, layout = normalize_picker_paths(picker_paths, reporter)
    name = root.name
    if layout == "data-root":
        name = root.parent.name
    elif layout == "item-dir":
        name = root.parent.parent.name

    collection = CollectionInput(name=name)
    for rel, fp in zip(rel_paths, disk_paths):
        st = fp.stat()
        mtime = datetime.fromtimestamp(st.st_mtime, timezone.utc)
        collection.files.append(InputFile(rel, mtime, fp.read_bytes, st.st_size))

    if not collection.has_data_dir:
        reporter.error("Skipped invalid ScrapBook folder.")
        return None

    reporter.info(f"Found {len(collection.files)} files.")
    return collection


# ─── Classification ─────────────────────────────────────────────────────────

def classify_inputs(collection: CollectionInput) -> ClassifiedInput:
    """Partition the file set into legacy descriptor, tree files, item files."""
    legacy_rdf = None
    tree_files: dict[str, InputFile] = {}
    item_files: dict[str, dict[str, InputFile]] = {}

    for f in collection.files:
        if f.path == LEGACY_RDF_PATH:
            legacy_rdf = f
        if f.path.startswith(TREE_PREFIX):
            tree_files[f.path] = f
        m = ITEM_FILE_RE.match(f.path)
        if m:
            rel, item_id = m.group(1), m.group(2)
            item_files.setdefault(item_id, {})[rel] = f

    return ClassifiedInput(legacy_rdf, tree_files, item_files)
