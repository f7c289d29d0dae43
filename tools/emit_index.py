#!/usr/bin/env python3
"""Stage the rebuilt tree/ files and emit only what changed.

Staged files are compared with the files of the previous run (SHA-256).
Identical files are dropped from the output; a changed file stages the
previous version under tree.bak/ next to the new one. The favicon cache is
not diffed here: the favicon stage only stages cache files that are new.

The delta is written either as <title>.zip or, when configured and the
destination folder is the collection's own folder, straight into it.
"""

from __future__ import annotations

import html
import json
import re
import zipfile
from datetime import datetime
from pathlib import Path
from string import Template
from typing import Optional

from indexer_lib import (
    BACKUP_PREFIX,
    FAVICON_PREFIX,
    TREE_PREFIX,
    Item,
    OutputSet,
    Reporter,
    sha256_bytes,
    utc_now,
)
from tree_store import generate_meta_file, generate_toc_file, iter_shard_paths

DEFAULT_RESOURCE_DIR = Path(__file__).resolve().parent.parent / "resources"

BUNDLED_ICONS = (
    "toggle", "collapse", "expand", "external", "item",
    "fclose", "fopen", "note", "postit",
)

# never diffed against the previous run
UNDIFFED_PREFIXES = (FAVICON_PREFIX, TREE_PREFIX + "cache/")

DEFAULT_SOURCE_LINK_TITLE = "Source link"


# ─── Navigation pages ───────────────────────────────────────────────────────

def _template(name: str, resource_dir: Optional[Path]) -> Template:
    path = Path(resource_dir or DEFAULT_RESOURCE_DIR) / "templates" / name
    return Template(path.read_text(encoding="utf-8"))


def _start_edge(direction: str) -> str:
    return "right" if direction == "rtl" else "left"


def generate_map_file(title: str, direction: str = "ltr",
                      source_link_title: str = DEFAULT_SOURCE_LINK_TITLE,
                      resource_dir: Optional[Path] = None) -> str:
    return _template("map.html", resource_dir).substitute(
        title=html.escape(title or ""),
        dir=direction,
        start_edge=_start_edge(direction),
        source_link_title=json.dumps(source_link_title),
    )


def generate_frame_file(title: str, direction: str = "ltr",
                        resource_dir: Optional[Path] = None) -> str:
    return _template("frame.html", resource_dir).substitute(
        title=html.escape(title or ""),
        dir=direction,
    )


# ─── Staging ────────────────────────────────────────────────────────────────

def stage_index_files(outputs: OutputSet, meta: dict[str, Item], toc: dict[str, list[str]],
                      title: str, tree_files: dict, direction: str = "ltr",
                      source_link_title: str = DEFAULT_SOURCE_LINK_TITLE,
                      resource_dir: Optional[Path] = None,
                      timestamp: Optional[datetime] = None) -> None:
    """Stage meta.js, toc.js, map.html, frame.html.

    Extra shards of the previous run (meta1.js, toc1.js, ...) are replaced
    by empty placeholders, everything now lives in the first shard.
    """
    timestamp = timestamp or utc_now()
    for kind, content in (("meta", generate_meta_file(meta)), ("toc", generate_toc_file(toc))):
        outputs.add(f"{TREE_PREFIX}{kind}.js", content, timestamp)
        for path in list(iter_shard_paths(kind, tree_files))[1:]:
            outputs.add(path, b"", timestamp)

    outputs.add(TREE_PREFIX + "map.html",
                generate_map_file(title, direction, source_link_title, resource_dir), timestamp)
    outputs.add(TREE_PREFIX + "frame.html",
                generate_frame_file(title, direction, resource_dir), timestamp)


def stage_bundled_resources(outputs: OutputSet, tree_files: dict, resource_dir: Optional[Path],
                            reporter: Reporter, timestamp: Optional[datetime] = None) -> None:
    """Stage the tree UI icons that the previous run did not have."""
    icon_dir = Path(resource_dir or DEFAULT_RESOURCE_DIR) / "icon"
    for name in BUNDLED_ICONS:
        path = f"{TREE_PREFIX}icon/{name}.png"
        if path in tree_files:
            continue
        try:
            data = (icon_dir / f"{name}.png").read_bytes()
        except OSError as e:
            reporter.error(f"Error adding file '{path}': {e}")
            continue
        outputs.add(path, data, timestamp or utc_now())


def diff_against_previous(outputs: OutputSet, tree_files: dict, reporter: Reporter) -> None:
    """Drop unchanged files; back up the previous version of changed ones."""
    for path in outputs.paths():
        if not path.startswith(TREE_PREFIX) or path.startswith(UNDIFFED_PREFIXES):
            continue
        old = tree_files.get(path)
        if old is None:
            continue
        if sha256_bytes(old.read()) == sha256_bytes(outputs.get(path).data):
            outputs.remove(path)
        else:
            bak_path = BACKUP_PREFIX + path[len(TREE_PREFIX):]
            outputs.add(bak_path, old.read(), old.last_modified)
            reporter.info(f"Updated '{path}' (previous version saved as '{bak_path}').")


# ─── Writers ────────────────────────────────────────────────────────────────

def validate_filename(name: str) -> str:
    """Make ``name`` usable as a file or folder name on common platforms."""
    name = re.sub(r"[\x00-\x1F\x7F]+", "", name or "")
    name = re.sub(r"^\.", "_.", name)
    name = name.strip(" ")
    name = re.sub(r"[. ]+$", "", name)
    name = re.sub(r'[:"?*\\/|]', "_", name)
    return name.replace("<", "(").replace(">", ")")


def _zip_time(ts: datetime) -> tuple:
    local = ts.astimezone() if ts.tzinfo else ts
    if local.year < 1980:
        return (1980, 1, 1, 0, 0, 0)
    return local.timetuple()[:6]


def write_zip(outputs: OutputSet, destination) -> Path:
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(destination, "w", zipfile.ZIP_DEFLATED) as zf:
        for path, f in outputs.items():
            info = zipfile.ZipInfo(path, date_time=_zip_time(f.timestamp))
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, f.data)
    return destination


def write_direct(outputs: OutputSet, folder, reporter: Reporter) -> Path:
    folder = Path(folder)
    for path, f in outputs.items():
        dest = folder / path
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(f.data)
        except OSError as e:
            reporter.error(f"Error writing '{dest}': {e}")
    return folder


def emit_outputs(outputs: OutputSet, title: str, reporter: Reporter,
                 out_dir=".", auto_download: bool = False,
                 scrapbook_folder: Optional[str] = None,
                 dry_run: bool = False) -> Optional[Path]:
    """Write the delta. Returns where it went, or None if nothing was written."""
    if not outputs.has_files:
        reporter.info("Current files are already up-to-date.")
        return None

    if dry_run:
        for path in outputs.paths():
            reporter.info(f"Would write '{path}'.")
        return None

    if auto_download:
        folder = (scrapbook_folder or "").rstrip("/\\")
        if folder and validate_filename(title) == re.sub(r"^.*[\\/]", "", folder):
            reporter.info("Writing files...")
            return write_direct(outputs, folder, reporter)
        reporter.error("Picked folder does not match configured ScrapBook folder. Download as zip...")

    reporter.info("Generating zip file...")
    dest = write_zip(outputs, Path(out_dir) / f"{validate_filename(title) or 'scrapbook'}.zip")
    reporter.info(f"Wrote '{dest}'.")
    return dest
