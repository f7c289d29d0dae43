#!/usr/bin/env python3
"""Read and write the tree/ sidecar files.

A sidecar is a small script whose only statement is a call wrapping JSON:

    /**
     * Feel free to edit this file, but keep data code valid JSON format.
     */
    scrapbook.meta({...})

Metadata lives in tree/meta.js, tree/meta1.js, ... and the table of contents
in tree/toc.js, tree/toc1.js, ...; numbering stops at the first missing file.
Later shards override earlier ones: per item id for metadata, per parent id
for the TOC.
"""

from __future__ import annotations

import json
import re
from typing import Iterator

from indexer_lib import ROOT_ID, TREE_PREFIX, InputFile, Item, Reporter

SIDECAR_HEADER = (
    "/**\n"
    " * Feel free to edit this file, but keep data code valid JSON format.\n"
    " */\n"
)

# optional comments, call prefix, "(", JSON, ")", then comments, blanks or ";"
SIDECAR_RE = re.compile(
    r"^(?:/\*.*\*/|[^(])+\(([\s\S]*)\)(?:/\*.*\*/|[\s;])*\Z"
)


class SidecarFormatError(Exception):
    """A sidecar file whose JSON payload cannot be located or parsed."""


def extract_sidecar_json(text: str):
    """Return the decoded JSON payload of a sidecar script."""
    m = SIDECAR_RE.match(text)
    if not m:
        raise SidecarFormatError("Failed to retrieve JSON data.")
    try:
        return json.loads(m.group(1))
    except json.JSONDecodeError as e:
        raise SidecarFormatError(f"Failed to parse JSON data: {e}") from e


def _read_text(f: InputFile) -> str:
    try:
        return f.read().decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise SidecarFormatError(f"Not UTF-8 text: {e}") from e


def shard_path(kind: str, n: int) -> str:
    return f"{TREE_PREFIX}{kind}{n or ''}.js"


def iter_shard_paths(kind: str, tree_files: dict) -> Iterator[str]:
    """Yield tree/<kind>.js, tree/<kind>1.js, ... while they exist."""
    n = 0
    while shard_path(kind, n) in tree_files:
        yield shard_path(kind, n)
        n += 1


def _iter_shard_payloads(kind: str, tree_files: dict, reporter: Reporter):
    for path in iter_shard_paths(kind, tree_files):
        reporter.info(f"Importing '{path}'...")
        try:
            text = _read_text(tree_files[path])
            if not text.strip():
                reporter.info(f"Skipped empty '{path}'.")
                continue
            data = extract_sidecar_json(text)
            if not isinstance(data, dict):
                raise SidecarFormatError("JSON data is not an object.")
        except SidecarFormatError as e:
            reporter.error(f"Error importing '{path}': {e}")
            continue
        yield path, data


# ─── Readers ────────────────────────────────────────────────────────────────

def load_tree_meta(tree_files: dict, meta: dict[str, Item], reporter: Reporter) -> dict[str, Item]:
    """Merge every tree/meta*.js shard into ``meta``."""
    for path, data in _iter_shard_payloads("meta", tree_files, reporter):
        for item_id, entry in data.items():
            if not isinstance(entry, dict):
                reporter.error(f"Error importing '{path}': bad entry for '{item_id}'.")
                continue
            meta.setdefault(item_id, Item()).merge(entry)
    return meta


def load_tree_toc(tree_files: dict, toc: dict[str, list[str]], reporter: Reporter) -> dict[str, list[str]]:
    """Merge every tree/toc*.js shard into ``toc`` (whole lists replaced)."""
    for path, data in _iter_shard_payloads("toc", tree_files, reporter):
        for parent_id, children in data.items():
            if not isinstance(children, list):
                reporter.error(f"Error importing '{path}': bad entry for '{parent_id}'.")
                continue
            toc[parent_id] = [str(c) for c in children]
    toc.setdefault(ROOT_ID, [])
    return toc


# ─── Writers ────────────────────────────────────────────────────────────────

def _dump(data) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def generate_meta_file(meta: dict[str, Item]) -> str:
    payload = {item_id: item.to_dict() for item_id, item in meta.items()}
    return f"{SIDECAR_HEADER}scrapbook.meta({_dump(payload)})"


def generate_toc_file(toc: dict[str, list[str]]) -> str:
    return f"{SIDECAR_HEADER}scrapbook.toc({_dump(toc)})"
