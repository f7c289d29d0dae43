#!/usr/bin/env python3
"""Import metadata written by legacy ScrapBook / ScrapBook X.

Two legacy sources are understood:
  - scrapbook.rdf at the collection root: one RDF:Description (or
    NC:BookmarkSeparator) per item, attributes in the NS1 namespace, and one
    RDF:Seq per folder listing the children in display order.
  - data/<id>/index.dat: "key<TAB>value" lines for a single item.

Both are mapped onto the canonical Item fields by merge_legacy_meta.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

from indexer_lib import (
    Item,
    Reporter,
    date_to_id,
    legacy_id_to_id,
)

NS = {
    "RDF": "http://www.w3.org/1999/02/22-rdf-syntax-ns#",
    "NS1": "http://amb.vis.ne.jp/mozilla/scrapbook-rdf#",
    "NC": "http://home.netscape.com/NC-rdf#",
}

ITEM_URN_RE = re.compile(r"^urn:scrapbook:item(\d{14})$")
SEQ_URN_RE = re.compile(r"^urn:scrapbook:(?:item(\d{14})|(root))$")

# NS1 attribute names read from each item element
RDF_ITEM_ATTRS = (
    "id", "title", "type", "create", "modify", "source", "icon", "comment",
    "chars", "lock",
)

LEGACY_TYPE_MAP = {
    "note": "postit",
    "notex": "note",
    "combine": "site",
}

COMMENT_BR_MARKER = " __BR__ "

RES_ITEM_ICON_PREFIX = "resource://scrapbook/data/{id}/"
RES_ICON_PREFIX = "resource://scrapbook/icon/"
MOZ_ICON_PREFIX = "moz-icon://"

# JavaScript Date.toString(): "Tue Mar 06 2018 12:00:00 GMT+0800 (CST)"
JS_DATE_RE = re.compile(
    r"^\w{3} (\w{3} \d{1,2} \d{4} \d{2}:\d{2}:\d{2}) GMT([+-]\d{4})"
)


def _attr(elem: ET.Element, ns: str, name: str) -> Optional[str]:
    return elem.get(f"{{{NS[ns]}}}{name}")


# ─── scrapbook.rdf ──────────────────────────────────────────────────────────

def parse_scrapbook_rdf(data: bytes) -> tuple[dict[str, dict], dict[str, list[str]]]:
    """Parse scrapbook.rdf.

    Returns (records, toc). records maps the storage id (the digits of the
    item urn) to a dict of legacy attributes; "id" holds the NS1 id, falling
    back to the storage id. Raises ET.ParseError for malformed XML.
    """
    root = ET.fromstring(data)
    records: dict[str, dict] = {}
    toc: dict[str, list[str]] = {}

    item_elems = list(root.iter(f"{{{NS['RDF']}}}Description"))
    item_elems += list(root.iter(f"{{{NS['NC']}}}BookmarkSeparator"))
    for elem in item_elems:
        m = ITEM_URN_RE.match(_attr(elem, "RDF", "about") or "")
        if not m:
            continue
        storage_id = m.group(1)
        record = {name: _attr(elem, "NS1", name) for name in RDF_ITEM_ATTRS}
        record["id"] = record["id"] or storage_id
        records[storage_id] = record

    for seq in root.iter(f"{{{NS['RDF']}}}Seq"):
        m = SEQ_URN_RE.match(_attr(seq, "RDF", "about") or "")
        if not m:
            continue
        parent_id = m.group(1) or m.group(2)
        for li in seq.iter(f"{{{NS['RDF']}}}li"):
            ref = ITEM_URN_RE.match(_attr(li, "RDF", "resource") or "")
            if not ref:
                continue
            toc.setdefault(parent_id, []).append(ref.group(1))

    return records, toc


def import_legacy_rdf(rdf_file, meta: dict[str, Item], toc: dict[str, list[str]],
                      item_files: dict, reporter: Reporter, index_probe) -> bool:
    """Merge scrapbook.rdf into meta and toc. Returns True on success.

    index_probe(files, id) resolves the index path of an item's data files.
    """
    reporter.info(f"Found '{rdf_file.path}' for legacy ScrapBook. Importing...")
    try:
        records, rdf_toc = parse_scrapbook_rdf(rdf_file.read())
    except ET.ParseError as e:
        reporter.error(f"Error importing '{rdf_file.path}': {e}")
        return False

    for storage_id, record in records.items():
        item = meta.setdefault(storage_id, Item())
        files = item_files.get(storage_id)
        item.index = index_probe(files, storage_id) if files else None
        try:
            merge_legacy_meta(item, record, storage_id)
        except ValueError as e:
            reporter.error(f"Error importing '{rdf_file.path}' for '{storage_id}': {e}")

    for parent_id, children in rdf_toc.items():
        toc.setdefault(parent_id, []).extend(children)
    return True


# ─── index.dat ──────────────────────────────────────────────────────────────

def parse_index_dat(text: str) -> Optional[dict]:
    """Parse a legacy index.dat; None if it has fewer than two lines."""
    lines = text.split("\n")
    if len(lines) < 2:
        return None
    data = {}
    for line in lines:
        key, sep, value = line.partition("\t")
        if not sep:
            continue
        data[key] = value.rstrip("\r")
    return data


# ─── Field mapping ──────────────────────────────────────────────────────────

def parse_legacy_date(text: str) -> Optional[datetime]:
    """Parse the date formats legacy tools wrote for "exported"."""
    text = (text or "").strip()
    if not text:
        return None
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return dt if dt.tzinfo else dt.astimezone()
    except ValueError:
        pass
    m = JS_DATE_RE.match(text)
    if m:
        try:
            return datetime.strptime(f"{m.group(1)} {m.group(2)}", "%b %d %Y %H:%M:%S %z")
        except ValueError:
            return None
    try:
        return parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None


def convert_legacy_icon(icon: str, item_id: str) -> str:
    item_prefix = RES_ITEM_ICON_PREFIX.format(id=item_id)
    if icon.startswith(item_prefix):
        return icon[len(item_prefix):]
    if icon.startswith(RES_ICON_PREFIX):
        return "../../icon/" + icon[len(RES_ICON_PREFIX):]
    if icon.startswith(MOZ_ICON_PREFIX):
        return ""
    return icon


def merge_legacy_meta(item: Item, legacy: dict, fallback_id: Optional[str] = None) -> Item:
    """Merge a legacy record (scrapbook.rdf or index.dat) into ``item``."""
    item_id = legacy.get("id") or fallback_id

    exported = None
    if legacy.get("exported"):
        dt = parse_legacy_date(legacy["exported"])
        exported = date_to_id(dt.astimezone(timezone.utc)) if dt else None

    item_type = legacy.get("type") or ""
    item_type = LEGACY_TYPE_MAP.get(item_type, item_type)
    marked = None
    if item_type == "marked":
        item_type = ""
        marked = True

    comment = legacy.get("comment") or ""
    update = {
        "id": item_id,
        "title": legacy.get("title"),
        "type": item_type,
        "create": legacy_id_to_id(legacy["create"]) if legacy.get("create") else "",
        "modify": legacy_id_to_id(legacy["modify"]) if legacy.get("modify") else "",
        "source": legacy.get("source"),
        "icon": convert_legacy_icon(legacy.get("icon") or "", item_id or ""),
        "comment": comment.replace(COMMENT_BR_MARKER, "\n"),
        "folder": legacy.get("folder"),
        "exported": exported,
    }
    if legacy.get("chars"):
        update["charset"] = legacy["chars"]
    if legacy.get("lock"):
        update["locked"] = legacy["lock"]
    if marked:
        update["marked"] = True

    return item.merge(update)
