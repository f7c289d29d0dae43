#!/usr/bin/env python3
"""Reconcile the merged metadata and table of contents.

The passes run in order, each over the whole model:

  1. retarget_ids       move entries whose declared id differs from their key
  2. prune_missing_data drop data items without files, re-probe lost indexes
  3. fill_defaults      deterministic fallbacks for empty fields
  4. prune_toc          drop dangling TOC keys/references and empty keys
  5. insert_orphans     place unreferenced items, creating folders on demand

After insert_orphans no entry carries the transient id/folder/exported
fields any more.
"""

from __future__ import annotations

import re
from typing import Callable, Optional

from indexer_lib import (
    RESERVED_IDS,
    ROOT_ID,
    Item,
    Reporter,
    date_to_id,
    get_unique_id,
    url_to_filename,
    utc_now,
)
from synthesize_meta import get_index_path

FOLDER_PATH_SEP_RE = re.compile(r"[\t\n\r\v\f]+")


class IndexRepairer:
    """Owns meta, toc and item_files for the duration of the passes."""

    def __init__(self, meta: dict[str, Item], toc: dict[str, list[str]],
                 item_files: dict, reporter: Reporter,
                 clock: Callable = utc_now):
        self.meta = meta
        self.toc = toc
        self.item_files = item_files
        self.reporter = reporter
        self.clock = clock
        self.referred: set[str] = set()
        self.title_ids: dict[str, str] = {}
        self.toc.setdefault(ROOT_ID, [])

    def run(self) -> tuple[dict[str, Item], dict[str, list[str]]]:
        self.reporter.info("Inspecting metadata...")
        self.retarget_ids()
        self.prune_missing_data()
        self.fill_defaults()
        self.reporter.info("Inspecting TOC...")
        self.prune_toc()
        self.reporter.info("Adding new items to TOC...")
        self.insert_orphans()
        return self.meta, self.toc

    # ─── Pass 1 ─────────────────────────────────────────────────────────────

    def _move_files(self, old_id: str, new_id: str) -> None:
        if old_id in self.item_files:
            self.item_files[new_id] = self.item_files.pop(old_id)

    def retarget_ids(self) -> None:
        for item_id in sorted(self.meta):
            item = self.meta.get(item_id)
            if item is None:
                continue
            new_id = item.id
            if not new_id or new_id == item_id:
                continue

            if new_id not in self.meta:
                self.meta[new_id] = self.meta.pop(item_id)
                self._move_files(item_id, new_id)
                self.reporter.info(f"Tweaked '{item_id}' to '{new_id}'.")
            elif self.meta[new_id].index == item.index:
                # same data already described under new_id
                self._move_files(item_id, new_id)
                del self.meta[item_id]
                self.reporter.info(f"'data/{item.index}' is already used by '{new_id}', skip generating.")
            else:
                del self.meta[item_id]
                self.reporter.error(f"Removed bad metadata entry '{item_id}': "
                                    f"specified ID '{new_id}' has been used.")

    # ─── Pass 2 ─────────────────────────────────────────────────────────────

    def prune_missing_data(self) -> None:
        for item_id in list(self.meta):
            item = self.meta[item_id]
            if not item.needs_data:
                continue

            files = self.item_files.get(item_id)
            if not files:
                del self.meta[item_id]
                self.reporter.error(f"Removed metadata entry for '{item_id}': Missing data files.")
                continue

            if item.index and item.index in files:
                continue
            index = get_index_path(files, item_id)
            if index:
                self.reporter.info(f"Missing index file '{item.index or ''}' for '{item_id}'. "
                                   f"Shifted to '{index}'.")
                item.index = index
            else:
                self.reporter.error(f"Missing index file '{item.index or ''}' for '{item_id}'.")

    # ─── Pass 3 ─────────────────────────────────────────────────────────────

    def fill_defaults(self) -> None:
        for item_id, item in self.meta.items():
            item.type = item.type or ""
            item.source = item.source or ""
            item.title = (
                item.title
                or (url_to_filename(item.source) if item.source else "")
                or (item_id if item.type != "separator" else "")
            )
            item.modify = item.modify or date_to_id(self.clock())
            item.create = item.create or item.modify
            item.icon = item.icon or ""
            item.comment = item.comment or ""

    # ─── Pass 4 ─────────────────────────────────────────────────────────────

    def _keep_ref(self, parent_id: str, ref_id: str) -> bool:
        if ref_id in RESERVED_IDS:
            self.reporter.error(f"Removed TOC reference '{ref_id}' from '{parent_id}': Invalid entry.")
            return False
        if ref_id not in self.meta:
            self.reporter.error(f"Removed TOC reference '{ref_id}' from '{parent_id}': Missing metadata entry.")
            return False
        if ref_id in self.referred:
            self.reporter.error(f"Removed TOC reference '{ref_id}' from '{parent_id}': Duplicated entry.")
            return False
        return True

    def prune_toc(self) -> None:
        self.referred = set()
        self.title_ids = {}
        for parent_id in list(self.toc):
            if parent_id not in self.meta and parent_id not in RESERVED_IDS:
                del self.toc[parent_id]
                self.reporter.error(f"Removed TOC entry '{parent_id}': Missing metadata entry.")
                continue

            kept = []
            for ref_id in self.toc[parent_id]:
                if not self._keep_ref(parent_id, ref_id):
                    continue
                self.referred.add(ref_id)
                self.title_ids[self.meta[ref_id].title] = ref_id
                kept.append(ref_id)
            self.toc[parent_id] = kept

            if not kept and parent_id not in RESERVED_IDS:
                del self.toc[parent_id]
                self.reporter.error(f"Removed empty TOC entry '{parent_id}'.")

    # ─── Pass 5 ─────────────────────────────────────────────────────────────

    def generate_folder(self, title: str) -> str:
        folder_id = get_unique_id(date_to_id(self.clock()), self.meta)
        self.meta[folder_id] = Item(
            title=title, type="folder", create=folder_id, modify=folder_id,
            source="", icon="", comment="",
        )
        return folder_id

    def _insert(self, item_id: str, folder_hint: Optional[str]) -> None:
        segments = [s for s in FOLDER_PATH_SEP_RE.split(folder_hint or "") if s]
        if not segments:
            self.toc[ROOT_ID].append(item_id)
            self.reporter.info(f"Appended '{item_id}' to root of TOC.")
            return

        parent_id = ROOT_ID
        for name in segments:
            folder_id = self.title_ids.get(name)
            # a title match only counts when linked under the current parent
            if not (folder_id in self.meta and folder_id in self.toc[parent_id]):
                folder_id = self.generate_folder(name)
                self.toc[parent_id].append(folder_id)
                self.title_ids[name] = folder_id
                self.reporter.info(f"Generated folder '{folder_id}' with name '{name}'.")
            self.toc.setdefault(folder_id, [])
            parent_id = folder_id
        self.toc[parent_id].append(item_id)
        self.reporter.info(f"Appended '{item_id}' to '{parent_id}'.")

    def insert_orphans(self) -> None:
        order = sorted(self.meta, key=lambda i: (self.meta[i].exported or "", i))
        for item_id in order:
            item = self.meta[item_id]
            if item_id not in self.referred and item_id not in RESERVED_IDS:
                self._insert(item_id, item.folder)
                self.title_ids[item.title] = item_id
            item.strip_transient()
