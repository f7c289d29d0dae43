#!/usr/bin/env python3
"""
ScrapBook Indexer: CLI Tool

Rebuilds tree/meta.js, tree/toc.js, tree/map.html, tree/frame.html, the tree
icons and the favicon cache of a ScrapBook collection from whatever is on
disk: legacy scrapbook.rdf, legacy data/<id>/index.dat, previous tree/
sidecars and the item files under data/. Only files that differ from the
previous ones are emitted, with backups of the superseded versions.

Usage:
  python tools/build_index.py INPUT [INPUT ...] [OPTIONS]
  python tools/build_index.py --verify COLLECTION_DIR

INPUT is a zip of the collection folder or the folder itself.
"""

from __future__ import annotations

import argparse
import copy
import json
import sys
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import jsonschema
import yaml

from collect_input import (
    CollectionInput,
    InvalidInputError,
    classify_inputs,
    load_directory_input,
    load_zip_input,
)
from emit_index import (
    emit_outputs,
    diff_against_previous,
    stage_bundled_resources,
    stage_index_files,
)
from favicon_cache import FaviconCache, make_http_fetcher, offline_fetcher
from indexer_lib import (
    CONTAINER_TYPES,
    RESERVED_IDS,
    ROOT_ID,
    Item,
    LogRecord,
    OutputSet,
    Reporter,
    utc_now,
)
from legacy_import import import_legacy_rdf
from repair_index import IndexRepairer
from synthesize_meta import get_index_path, synthesize_missing_meta
from tree_store import SidecarFormatError, extract_sidecar_json, load_tree_meta, load_tree_toc

# ─── Constants ──────────────────────────────────────────────────────────────

REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = REPO_ROOT / "config" / "indexer.yaml"
CONFIG_SCHEMA_PATH = REPO_ROOT / "schemas" / "indexer_config_schema.json"
META_SCHEMA_PATH = REPO_ROOT / "schemas" / "tree_meta_schema.json"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BAD_CONFIG = 2


class ConfigError(Exception):
    """Configuration file unreadable or not valid against its schema."""


def info(msg):
    """Print info to stdout."""
    print(msg)


def abort(msg, code=EXIT_FAILED):
    """Print error and exit."""
    print(f"ERROR: {msg}", file=sys.stderr)
    sys.exit(code)


# ─── Configuration ──────────────────────────────────────────────────────────

def default_config() -> dict:
    return {
        "favicon": {"fetch_timeout": 5.0, "log_preview_length": 256},
        "output": {"directory": ".", "auto_download": False, "scrapbook_folder": None},
        "navigation": {"direction": "ltr", "source_link_title": "Source link"},
        "resources": {"directory": None},
    }


def load_config(path=None) -> dict:
    """Load YAML config over the defaults.

    With no path, config/indexer.yaml is used when it exists.
    Raises ConfigError for unreadable, malformed or schema-invalid files.
    """
    config = default_config()
    if path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return config
        path = DEFAULT_CONFIG_PATH

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config '{path}': {e}") from e

    schema = json.loads(CONFIG_SCHEMA_PATH.read_text(encoding="utf-8"))
    try:
        jsonschema.validate(data, schema)
    except jsonschema.ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "(root)"
        raise ConfigError(f"Invalid config '{path}' at {where}: {e.message}") from e

    for section, values in data.items():
        config[section].update(values or {})
    return config


def resource_dir(config: dict) -> Optional[Path]:
    directory = config["resources"]["directory"]
    return Path(directory) if directory else None


# ─── Pipeline ───────────────────────────────────────────────────────────────

@dataclass
class IndexResult:
    """What one run produced. ``outputs`` is empty when the run failed."""
    title: str
    meta: dict[str, Item] = field(default_factory=dict)
    toc: dict[str, list[str]] = field(default_factory=dict)
    outputs: OutputSet = field(default_factory=OutputSet)
    records: list[LogRecord] = field(default_factory=list)
    failed: bool = False
    written: Optional[Path] = None


def run_indexer(collection: CollectionInput, config: Optional[dict] = None,
                reporter: Optional[Reporter] = None,
                fetcher: Optional[Callable] = None,
                clock: Callable = utc_now) -> IndexResult:
    """Rebuild the index of one collection; nothing is written here."""
    config = config or default_config()
    reporter = reporter or Reporter(echo=False)
    title = collection.name
    fetcher = fetcher or offline_fetcher

    try:
        classified = classify_inputs(collection)
        meta: dict[str, Item] = {}
        toc: dict[str, list[str]] = {ROOT_ID: []}

        if classified.legacy_rdf is not None:
            import_legacy_rdf(classified.legacy_rdf, meta, toc, classified.item_files,
                              reporter, get_index_path)
        load_tree_meta(classified.tree_files, meta, reporter)
        load_tree_toc(classified.tree_files, toc, reporter)
        synthesize_missing_meta(meta, classified.item_files, reporter)

        IndexRepairer(meta, toc, classified.item_files, reporter, clock).run()

        outputs = OutputSet()
        cache = FaviconCache(classified.tree_files, outputs, reporter, fetcher, clock)
        cache.cache_item_icons(meta)
        cache.sweep(meta)

        reporter.info("Checking for created and updated files...")
        now = clock()
        nav = config["navigation"]
        stage_index_files(outputs, meta, toc, title, classified.tree_files,
                          nav["direction"], nav["source_link_title"], resource_dir(config), now)
        stage_bundled_resources(outputs, classified.tree_files, resource_dir(config), reporter, now)
        diff_against_previous(outputs, classified.tree_files, reporter)
    except Exception as e:
        reporter.error(f"Unexpected error: {e}")
        reporter.error(traceback.format_exc().rstrip())
        return IndexResult(title, records=reporter.records, failed=True)

    return IndexResult(title, meta, toc, outputs, reporter.records)


def build_fetcher(config: dict, offline: bool = False) -> Callable:
    if offline:
        return offline_fetcher
    return make_http_fetcher(config["favicon"]["fetch_timeout"])


def index_path(source, config: Optional[dict] = None, reporter: Optional[Reporter] = None,
               fetcher: Optional[Callable] = None, clock: Callable = utc_now,
               dry_run: bool = False) -> Optional[IndexResult]:
    """Index a zip file or a directory and emit the delta.

    Returns None when the input was rejected.
    """
    config = config or default_config()
    reporter = reporter or Reporter(echo=False)
    source = Path(source)

    if source.is_dir():
        collection = load_directory_input(source, reporter)
    else:
        try:
            collection = load_zip_input(source, reporter=reporter)
        except (InvalidInputError, OSError) as e:
            reporter.error(str(e))
            return None
    if collection is None:
        return None

    result = run_indexer(collection, config, reporter, fetcher, clock)
    if not result.failed:
        out = config["output"]
        result.written = emit_outputs(
            result.outputs, result.title, reporter,
            out_dir=out["directory"],
            auto_download=out["auto_download"],
            scrapbook_folder=out["scrapbook_folder"],
            dry_run=dry_run,
        )
        reporter.info("Done.")
    return result


# ─── Verify mode ────────────────────────────────────────────────────────────

def _read_sidecar(path: Path, issues: list[str]):
    if not path.exists():
        issues.append(f"FAIL: {path} does not exist.")
        return None
    try:
        data = extract_sidecar_json(path.read_text(encoding="utf-8-sig"))
    except (SidecarFormatError, UnicodeDecodeError) as e:
        issues.append(f"FAIL: {path} is not a valid sidecar: {e}")
        return None
    if not isinstance(data, dict):
        issues.append(f"FAIL: {path} does not hold a JSON object.")
        return None
    return data


def verify_collection(path) -> tuple[bool, list[str]]:
    """Check the integrity of a collection's tree/meta.js and tree/toc.js.

    Checks: both sidecars parse, metadata validates against the schema, every
    TOC key and child has metadata, no item is listed twice, every data item's
    index file exists. Returns (passed, messages).
    """
    root = Path(path)
    issues: list[str] = []
    messages: list[str] = []

    meta = _read_sidecar(root / "tree" / "meta.js", issues)
    toc = _read_sidecar(root / "tree" / "toc.js", issues)
    if meta is None or toc is None:
        return False, issues
    messages.append(f"OK: sidecars parsed ({len(meta)} items, {len(toc)} TOC entries)")

    schema = json.loads(META_SCHEMA_PATH.read_text(encoding="utf-8"))
    validator = jsonschema.Draft7Validator(schema)
    schema_errors = sorted(validator.iter_errors(meta), key=lambda e: list(e.absolute_path))
    for e in schema_errors:
        where = "/".join(str(p) for p in e.absolute_path) or "(root)"
        issues.append(f"FAIL: meta.js schema violation at {where}: {e.message}")
    if not schema_errors:
        messages.append("OK: meta.js validates against schema")

    seen: dict[str, str] = {}
    for parent_id, children in toc.items():
        if parent_id not in meta and parent_id not in RESERVED_IDS:
            issues.append(f"FAIL: TOC entry '{parent_id}' has no metadata.")
        for child_id in children if isinstance(children, list) else []:
            if child_id not in meta:
                issues.append(f"FAIL: TOC reference '{child_id}' in '{parent_id}' has no metadata.")
            if child_id in seen:
                issues.append(f"FAIL: '{child_id}' is listed under both '{seen[child_id]}' and '{parent_id}'.")
            seen.setdefault(child_id, parent_id)

    for item_id, entry in meta.items():
        if not isinstance(entry, dict) or entry.get("type") in CONTAINER_TYPES:
            continue
        if item_id not in seen:
            issues.append(f"FAIL: '{item_id}' is not in the TOC.")
        index = entry.get("index")
        if not index or not (root / "data" / index).exists():
            issues.append(f"FAIL: index file '{index or ''}' of '{item_id}' does not exist.")

    if issues:
        return False, messages + issues
    messages.append("OK: TOC and data files consistent")
    return True, messages


# ─── CLI ────────────────────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="Rebuild the tree/ index of ScrapBook collections (zip files or folders).",
    )
    parser.add_argument("inputs", nargs="*", help="Collection zip file(s) or folder(s)")
    parser.add_argument("--config", default=None, help="YAML config (default: config/indexer.yaml)")
    parser.add_argument("--out-dir", default=None, help="Directory for the generated zip")
    parser.add_argument("--direct", action="store_true",
                        help="Write changed files into --scrapbook-folder instead of a zip")
    parser.add_argument("--scrapbook-folder", default=None,
                        help="Collection folder used by --direct (name must match the collection)")
    parser.add_argument("--fetch-timeout", type=float, default=None, help="Favicon fetch timeout in seconds")
    parser.add_argument("--offline", action="store_true", help="Never fetch remote favicons")
    parser.add_argument("--quiet", action="store_true", help="Only print errors")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be written")
    parser.add_argument("--verify", metavar="COLLECTION_DIR",
                        help="Verify the tree/ files of an existing collection folder")
    args = parser.parse_args()

    # ── --verify mode ─────────────────────────────────────────────────
    if args.verify:
        info("=" * 60)
        info(f"Verify ScrapBook index: {args.verify}")
        info("=" * 60)
        passed, messages = verify_collection(args.verify)
        for msg in messages:
            info(f"  {msg}")
        info("\nIndex verified successfully." if passed else "\nIndex has integrity issues.")
        sys.exit(EXIT_OK if passed else EXIT_FAILED)

    if not args.inputs:
        parser.error("the following arguments are required: inputs (unless using --verify)")

    try:
        config = load_config(args.config)
    except ConfigError as e:
        abort(str(e), EXIT_BAD_CONFIG)

    config = copy.deepcopy(config)
    if args.out_dir:
        config["output"]["directory"] = args.out_dir
    if args.direct:
        config["output"]["auto_download"] = True
    if args.scrapbook_folder:
        config["output"]["scrapbook_folder"] = args.scrapbook_folder
    if args.fetch_timeout is not None:
        config["favicon"]["fetch_timeout"] = args.fetch_timeout

    fetcher = build_fetcher(config, args.offline)
    exit_code = EXIT_OK
    for source in args.inputs:
        reporter = Reporter(quiet=args.quiet,
                            preview_length=config["favicon"]["log_preview_length"])
        result = index_path(source, config, reporter, fetcher, dry_run=args.dry_run)
        if result is None or result.failed:
            exit_code = EXIT_FAILED
        info("")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
