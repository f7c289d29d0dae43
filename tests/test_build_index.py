#!/usr/bin/env python3
"""
Tests for the indexer pipeline and CLI helpers (tools/build_index.py)

Run: pytest tests/test_build_index.py -v
"""

import base64
import io
import json
import sys
import zipfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "tools"))

from build_index import (
    ConfigError,
    default_config,
    index_path,
    load_config,
    run_indexer,
    verify_collection,
)
from collect_input import CollectionInput
from favicon_cache import make_http_fetcher
from indexer_lib import InputFile, Reporter

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
MTIME = datetime(2020, 2, 2, 10, 0, 0, tzinfo=timezone.utc)

A = "20200101000000000"
B = "20200102000000000"
C = "20190101000000000"

PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)
PNG_URI = "data:image/png;base64," + base64.b64encode(PNG).decode("ascii")


def clock():
    return NOW


def make_zip(entries: dict) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()


def collection_files() -> dict:
    page = f'<html data-scrapbook-icon="{PNG_URI}"><head><title>Hello</title></head></html>'
    packed = make_zip({"index.html": "<html><head><title>Packed</title></head></html>"})
    old_meta = 'scrapbook.meta({"%s": {"title": "Kept", "type": "bookmark"}})' % C
    old_toc = 'scrapbook.toc({"root": ["%s", "gone"]})' % C
    return {
        f"data/{A}/index.html": page.encode("utf-8"),
        f"data/{B}.htz": packed,
        "tree/meta.js": old_meta.encode("utf-8"),
        "tree/toc.js": old_toc.encode("utf-8"),
    }


def as_collection(files: dict, name="Book") -> CollectionInput:
    return CollectionInput(name, [InputFile.from_bytes(p, d, MTIME) for p, d in files.items()])


def outputs_as_files(result) -> dict:
    return {path: f.data for path, f in result.outputs.items()}


def sidecar_json(data: bytes):
    text = data.decode("utf-8")
    return json.loads(text[text.index("(") + 1:text.rindex(")")])


# ─── Pipeline ──────────────────────────────────────────────────────────────

class TestRunIndexer:
    def test_rebuilds_index(self):
        result = run_indexer(as_collection(collection_files()), clock=clock)
        assert not result.failed
        meta = sidecar_json(result.outputs.get("tree/meta.js").data)
        toc = sidecar_json(result.outputs.get("tree/toc.js").data)
        assert list(meta) == [C, A, B]
        assert meta[A]["title"] == "Hello"
        assert meta[A]["index"] == f"{A}/index.html"
        assert meta[A]["icon"].startswith("../../tree/favicon/")
        assert meta[B]["title"] == "Packed"
        assert meta[C]["modify"] == "20240101000000000"
        assert toc == {"root": [C, A, B]}

    def test_previous_tree_backed_up(self):
        result = run_indexer(as_collection(collection_files()), clock=clock)
        assert "tree.bak/meta.js" in result.outputs
        assert "tree.bak/toc.js" in result.outputs
        assert "tree/map.html" in result.outputs
        assert "tree/icon/toggle.png" in result.outputs

    def test_problems_are_logged(self):
        reporter = Reporter(echo=False)
        run_indexer(as_collection(collection_files()), reporter=reporter, clock=clock)
        assert "Removed TOC reference 'gone' from 'root': Missing metadata entry." in reporter.errors()

    def test_deterministic(self):
        first = run_indexer(as_collection(collection_files()), clock=clock)
        second = run_indexer(as_collection(collection_files()), clock=clock)
        assert outputs_as_files(first) == outputs_as_files(second)

    def test_second_run_is_up_to_date(self):
        files = collection_files()
        first = run_indexer(as_collection(files), clock=clock)
        files.update(outputs_as_files(first))
        reporter = Reporter(echo=False)
        second = run_indexer(as_collection(files), reporter=reporter, clock=clock)
        assert not second.failed
        assert second.outputs.paths() == []
        assert not reporter.has_errors

    def test_unexpected_error_fails_run(self):
        def broken_fetcher(url):
            raise RuntimeError("boom")

        files = {f"data/{A}/index.html": b'<html data-scrapbook-icon="http://example.com/f.ico"></html>'}
        reporter = Reporter(echo=False)
        result = run_indexer(as_collection(files), reporter=reporter, fetcher=broken_fetcher, clock=clock)
        assert result.failed
        assert not result.outputs.has_files
        assert reporter.errors()[0] == "Unexpected error: boom"


class TestPerItemFailures:
    def run(self, files: dict, **kw):
        reporter = Reporter(echo=False)
        result = run_indexer(as_collection(files), reporter=reporter, clock=clock, **kw)
        assert not result.failed
        return sidecar_json(result.outputs.get("tree/meta.js").data), reporter

    def test_corrupt_archive_entry(self):
        packed = make_zip({"index.html": "<html><head><title>Packed</title></head></html>"})
        files = {
            f"data/{A}/index.html": b"<html><head><title>Hello</title></head></html>",
            f"data/{B}.htz": packed.replace(b"Packed", b"Pecked"),
        }
        meta, reporter = self.run(files)
        assert meta[A]["title"] == "Hello"
        assert meta[B]["index"] == f"{B}.htz"
        assert any(m.startswith(f"Error inspecting 'data/{B}.htz'") for m in reporter.errors())

    def test_bad_legacy_date(self):
        dat = b"title\tOld\nexported\tFoo Bar 06 2018 12:00:00 GMT+0800 (CST)\n"
        files = {
            f"data/{A}/index.html": b"<html><head><title>Hello</title></head></html>",
            f"data/{B}/index.html": b"<html></html>",
            f"data/{B}/index.dat": dat,
        }
        meta, reporter = self.run(files)
        assert meta[A]["title"] == "Hello"
        assert meta[B]["title"] == "Old"
        assert "exported" not in meta[B]

    def test_invalid_icon_url(self):
        page = b'<html><head><link rel="icon" href="http://exa mple.com/\x01.ico"></head></html>'
        files = {
            f"data/{A}/index.html": b"<html><head><title>Hello</title></head></html>",
            f"data/{B}/index.html": page,
        }
        meta, reporter = self.run(files, fetcher=make_http_fetcher(1.0))
        assert meta[A]["title"] == "Hello"
        assert meta[B]["icon"] == ""
        assert any(m.startswith("Removed invalid favicon") and f"for '{B}'" in m for m in reporter.errors())



class TestIndexPath:
    def write_collection(self, root: Path) -> None:
        for rel, data in collection_files().items():
            if rel.startswith("tree/"):
                continue
            target = root / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

    def test_zip_written_to_out_dir(self, tmp_path):
        src = tmp_path / "Book"
        self.write_collection(src)
        config = default_config()
        config["output"]["directory"] = str(tmp_path / "out")
        result = index_path(src, config, clock=clock)
        assert result.written == tmp_path / "out" / "Book.zip"
        with zipfile.ZipFile(result.written) as zf:
            assert "tree/meta.js" in zf.namelist()

    def test_direct_write_then_verify_then_rerun(self, tmp_path):
        src = tmp_path / "Book"
        self.write_collection(src)
        config = default_config()
        config["output"].update(auto_download=True, scrapbook_folder=str(src))

        index_path(src, config, clock=clock)
        passed, messages = verify_collection(src)
        assert passed, messages

        reporter = Reporter(echo=False)
        result = index_path(src, config, reporter, clock=clock)
        assert result.written is None
        assert "Current files are already up-to-date." in reporter.infos()

    def test_zip_input(self, tmp_path):
        raw = make_zip(collection_files())
        (tmp_path / "Book.zip").write_bytes(raw)
        config = default_config()
        config["output"]["directory"] = str(tmp_path / "out")
        result = index_path(tmp_path / "Book.zip", config, clock=clock)
        assert result.title == "Book"
        assert result.written.exists()

    def test_not_a_collection(self, tmp_path):
        (tmp_path / "misc").mkdir()
        (tmp_path / "misc" / "a.txt").write_text("a")
        reporter = Reporter(echo=False)
        assert index_path(tmp_path / "misc", reporter=reporter) is None
        assert "Skipped invalid ScrapBook folder." in reporter.errors()

    def test_unreadable_zip(self, tmp_path):
        (tmp_path / "bad.zip").write_bytes(b"garbage")
        reporter = Reporter(echo=False)
        assert index_path(tmp_path / "bad.zip", reporter=reporter) is None
        assert reporter.has_errors


# ─── Configuration ─────────────────────────────────────────────────────────

class TestLoadConfig:
    def test_shipped_config_matches_defaults(self):
        assert load_config() == default_config()

    def test_partial_config_merged(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("navigation:\n  direction: rtl\n")
        config = load_config(path)
        assert config["navigation"] == {"direction": "rtl", "source_link_title": "Source link"}
        assert config["favicon"]["fetch_timeout"] == 5.0

    def test_empty_file(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("")
        assert load_config(path) == default_config()

    def test_bad_value(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("navigation:\n  direction: up\n")
        with pytest.raises(ConfigError, match="navigation/direction"):
            load_config(path)

    def test_unknown_section(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("metrics:\n  enabled: true\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("favicon: [unclosed\n")
        with pytest.raises(ConfigError, match="Cannot read config"):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yaml")


# ─── Verify mode ───────────────────────────────────────────────────────────

class TestVerifyCollection:
    def write_tree(self, root: Path, meta: dict, toc: dict) -> None:
        (root / "tree").mkdir(parents=True, exist_ok=True)
        (root / "tree" / "meta.js").write_text(f"scrapbook.meta({json.dumps(meta)})")
        (root / "tree" / "toc.js").write_text(f"scrapbook.toc({json.dumps(toc)})")

    def entry(self, **kw) -> dict:
        base = {"title": "T", "type": "", "create": A, "modify": A, "source": "", "icon": "", "comment": ""}
        base.update(kw)
        return base

    def test_consistent_collection(self, tmp_path):
        (tmp_path / "data" / A).mkdir(parents=True)
        (tmp_path / "data" / A / "index.html").write_text("x")
        self.write_tree(tmp_path, {A: self.entry(index=f"{A}/index.html")}, {"root": [A]})
        passed, messages = verify_collection(tmp_path)
        assert passed
        assert messages[-1] == "OK: TOC and data files consistent"

    def test_missing_sidecar(self, tmp_path):
        passed, messages = verify_collection(tmp_path)
        assert not passed
        assert messages[0].startswith("FAIL:")

    def test_schema_violation(self, tmp_path):
        bad = self.entry(type="folder", folder="Work")
        del bad["comment"]
        self.write_tree(tmp_path, {A: bad}, {"root": [A]})
        passed, messages = verify_collection(tmp_path)
        assert not passed
        assert any("schema violation" in m for m in messages)

    def test_dangling_and_duplicate_references(self, tmp_path):
        self.write_tree(
            tmp_path,
            {A: self.entry(type="folder"), B: self.entry(type="bookmark")},
            {"root": [A, B, "gone"], A: [B]},
        )
        passed, messages = verify_collection(tmp_path)
        assert not passed
        assert "FAIL: TOC reference 'gone' in 'root' has no metadata." in messages
        assert f"FAIL: '{B}' is listed under both 'root' and '{A}'." in messages

    def test_missing_index_file(self, tmp_path):
        self.write_tree(tmp_path, {A: self.entry(index=f"{A}/index.html")}, {"root": [A]})
        passed, messages = verify_collection(tmp_path)
        assert not passed
        assert f"FAIL: index file '{A}/index.html' of '{A}' does not exist." in messages
