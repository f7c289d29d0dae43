#!/usr/bin/env python3
"""
Tests for input collection (tools/collect_input.py)

Run: pytest tests/test_collect_input.py -v
"""

import io
import sys
import zipfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "tools"))

from collect_input import (
    CollectionInput,
    InvalidInputError,
    classify_inputs,
    load_directory_input,
    load_zip_input,
    normalize_picker_paths,
)
from indexer_lib import InputFile, Reporter


def make_zip(entries: dict) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()


# ─── Zip input ─────────────────────────────────────────────────────────────

class TestLoadZipInput:
    def test_reads_entries_relative_to_root(self):
        raw = make_zip({
            "data/20200101000000000/index.html": "<html></html>",
            "tree/meta.js": "",
        })
        collection = load_zip_input(raw, name="WSB")
        assert collection.name == "WSB"
        assert sorted(f.path for f in collection.files) == [
            "data/20200101000000000/index.html",
            "tree/meta.js",
        ]
        assert collection.files[0].read() == b"<html></html>"

    def test_strips_top_folder_named_after_zip(self):
        raw = make_zip({
            "WSB/": "",
            "WSB/data/20200101000000000/index.html": "x",
        })
        reporter = Reporter(echo=False)
        collection = load_zip_input(raw, name="WSB", reporter=reporter)
        assert [f.path for f in collection.files] == ["data/20200101000000000/index.html"]
        assert any("Stripped root directory" in m for m in reporter.errors())

    def test_zip_without_data_dir_is_rejected(self):
        reporter = Reporter(echo=False)
        assert load_zip_input(make_zip({"readme.txt": "hi"}), name="x", reporter=reporter) is None
        assert "Skipped invalid zip of ScrapBook folder." in reporter.errors()

    def test_malformed_zip_raises(self):
        with pytest.raises(InvalidInputError):
            load_zip_input(b"not a zip at all", name="broken")

    def test_entry_times_are_aware(self):
        collection = load_zip_input(make_zip({"data/a.html": "x"}), name="c")
        assert collection.files[0].last_modified.tzinfo is not None

    def test_zip_path_uses_stem_as_name(self, tmp_path):
        zip_path = tmp_path / "My Book.zip"
        zip_path.write_bytes(make_zip({"data/a.html": "x"}))
        assert load_zip_input(zip_path).name == "My Book"

    def test_entry_sizes_from_directory(self):
        collection = load_zip_input(make_zip({"data/a.html": "12345", "data/b.png": ""}), name="c")
        assert {f.path: f.size for f in collection.files} == {"data/a.html": 5, "data/b.png": 0}


# ─── Picker path normalization ─────────────────────────────────────────────

class TestNormalizePickerPaths:
    def test_collection_root_picked(self):
        paths, layout = normalize_picker_paths(["WSB/data/1/index.html", "WSB/tree/meta.js"])
        assert layout == "root"
        assert paths == ["data/1/index.html", "tree/meta.js"]

    def test_data_root_picked(self):
        paths, layout = normalize_picker_paths(["data/20200101000000000/index.html"])
        assert layout == "data-root"
        assert paths == ["data/20200101000000000/index.html"]

    def test_item_folder_picked(self):
        reporter = Reporter(echo=False)
        paths, layout = normalize_picker_paths(["20200101000000000/index.html"], reporter)
        assert layout == "item-dir"
        assert paths == ["data/20200101000000000/index.html"]
        assert any("inside data/" in m for m in reporter.infos())


class TestLoadDirectoryInput:
    def test_walks_collection_folder(self, tmp_path):
        root = tmp_path / "WSB"
        (root / "data" / "20200101000000000").mkdir(parents=True)
        (root / "data" / "20200101000000000" / "index.html").write_text("<html></html>")
        (root / "tree").mkdir()
        (root / "tree" / "meta.js").write_text("")
        collection = load_directory_input(root)
        assert collection.name == "WSB"
        assert [f.path for f in collection.files] == [
            "data/20200101000000000/index.html",
            "tree/meta.js",
        ]

    def test_folder_without_data_is_rejected(self, tmp_path):
        (tmp_path / "empty" / "misc").mkdir(parents=True)
        (tmp_path / "empty" / "misc" / "a.txt").write_text("a")
        reporter = Reporter(echo=False)
        assert load_directory_input(tmp_path / "empty", reporter) is None
        assert "Skipped invalid ScrapBook folder." in reporter.errors()

    def test_size_known_without_reading(self, tmp_path):
        root = tmp_path / "WSB"
        (root / "data").mkdir(parents=True)
        (root / "data" / "a.png").write_bytes(b"12345")
        collection = load_directory_input(root)
        (root / "data" / "a.png").unlink()
        assert collection.files[0].size == 5


class TestInputFileSize:
    def test_given_size_skips_loader(self):
        def loader():
            raise AssertionError("file contents were read")

        assert InputFile("tree/favicon/x.png", None, loader, 0).size == 0

    def test_size_falls_back_to_contents(self):
        assert InputFile("a", None, lambda: b"abc").size == 3


# ─── Classification ────────────────────────────────────────────────────────

class TestClassifyInputs:
    def test_partitions_files(self):
        collection = CollectionInput("c", [
            InputFile.from_bytes("scrapbook.rdf", b"<rdf/>"),
            InputFile.from_bytes("tree/meta.js", b""),
            InputFile.from_bytes("data/20200101000000000/index.html", b""),
            InputFile.from_bytes("data/20200101000000000/img/a.png", b""),
            InputFile.from_bytes("data/20200102000000000.htz", b""),
            InputFile.from_bytes("other/file.txt", b""),
        ])
        classified = classify_inputs(collection)
        assert classified.legacy_rdf.path == "scrapbook.rdf"
        assert list(classified.tree_files) == ["tree/meta.js"]
        assert sorted(classified.item_files) == ["20200101000000000", "20200102000000000"]
        assert sorted(classified.item_files["20200101000000000"]) == [
            "20200101000000000/img/a.png",
            "20200101000000000/index.html",
        ]
        assert list(classified.item_files["20200102000000000"]) == ["20200102000000000.htz"]
