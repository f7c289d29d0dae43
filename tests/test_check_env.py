"""
Tests for the environment check (tools/check_env.py)

Run: pytest tests/test_check_env.py -v
"""

import sys
from pathlib import Path

import pytest

REPO = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(REPO / "tools"))

from check_env import (
    check_config,
    check_import,
    check_resources,
    find_repo_root,
)


class TestFindRepoRoot:
    def test_from_subfolder(self):
        assert find_repo_root(REPO / "tests") == REPO

    def test_outside_repo(self, tmp_path):
        with pytest.raises(SystemExit):
            find_repo_root(tmp_path)


class TestChecks:
    def test_installed_module(self):
        assert check_import("json", "json") == (True, None)

    def test_missing_module(self):
        ok, msg = check_import("no_such_module_here", "no-such-dist")
        assert not ok
        assert "Install 'no-such-dist'" in msg

    def test_bundled_resources_present(self):
        assert check_resources(REPO) == []

    def test_missing_resources(self, tmp_path):
        issues = check_resources(tmp_path)
        assert "Missing page template resources/templates/map.html" in issues
        assert len(issues) == 11

    def test_shipped_config_valid(self):
        assert check_config(REPO) == []
