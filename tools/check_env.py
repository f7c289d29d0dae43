#!/usr/bin/env python3
"""ScrapBook indexer environment sanity-check.

Checks:
- Python version (>= 3.10)
- Third-party dependencies importable, with installed versions
- Bundled resources present (page templates, tree icons)
- config/indexer.yaml valid against its schema
"""

from __future__ import annotations

import argparse
import importlib
import platform
import sys
from importlib import metadata
from pathlib import Path

MIN_PY = (3, 10)

# (import name, distribution name)
REQUIRED = [
    ("yaml", "PyYAML"),
    ("jsonschema", "jsonschema"),
    ("httpx", "httpx"),
    ("bs4", "beautifulsoup4"),
]


def find_repo_root(start: Path) -> Path:
    """Find the repo root by walking parents.

    Repo root is the folder containing:
      - pyproject.toml
      - tools/
    """
    cur = start.resolve()
    for _ in range(8):
        if (cur / "pyproject.toml").exists() and (cur / "tools").is_dir():
            return cur
        if cur.parent == cur:
            break
        cur = cur.parent
    raise SystemExit(
        "ERROR: Could not find repo root (folder with pyproject.toml and tools/). "
        "Run from inside the repo, or pass --repo-root."
    )


def get_installed_version(dist_name: str) -> str | None:
    try:
        return metadata.version(dist_name)
    except metadata.PackageNotFoundError:
        return None


def check_python_version() -> list[str]:
    issues: list[str] = []
    if sys.version_info < MIN_PY:
        issues.append(
            f"Python >= {MIN_PY[0]}.{MIN_PY[1]} required; found {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}."
        )
    return issues


def check_import(module: str, pip_name: str) -> tuple[bool, str | None]:
    try:
        importlib.import_module(module)
        return True, None
    except ImportError as e:
        return False, f"Missing module '{module}'. Install '{pip_name}' (pip install -e .). ({e})"


def check_resources(repo: Path) -> list[str]:
    issues: list[str] = []
    for name in ("map.html", "frame.html"):
        if not (repo / "resources" / "templates" / name).is_file():
            issues.append(f"Missing page template resources/templates/{name}")
    for name in ("toggle", "collapse", "expand", "external", "item", "fclose", "fopen", "note", "postit"):
        if not (repo / "resources" / "icon" / f"{name}.png").is_file():
            issues.append(f"Missing tree icon resources/icon/{name}.png")
    return issues


def check_config(repo: Path) -> list[str]:
    sys.path.insert(0, str(repo / "tools"))
    from build_index import ConfigError, load_config

    try:
        load_config(repo / "config" / "indexer.yaml")
    except ConfigError as e:
        return [str(e)]
    return []


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--repo-root", default=None, help="Path to the repo root (contains pyproject.toml)")
    args = ap.parse_args()

    start = Path(args.repo_root) if args.repo_root else Path.cwd()
    repo = find_repo_root(start)

    print("ScrapBook indexer environment check")
    print("-" * 72)
    print(f"Repo root: {repo}")
    print(f"Python: {sys.executable}")
    print(f"Python version: {sys.version.splitlines()[0]}")
    print(f"OS: {platform.system()} {platform.release()} ({platform.platform()})")

    issues: list[str] = []
    issues.extend(check_python_version())

    print("\nDependencies:")
    for mod, pip_name in REQUIRED:
        ok, msg = check_import(mod, pip_name)
        if not ok and msg:
            issues.append(msg)
            print(f"  - {pip_name}: NOT INSTALLED")
        else:
            print(f"  - {pip_name}: {get_installed_version(pip_name) or 'unknown version'}")

    issues.extend(check_resources(repo))
    if not issues:
        issues.extend(check_config(repo))

    print("\nResult:")
    if issues:
        print("ENV CHECK: FAIL")
        for i in issues:
            print(f"- {i}")
        print("\nFix:")
        print("  python -m venv .venv")
        if platform.system().lower().startswith("win"):
            print("  .\\.venv\\Scripts\\Activate.ps1")
        else:
            print("  source .venv/bin/activate")
        print("  python -m pip install -e '.[test]'")
        raise SystemExit(2)
    print("ENV CHECK: PASS")
    print("Next:")
    print("  python -m pytest tests/")


if __name__ == "__main__":
    main()
