""".gitignore-aware filtering helpers."""

import os
import logging
from typing import Dict, Optional, Set

import pathspec

logger = logging.getLogger(__name__)

_ALWAYS_SKIP_DIRS: Set[str] = {
    ".git", "node_modules", "__pycache__", ".venv", "venv",
    ".mypy_cache", ".pytest_cache", ".tox", ".eggs",
    "dist", "build", ".next", ".cache", "coverage", "htmlcov",
}

_ALWAYS_SKIP_EXTENSIONS: Set[str] = {
    ".pyc", ".pyo", ".so", ".dylib", ".o", ".a", ".class",
    ".min.js", ".min.css", ".map",
}

# Never copied into a sandbox: VCS metadata and dependency-manager trees.
SANDBOX_SKIP_DIRS: Set[str] = {".git", "node_modules"}

_gitignore_cache: Dict[str, Optional[pathspec.PathSpec]] = {}


def _load_gitignore(working_directory: str) -> Optional[pathspec.PathSpec]:
    """Load and cache .gitignore patterns for a project root.

    Returns a PathSpec matcher or None if no .gitignore exists.
    """
    working_directory = os.path.abspath(working_directory)
    if working_directory in _gitignore_cache:
        return _gitignore_cache[working_directory]

    spec = None
    gitignore_path = os.path.join(working_directory, ".gitignore")
    try:
        if os.path.isfile(gitignore_path):
            with open(gitignore_path, "r", encoding="utf-8", errors="replace") as f:
                spec = pathspec.PathSpec.from_lines("gitwildmatch", f)
    except (OSError, ValueError) as e:
        logger.debug(f"Failed to parse .gitignore: {e}")

    _gitignore_cache[working_directory] = spec
    return spec


def _is_ignored(rel_path: str, name: str, is_dir: bool,
                gitignore_spec: Optional[pathspec.PathSpec]) -> bool:
    """Check if a path should be ignored based on .gitignore + hardcoded skips."""
    if name in _ALWAYS_SKIP_DIRS and is_dir:
        return True
    if not is_dir:
        _, ext = os.path.splitext(name)
        if ext in _ALWAYS_SKIP_EXTENSIONS:
            return True
    if gitignore_spec:
        check_path = rel_path + "/" if is_dir else rel_path
        if gitignore_spec.match_file(check_path):
            return True
    return False


def sandbox_copy_ignore(directory: str, names):
    """``shutil.copytree`` ignore callback for sandbox workspace copies."""
    return {n for n in names if n in SANDBOX_SKIP_DIRS and os.path.isdir(os.path.join(directory, n))}
