"""
Changed-files provider.

Collects the files under review from git: staged changes for a local run,
or the ``BASE_SHA...GITHUB_SHA`` range inside a GitHub Actions pull request.
"""

import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

_HUNK_RE = re.compile(r"^@@ -\d+(?:,\d+)? \+(\d+)(?:,(\d+))? @@", re.MULTILINE)


class PlatformOption(str, Enum):
    LOCAL = "local"
    GITHUB = "github"


class ChangedFilesError(Exception):
    """git could not produce the list of changed files"""


@dataclass
class ChangedFile:
    file_name: str
    file_content: str
    # 1-based inclusive (start, end) line ranges touched by the change
    changed_ranges: List[Tuple[int, int]] = field(default_factory=list)

    def to_dict(self):
        return {
            "fileName": self.file_name,
            "changedRanges": [list(r) for r in self.changed_ranges],
        }


def _git(args: List[str], cwd: str, timeout: int = 30) -> str:
    try:
        proc = subprocess.run(
            ["git", *args], cwd=cwd, capture_output=True, text=True,
            errors="replace", timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise ChangedFilesError(f"git {' '.join(args)} failed: {e}")
    if proc.returncode != 0:
        raise ChangedFilesError(f"git {' '.join(args)} failed: {proc.stderr.strip()}")
    return proc.stdout


def get_git_root(cwd: str = ".") -> str:
    return _git(["rev-parse", "--show-toplevel"], cwd).strip()


def get_diff_range(platform: PlatformOption) -> List[str]:
    """git diff arguments selecting the change under review."""
    if PlatformOption(platform) == PlatformOption.GITHUB:
        base = os.getenv("BASE_SHA", "").strip()
        head = os.getenv("GITHUB_SHA", "").strip() or "HEAD"
        if not base:
            raise ChangedFilesError("BASE_SHA is not set; cannot compute the pull request diff.")
        return [f"{base}...{head}"]
    return ["--cached"]


def parse_changed_ranges(diff_text: str) -> List[Tuple[int, int]]:
    """Line ranges added or modified on the new side of a ``-U0`` diff."""
    ranges = []
    for match in _HUNK_RE.finditer(diff_text or ""):
        start = int(match.group(1))
        count = int(match.group(2)) if match.group(2) is not None else 1
        if count == 0:
            continue
        ranges.append((start, start + count - 1))
    return ranges


def get_changed_file_names(platform: PlatformOption, cwd: str = ".") -> List[str]:
    out = _git(["diff", "--name-only", "--diff-filter=AMRT", *get_diff_range(platform)], cwd)
    return [line.strip() for line in out.splitlines() if line.strip()]


def get_file_diff(file_name: str, platform: PlatformOption, cwd: str = ".") -> str:
    return _git(["diff", "--diff-filter=AMRT", "-U0", *get_diff_range(platform), "--", file_name], cwd)


def get_changed_files(platform: PlatformOption, cwd: Optional[str] = None) -> List[ChangedFile]:
    """Changed files with their current contents and touched line ranges."""
    root = get_git_root(cwd or ".")
    files = []
    for name in get_changed_file_names(platform, root):
        path = os.path.join(root, name)
        if not os.path.isfile(path):
            logger.debug(f"Skipping {name}: not a regular file in the working tree")
            continue
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            content = f.read()
        ranges = parse_changed_ranges(get_file_diff(name, platform, root))
        files.append(ChangedFile(file_name=name, file_content=content, changed_ranges=ranges))
    logger.info(f"Found {len(files)} changed file(s) in {root}")
    return files
