# git.py
# Small, focused wrapper around the Git CLI, used to default event fields
# (branch, sha) from the checkout the CLI runs in.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """Name of the checked-out branch ("HEAD" when detached)."""
    return _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def safe_branch(default: str = "master", cwd: Optional[str | Path] = None) -> str:
    try:
        branch = current_branch(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return default
    return default if branch == "HEAD" else branch


def safe_sha(cwd: Optional[str | Path] = None) -> Optional[str]:
    try:
        return head_sha(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
