# git.py
# Small wrapper around the Git CLI, used to derive a trigger from the
# checkout the CLI runs in.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
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


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def exact_tag(cwd: Optional[str] = None) -> Optional[str]:
    """The tag pointing exactly at HEAD, if any."""
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Fully qualified ref for HEAD.

    A tag at HEAD wins (refs/tags/<tag>), then the checked out branch
    (refs/heads/<branch>); a detached HEAD yields its SHA.
    """
    tag = exact_tag(cwd=cwd)
    if tag:
        return f"refs/tags/{tag}"
    try:
        return _git(["symbolic-ref", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)
