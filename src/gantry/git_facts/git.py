# git.py
# Small, focused wrapper around the Git CLI.
# Run context defaults (sha, ref, repository) come from here so the rest of
# the codebase never calls subprocess("git ...") directly.

from __future__ import annotations

import re
import subprocess
from typing import Optional

_REMOTE = re.compile(r"(?:[:/])(?P<owner>[^/:]+)/(?P<name>[^/]+?)(?:\.git)?/?$")


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    A non-zero exit raises CalledProcessError; callers decide whether a
    missing fact is fatal.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of the current HEAD commit. Immutable image tags are keyed by it."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Fully qualified ref of HEAD.

    Returns `refs/heads/<branch>` on a branch, otherwise the detached commit SHA.
    """
    try:
        return _git(["symbolic-ref", "--quiet", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def repository_from_remote(url: str) -> Optional[str]:
    """
    `owner/name` from a remote URL.

        git@github.com:acme/api.git       -> acme/api
        https://github.com/acme/api       -> acme/api
    """
    m = _REMOTE.search(url.strip())
    if not m:
        return None
    return f"{m.group('owner')}/{m.group('name')}"
