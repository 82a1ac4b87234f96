"""Git revision lookup via subprocess, always bounded by a timeout."""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

_SHA_RE = re.compile(r"\A[0-9a-f]{40}(?:[0-9a-f]{24})?\Z")


class GitError(Exception):
    """The current revision could not be determined."""


def head_sha(project_dir: Path, timeout: float = 5.0) -> str:
    """Return the full HEAD SHA of *project_dir*.

    This is the only way a revision is computed, both when a clearance is
    issued and when it is checked.  Timeouts and non-zero exits raise
    GitError; callers treat that as a failed verification.
    """
    cmd = ["git", "-C", str(project_dir), "rev-parse", "HEAD"]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise GitError(f"git rev-parse timed out after {timeout:.0f}s in {project_dir}")
    except OSError as exc:
        raise GitError(f"cannot run git: {exc}")

    if result.returncode != 0:
        raise GitError(f"git rev-parse failed in {project_dir}: {result.stderr.strip()}")

    sha = result.stdout.strip().lower()
    if not _SHA_RE.match(sha):
        raise GitError(f"unexpected git rev-parse output: {sha!r}")
    logger.debug("HEAD of %s is %s", project_dir, sha)
    return sha
