"""Append-only JSONL logs kept in the project state directory.

- reset_audit.jsonl     every reset / override, with actor attribution
- enforcement.jsonl     approvals, corrections and other rule events
- prompt_log.jsonl      truncated prompts with what was detected in them
- research_findings.jsonl  written by the research tooling; only read here
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from core.state_store import StateWriteError

logger = logging.getLogger(__name__)

RESET_LOG = "reset_audit.jsonl"
ENFORCEMENT_LOG = "enforcement.jsonl"
PROMPT_LOG = "prompt_log.jsonl"
FINDINGS_LOG = "research_findings.jsonl"

# How many chars of a prompt to persist
_PROMPT_TRUNCATE = 500


def append_jsonl(path: Path, entry: dict[str, Any]) -> None:
    """Append one JSON line under an exclusive lock and fsync it."""
    line = json.dumps(entry, ensure_ascii=False, sort_keys=True) + "\n"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            try:
                fh.write(line)
                fh.flush()
                os.fsync(fh.fileno())
            finally:
                fcntl.flock(fh, fcntl.LOCK_UN)
    except OSError as exc:
        raise StateWriteError(f"cannot append to {path}: {exc}") from exc


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Read every well-formed object line.  Missing file → []."""
    try:
        with open(path, encoding="utf-8") as fh:
            fcntl.flock(fh, fcntl.LOCK_SH)
            try:
                raw_lines = fh.readlines()
            finally:
                fcntl.flock(fh, fcntl.LOCK_UN)
    except FileNotFoundError:
        return []
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("cannot read %s: %s", path, exc)
        return []

    entries: list[dict[str, Any]] = []
    for line in raw_lines:
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(entry, dict):
            entries.append(entry)
    return entries


class AuditLog:
    def __init__(self, state_dir: Path, clock: Callable[[], datetime]):
        self.state_dir = state_dir
        self._clock = clock

    def _stamp(self) -> str:
        return self._clock().isoformat()

    def log_reset(self, reset_type: str, reason: str, actor: str = "user") -> None:
        """Record a reset.  Raises StateWriteError; callers log before mutating."""
        append_jsonl(
            self.state_dir / RESET_LOG,
            {
                "timestamp": self._stamp(),
                "reset_type": reset_type,
                "reason": reason,
                "actor": actor,
                "pid": os.getpid(),
            },
        )
        logger.info("reset logged: %s by %s (%s)", reset_type, actor, reason)

    def log_enforcement(self, rule: str, hook: str, action: str, details: str) -> None:
        append_jsonl(
            self.state_dir / ENFORCEMENT_LOG,
            {
                "timestamp": self._stamp(),
                "rule": rule,
                "hook": hook,
                "action": action,
                "details": details,
            },
        )

    def log_prompt(
        self,
        prompt: str,
        triggers: list[str],
        modifiers: list[str],
        frustration: list[str],
    ) -> None:
        append_jsonl(
            self.state_dir / PROMPT_LOG,
            {
                "timestamp": self._stamp(),
                "prompt": prompt[:_PROMPT_TRUNCATE],
                "triggers": triggers,
                "modifiers": modifiers,
                "frustration": frustration,
            },
        )

    def resets(self) -> list[dict[str, Any]]:
        return read_jsonl(self.state_dir / RESET_LOG)

    def findings(self) -> list[dict[str, Any]]:
        return read_jsonl(self.state_dir / FINDINGS_LOG)
