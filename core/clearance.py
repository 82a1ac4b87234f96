"""Release clearance: a short-lived signed credential for irreversible releases.

A clearance is bound to one app, one project directory and one git revision,
and expires a fixed TTL after it was issued.  There is no renewal; a stale
clearance is void and the release pipeline must be cleared again.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from core.config import Context
from core.decision import Decision, PolicyViolation
from core.state_store import StateStore
from policies.default_policies import (
    PROJECT_FLAG_PATTERN,
    RELEASE_ALWAYS_ALLOWED,
    RELEASE_COMMAND_PATTERN,
    RELEASE_GATE_FLAG_PATTERN,
    SHELL_CONTROL_PATTERN,
)
from tools.fs_tool import ManifestError, read_app_name
from tools.git_tool import GitError, head_sha

logger = logging.getLogger(__name__)

_APP_NAME_RE = re.compile(r"\A[A-Za-z0-9][A-Za-z0-9._-]*\Z")

_RECLEAR = "   Run the release clearance pipeline again (scripts/grant_clearance.py)."


@dataclass(frozen=True)
class ClearanceDoc:
    app: str
    project_dir: str
    git_sha: str
    cleared_at: str
    expires_at: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "app": self.app,
            "project_dir": self.project_dir,
            "git_sha": self.git_sha,
            "cleared_at": self.cleared_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ClearanceDoc:
        fields = ("app", "project_dir", "git_sha", "cleared_at", "expires_at")
        values = {name: payload.get(name) for name in fields}
        missing = [name for name, value in values.items() if not isinstance(value, str) or not value]
        if missing:
            raise ValueError(f"clearance missing fields: {', '.join(missing)}")
        doc = cls(**values)  # type: ignore[arg-type]
        doc.cleared_at_dt()
        doc.expires_at_dt()
        return doc

    def cleared_at_dt(self) -> datetime:
        return _parse_ts(self.cleared_at)

    def expires_at_dt(self) -> datetime:
        return _parse_ts(self.expires_at)


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        raise ValueError(f"timestamp without timezone: {value!r}")
    return ts


def is_release_command(command: str) -> bool:
    """release.sh with --full or --deploy; a standalone preflight run never counts."""
    if RELEASE_ALWAYS_ALLOWED.match(command) and not SHELL_CONTROL_PATTERN.search(command):
        return False
    return bool(RELEASE_COMMAND_PATTERN.search(command) and RELEASE_GATE_FLAG_PATTERN.search(command))


class ReleaseClearance:
    def __init__(
        self,
        ctx: Context,
        store: StateStore | None = None,
        sha_lookup: Callable[[Path, float], str] = head_sha,
    ):
        self.ctx = ctx
        self.store = store or StateStore(ctx.clearance_dir, ctx.signer, ctx.policy.lock_timeout_seconds)
        self._sha_lookup = sha_lookup

    @staticmethod
    def key_for(app: str) -> str:
        if not _APP_NAME_RE.match(app):
            raise PolicyViolation(f"Invalid app name for clearance: {app!r}", "invalid_app")
        return f"{app}.json"

    # ── checking ──────────────────────────────────────────────────

    def check_clearance(self, app: str, project_dir: str, current_git_sha: str) -> Decision:
        try:
            self._verify(app, project_dir, current_git_sha)
        except PolicyViolation as exc:
            logger.info("release blocked for %s: %s", app, exc.code)
            return Decision.from_violation(exc, "release_clearance")
        logger.info("release clearance valid for %s at %s", app, current_git_sha[:8])
        return Decision.allow("release_clearance")

    def _verify(self, app: str, project_dir: str, current_git_sha: str) -> None:
        payload = self.store.read_verified(self.key_for(app))
        if payload is None:
            raise PolicyViolation(
                f"No valid release clearance for {app} (missing/invalid clearance)\n"
                "   The clearance file is absent, corrupted, or was not signed by this host.\n"
                + _RECLEAR,
                "clearance_missing",
            )
        try:
            doc = ClearanceDoc.from_payload(payload)
        except ValueError as exc:
            raise PolicyViolation(
                f"Release clearance for {app} is malformed: {exc}\n" + _RECLEAR,
                "clearance_missing",
            )

        if doc.app != app:
            raise PolicyViolation(
                f"Clearance is for {doc.app}, not {app}\n"
                "   Run the clearance pipeline in the correct project directory.",
                "app_mismatch",
            )

        if doc.git_sha != current_git_sha:
            raise PolicyViolation(
                f"Clearance is for sha {doc.git_sha}, not {current_git_sha}\n"
                "   A commit was made after clearance.\n" + _RECLEAR,
                "sha_mismatch",
            )

        # The signed expiry can never extend the fixed window from cleared_at.
        window_end = doc.cleared_at_dt() + timedelta(seconds=self.ctx.policy.clearance_ttl_seconds)
        expires = min(doc.expires_at_dt(), window_end)
        if self.ctx.now() >= expires:
            raise PolicyViolation(
                f"Release clearance expired for {app}\n"
                f"   Cleared at: {doc.cleared_at}\n"
                f"   Expired at: {expires.isoformat()}\n"
                f"   Clearance has a {self.ctx.policy.clearance_ttl_seconds // 3600}-hour TTL.\n"
                + _RECLEAR,
                "expired",
            )

        if doc.project_dir != project_dir:
            raise PolicyViolation(
                f"Clearance project mismatch for {app}\n"
                f"   Clearance dir: {doc.project_dir}\n"
                f"   Current dir:   {project_dir}",
                "project_mismatch",
            )

    def check_release_command(self, command: str) -> Decision:
        """Full gate for a Bash command: detection, manifest, HEAD, clearance."""
        if not is_release_command(command):
            return Decision.allow("release_clearance")

        project_dir = self._project_dir_for(command)
        try:
            app = read_app_name(project_dir / self.ctx.manifest_path.name)
        except ManifestError as exc:
            return Decision.block(
                f"Cannot determine app name for release: {exc}",
                "manifest_invalid",
                "release_clearance",
            )
        if app is None:
            app = self._app_cleared_for(project_dir)
        if app is None:
            # Not a managed project.
            return Decision.allow("release_clearance")

        try:
            current = self._sha_lookup(project_dir, self.ctx.policy.git_timeout_seconds)
        except GitError as exc:
            return Decision.block(
                f"Cannot verify release clearance for {app}: {exc}\n"
                "   The current revision must be readable before a release is allowed.",
                "sha_unavailable",
                "release_clearance",
            )
        return self.check_clearance(app, str(project_dir), current)

    def _project_dir_for(self, command: str) -> Path:
        match = PROJECT_FLAG_PATTERN.search(command)
        if not match:
            return self.ctx.project_dir
        raw = Path(match.group(1).strip("\"'")).expanduser()
        if not raw.is_absolute():
            raw = self.ctx.project_dir / raw
        return raw.resolve()

    def _app_cleared_for(self, project_dir: Path) -> str | None:
        """App named by a signed clearance for *project_dir*, manifest or not."""
        if not self.ctx.clearance_dir.is_dir():
            return None
        for path in sorted(self.ctx.clearance_dir.glob("*.json")):
            payload = self.store.read_verified(path.name)
            if not payload or payload.get("project_dir") != str(project_dir):
                continue
            app = payload.get("app")
            if isinstance(app, str) and app:
                logger.info("%s has no manifest but holds a clearance for %s", project_dir, app)
                return app
        return None

    # ── issuing ───────────────────────────────────────────────────

    def issue_clearance(self, app: str, project_dir: Path) -> ClearanceDoc:
        """Write a clearance for the current HEAD.  Raises GitError / StateWriteError."""
        sha = self._sha_lookup(project_dir, self.ctx.policy.git_timeout_seconds)
        now = self.ctx.now()
        doc = ClearanceDoc(
            app=app,
            project_dir=str(project_dir),
            git_sha=sha,
            cleared_at=now.isoformat(),
            expires_at=(now + timedelta(seconds=self.ctx.policy.clearance_ttl_seconds)).isoformat(),
        )
        self.store.write_signed(self.key_for(app), doc.to_payload())
        logger.info("release clearance issued for %s at %s", app, sha[:8])
        return doc
