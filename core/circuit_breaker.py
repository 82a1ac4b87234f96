"""Circuit breaker: stop automated retries after repeated failures.

closed ──(TRIP_THRESHOLD failures)──▶ tripped ──(session start)──▶ tripped, pending reset
   ▲                                                                      │
   └──────────────────────(user approved reset)───────────────────────────┘

Nothing but ``user_approved_reset`` leads back to closed.  A breaker file that
exists but cannot be verified is sealed as tripped (``unverifiable_state``) so
that tampering fails closed and the normal reset command still applies.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from core.audit_log import AuditLog
from core.config import Context
from core.decision import Decision
from core.state_store import MISSING, StateStore, StateStoreError
from policies.default_policies import ERROR_SIGNATURES

logger = logging.getLogger(__name__)

BREAKER_KEY = "circuit_breaker.json"
UNVERIFIABLE_REASON = "unverifiable_state"

_SLUG_RE = re.compile(r"[^a-z]+")
_SLUG_MAX = 48


class BreakerPhase(Enum):
    CLOSED = "closed"
    TRIPPED = "tripped"
    PENDING_RESET = "tripped-pending-reset"


@dataclass(frozen=True)
class BreakerState:
    failures: int = 0
    tripped: bool = False
    trip_reason: str | None = None
    tripped_at: str | None = None
    pending_user_reset: bool = False
    error_signatures: dict[str, int] = field(default_factory=dict)
    session_started_while_tripped: str | None = None
    reset_at: str | None = None
    reset_reason: str | None = None

    @property
    def phase(self) -> BreakerPhase:
        if not self.tripped:
            return BreakerPhase.CLOSED
        return BreakerPhase.PENDING_RESET if self.pending_user_reset else BreakerPhase.TRIPPED

    # ── transitions (pure) ────────────────────────────────────────

    def with_failure(self, signature: str, now: datetime, threshold: int) -> BreakerState:
        counts = dict(self.error_signatures)
        counts[signature] = counts.get(signature, 0) + 1
        failures = self.failures + 1
        if self.tripped or failures < threshold:
            return replace(self, failures=failures, error_signatures=counts)
        return replace(
            self,
            failures=failures,
            error_signatures=counts,
            tripped=True,
            trip_reason=signature,
            tripped_at=now.isoformat(),
        )

    def with_success(self) -> BreakerState:
        if self.tripped:
            return self
        return replace(self, failures=0)

    def with_session_start(self, now: datetime) -> BreakerState:
        if not self.tripped:
            # Stale counts from a finished session do not carry over.
            return replace(self, failures=0)
        return replace(
            self,
            pending_user_reset=True,
            session_started_while_tripped=now.isoformat(),
        )

    def with_reset(self, now: datetime, reason: str) -> BreakerState:
        return BreakerState(reset_at=now.isoformat(), reset_reason=reason)

    # ── serialization ─────────────────────────────────────────────

    def to_payload(self) -> dict[str, Any]:
        return {
            "failures": self.failures,
            "tripped": self.tripped,
            "trip_reason": self.trip_reason,
            "tripped_at": self.tripped_at,
            "pending_user_reset": self.pending_user_reset,
            "error_signatures": dict(self.error_signatures),
            "session_started_while_tripped": self.session_started_while_tripped,
            "reset_at": self.reset_at,
            "reset_reason": self.reset_reason,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> BreakerState:
        """Raises ValueError if the payload does not match the schema."""
        failures = payload.get("failures", 0)
        tripped = payload.get("tripped", False)
        pending = payload.get("pending_user_reset", False)
        signatures = payload.get("error_signatures") or {}
        if not isinstance(failures, int) or isinstance(failures, bool) or failures < 0:
            raise ValueError(f"bad failures value: {failures!r}")
        if not isinstance(tripped, bool) or not isinstance(pending, bool):
            raise ValueError("tripped / pending_user_reset must be booleans")
        if not isinstance(signatures, dict) or not all(
            isinstance(k, str) and isinstance(v, int) for k, v in signatures.items()
        ):
            raise ValueError("error_signatures must map str → int")
        optional = {}
        for name in ("trip_reason", "tripped_at", "session_started_while_tripped", "reset_at", "reset_reason"):
            value = payload.get(name)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"{name} must be a string or null")
            optional[name] = value
        return cls(
            failures=failures,
            tripped=tripped,
            pending_user_reset=pending,
            error_signatures=dict(signatures),
            **optional,
        )


@dataclass(frozen=True)
class ResetResult:
    code: str                       # "reset" | "breaker_missing" | "breaker_not_tripped"
    previous_reason: str | None = None


def classify_error(text: str) -> str:
    """Map free-form error output to a stable signature."""
    for signature, pattern in ERROR_SIGNATURES:
        if pattern.search(text):
            return signature
    first_line = next((line for line in text.splitlines() if line.strip()), "")
    slug = _SLUG_RE.sub("_", first_line.lower()).strip("_")[:_SLUG_MAX].rstrip("_")
    return slug or "unknown_error"


class CircuitBreaker:
    def __init__(self, ctx: Context, store: StateStore | None = None, audit: AuditLog | None = None):
        self.ctx = ctx
        self.store = store or StateStore(ctx.state_dir, ctx.signer, ctx.policy.lock_timeout_seconds)
        self.audit = audit or AuditLog(ctx.state_dir, ctx.clock)

    # ── reads ─────────────────────────────────────────────────────

    def load(self) -> BreakerState | None:
        """Verified state; a fresh closed state when no file exists.

        Returns None when a file exists but cannot be trusted.
        """
        result = self.store.inspect(BREAKER_KEY)
        if result.status == MISSING:
            return BreakerState()
        if not result.ok:
            return None
        try:
            return BreakerState.from_payload(result.payload)  # type: ignore[arg-type]
        except ValueError as exc:
            logger.warning("breaker state rejected: %s", exc)
            return None

    def check(self) -> Decision:
        """Allow unless tripped; untrusted state counts as tripped."""
        state = self.load()
        if state is None:
            state = self._seal_untrusted()
        if not state.tripped:
            return Decision.allow("circuit_breaker")
        return Decision.block(self._block_message(state), "breaker_tripped", "circuit_breaker")

    # ── transitions ───────────────────────────────────────────────

    def record_failure(self, signature: str) -> BreakerState:
        with self.store.locked(BREAKER_KEY):
            state = self._load_for_update()
            updated = state.with_failure(signature, self.ctx.now(), self.ctx.policy.trip_threshold)
            self.store.write_signed(BREAKER_KEY, updated.to_payload())
        if updated.tripped and not state.tripped:
            logger.warning("circuit breaker TRIPPED after %d failures (%s)", updated.failures, signature)
        else:
            logger.info("failure recorded: %s (%d total)", signature, updated.failures)
        return updated

    def record_success(self) -> BreakerState:
        with self.store.locked(BREAKER_KEY):
            state = self._load_for_update()
            updated = state.with_success()
            if updated != state:
                self.store.write_signed(BREAKER_KEY, updated.to_payload())
        return updated

    def on_session_start(self) -> BreakerState:
        with self.store.locked(BREAKER_KEY):
            state = self._load_for_update()
            updated = state.with_session_start(self.ctx.now())
            if updated != state:
                self.store.write_signed(BREAKER_KEY, updated.to_payload())
        if updated.tripped:
            logger.warning("session started with breaker still tripped (%s)", updated.trip_reason)
        return updated

    def user_approved_reset(self, reason: str = "user_approved") -> ResetResult:
        """Clear a tripped breaker.  Only ever called for a user command."""
        with self.store.locked(BREAKER_KEY):
            result = self.store.inspect(BREAKER_KEY)
            if not result.ok:
                return ResetResult("breaker_missing")
            try:
                state = BreakerState.from_payload(result.payload)  # type: ignore[arg-type]
            except ValueError:
                return ResetResult("breaker_missing")
            if not state.tripped:
                return ResetResult("breaker_not_tripped")

            self.audit.log_reset(
                "circuit_breaker",
                f"User approved breaker reset (was tripped: {state.trip_reason})",
                actor="user",
            )
            self.store.write_signed(BREAKER_KEY, state.with_reset(self.ctx.now(), reason).to_payload())
        logger.info("circuit breaker reset by user (was: %s)", state.trip_reason)
        return ResetResult("reset", state.trip_reason)

    # ── helpers ───────────────────────────────────────────────────

    def _load_for_update(self) -> BreakerState:
        state = self.load()
        if state is None:
            return self._untrusted_state()
        return state

    def _untrusted_state(self) -> BreakerState:
        return BreakerState(
            tripped=True,
            trip_reason=UNVERIFIABLE_REASON,
            tripped_at=self.ctx.now().isoformat(),
            pending_user_reset=True,
        )

    def _seal_untrusted(self) -> BreakerState:
        """Replace an untrusted breaker file with a signed tripped one."""
        state = self._untrusted_state()
        logger.warning("breaker file %s is unverifiable, treating as tripped", self.store.path_for(BREAKER_KEY))
        try:
            with self.store.locked(BREAKER_KEY):
                if self.load() is None:
                    self.store.write_signed(BREAKER_KEY, state.to_payload())
        except StateStoreError as exc:
            logger.error("could not seal breaker state: %s", exc)
        return state

    def _block_message(self, state: BreakerState) -> str:
        lines = [
            "CIRCUIT BREAKER TRIPPED: automated edits and commands are blocked",
            f"   Reason: {state.trip_reason}",
            f"   Failures: {state.failures}",
        ]
        if state.tripped_at:
            lines.append(f"   Tripped at: {state.tripped_at}")
        if state.trip_reason == UNVERIFIABLE_REASON:
            lines.append(f"   The breaker file {self.store.path_for(BREAKER_KEY)} failed signature verification.")
            if not self.ctx.signer.keyed:
                lines.append("   No state secret is loaded; run scripts/init_secret.py first.")
        lines += [
            "",
            "   Read-only tools (Read, Grep, Glob, web search) still work; investigate the failures.",
            "   To continue, the user must say \"reset breaker\".",
        ]
        return "\n".join(lines)
