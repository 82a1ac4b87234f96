"""Runtime policy gate.  Every tool call the agent makes passes through here."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from core.audit_log import AuditLog
from core.circuit_breaker import CircuitBreaker, classify_error
from core.clearance import ReleaseClearance
from core.config import Context
from core.decision import Decision, PolicyViolation
from core.requirements import RequirementTracker
from core.startup_gate import StartupGate
from core.state_store import StateStore
from policies.default_policies import BREAKER_GUARDED_TOOLS, PATH_FIELDS, REQUIRED_FIELDS
from tools.fs_tool import mentions_path, overlaps

logger = logging.getLogger(__name__)

__all__ = ["Decision", "PolicyDispatcher", "PolicyViolation", "ToolEvent"]


@dataclass(frozen=True)
class ToolEvent:
    action_kind: str
    action_details: dict[str, Any] = field(default_factory=dict)
    project_dir: Path | None = None
    session_id: str | None = None


class PolicyDispatcher:
    def __init__(
        self,
        ctx: Context,
        store: StateStore | None = None,
        audit: AuditLog | None = None,
        breaker: CircuitBreaker | None = None,
        clearance: ReleaseClearance | None = None,
        gate: StartupGate | None = None,
        requirements: RequirementTracker | None = None,
    ):
        self.ctx = ctx
        self.store = store or StateStore(ctx.state_dir, ctx.signer, ctx.policy.lock_timeout_seconds)
        self.audit = audit or AuditLog(ctx.state_dir, ctx.clock)
        self.breaker = breaker or CircuitBreaker(ctx, self.store, self.audit)
        self.clearance = clearance or ReleaseClearance(ctx)
        self.gate = gate or StartupGate(ctx, self.store)
        self.requirements = requirements or RequirementTracker(ctx, self.store, self.audit, self.breaker)

    # ── pre-tool-use ──────────────────────────────────────────────

    def decide(self, event: ToolEvent) -> Decision:
        """First block wins; a checker that raises blocks the action."""
        kind = event.action_kind
        details = event.action_details or {}

        # Not even a user bypass opens the signing secret to the agent.
        decision = self._run("protected_paths", lambda: self.check_protected_paths(kind, details))
        if not decision.allowed:
            return decision

        if self._bypass_active():
            logger.info("bypass active, allowing %s", kind)
            return Decision.allow("bypass", "enforcement bypassed by user")

        missing = [f for f in REQUIRED_FIELDS.get(kind, ()) if not details.get(f)]
        if missing:
            return Decision.block(
                f"{kind} call is missing required field(s): {', '.join(missing)}\n"
                "   The action cannot be evaluated without them.",
                "missing_fields",
                "dispatcher",
            )

        checks: list[tuple[str, Callable[[], Decision]]] = []
        if kind in BREAKER_GUARDED_TOOLS:
            checks.append(("circuit_breaker", self.breaker.check))
        if kind == "Bash":
            command = str(details["command"])
            checks.append(("release_clearance", lambda: self.clearance.check_release_command(command)))
        checks.append(("startup_gate", lambda: self.gate.check_gate(kind, details, event.session_id)))

        for name, check in checks:
            decision = self._run(name, check)
            if not decision.allowed:
                logger.info("%s blocked by %s (%s)", kind, decision.checker, decision.code)
                return decision
        return Decision.allow("dispatcher")

    def check_protected_paths(self, kind: str, details: dict[str, Any]) -> Decision:
        touched = self._protected_target(details)
        if touched is None:
            return Decision.allow("protected_paths")
        logger.warning("%s call names protected path %s", kind, touched)
        return Decision.block(
            f"{kind} call touches protected enforcement state: {touched}\n"
            "   The state secret and release clearances are managed by the user only.",
            "protected_path",
            "protected_paths",
        )

    def _protected_target(self, details: dict[str, Any]) -> Path | None:
        protected = [p for p in (self.ctx.secret_path, self.ctx.clearance_dir) if p is not None]
        base_dir = self.ctx.project_dir
        for target in protected:
            for name in PATH_FIELDS:
                value = details.get(name)
                if isinstance(value, str) and value and (
                    overlaps(value, target, base_dir, include_parents=name == "path")
                    or mentions_path(value, target)
                ):
                    return target
            for name in ("command", "pattern"):
                value = details.get(name)
                if isinstance(value, str) and mentions_path(value, target):
                    return target
        return None

    def _bypass_active(self) -> bool:
        """An unreadable bypass flag means enforcing."""
        try:
            return self.requirements.bypass_active()
        except Exception:
            logger.exception("bypass flag unreadable")
            return False

    def _run(self, name: str, check: Callable[[], Decision]) -> Decision:
        try:
            return check()
        except PolicyViolation as exc:
            return Decision.from_violation(exc, name)
        except Exception as exc:
            logger.exception("%s checker failed", name)
            return Decision.block(
                f"Policy check {name} failed: {type(exc).__name__}: {exc}\n"
                "   The action is blocked until the check can run.",
                "checker_error",
                name,
            )

    # ── post-tool-use ─────────────────────────────────────────────

    def record_outcome(self, event: ToolEvent, failed: bool, error_text: str = "") -> None:
        """Feed a finished tool call into the breaker and the startup gate."""
        if self._bypass_active():
            return
        if failed:
            if event.action_kind in BREAKER_GUARDED_TOOLS:
                self.breaker.record_failure(classify_error(error_text))
            return
        if event.action_kind in BREAKER_GUARDED_TOOLS:
            self.breaker.record_success()
        self.gate.observe(event.action_kind, event.action_details or {}, event.session_id)
