"""Session bootstrap: prepare the state directory and reset per-session state."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from core.audit_log import AuditLog
from core.circuit_breaker import UNVERIFIABLE_REASON, BreakerState, CircuitBreaker
from core.config import Context
from core.startup_gate import GateState, StartupGate
from core.state_store import StateStore, StateStoreError
from tools.fs_tool import ManifestError, find_sop_file, read_app_name

logger = logging.getLogger(__name__)

_GITIGNORE = "# hook state is per-machine and signed with a local secret\n*\n"


@dataclass
class SessionStart:
    breaker: BreakerState
    gate: GateState
    lines: list[str] = field(default_factory=list)


def ensure_state_dir(ctx: Context) -> None:
    ctx.state_dir.mkdir(parents=True, exist_ok=True)
    gitignore = ctx.state_dir / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(_GITIGNORE, encoding="utf-8")


def start_session(
    ctx: Context,
    session_id: str | None,
    store: StateStore | None = None,
    audit: AuditLog | None = None,
) -> SessionStart:
    """Run once per agent session.  A tripped breaker stays tripped."""
    ensure_state_dir(ctx)
    store = store or StateStore(ctx.state_dir, ctx.signer, ctx.policy.lock_timeout_seconds)
    audit = audit or AuditLog(ctx.state_dir, ctx.clock)

    warnings: list[str] = []
    circuit_breaker = CircuitBreaker(ctx, store, audit)
    try:
        breaker = circuit_breaker.on_session_start()
    except StateStoreError as exc:
        logger.error("breaker session update failed: %s", exc)
        warnings.append(f"WARNING: breaker state not updated: {exc}")
        breaker = circuit_breaker.load() or BreakerState(tripped=True, trip_reason=UNVERIFIABLE_REASON)

    startup_gate = StartupGate(ctx, store)
    try:
        gate = startup_gate.initialize(session_id)
    except StateStoreError as exc:
        logger.error("startup gate init failed: %s", exc)
        warnings.append(f"WARNING: startup gate not initialized: {exc}")
        gate = GateState(session_id=session_id)
    result = SessionStart(breaker=breaker, gate=gate, lines=warnings)

    try:
        app = read_app_name(ctx.manifest_path)
    except ManifestError as exc:
        result.lines.append(f"WARNING: {exc}")
        app = None
    if app:
        result.lines.append(f"Project: {app}")
    sop = find_sop_file(ctx.project_dir)
    if sop:
        result.lines.append(f"SOP: read {sop} before starting work")
    if not ctx.signer.keyed:
        result.lines.append(
            "WARNING: no state secret loaded; signed state cannot be verified "
            "(run scripts/init_secret.py)"
        )
    if breaker.tripped:
        result.lines += [
            f"CIRCUIT BREAKER STILL TRIPPED ({breaker.trip_reason})",
            "   A new session does not clear it. The user must say \"reset breaker\".",
        ]
    if startup_gate.enforced and gate.pending():
        result.lines.append("Startup steps pending: " + ", ".join(gate.pending()))

    logger.info("session %s started in %s", session_id or "?", ctx.project_dir)
    return result
