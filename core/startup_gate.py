"""Startup gate: hold back state-changing tools until startup steps are done."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

from core.config import Context
from core.decision import Decision
from core.state_store import StateStore
from policies.default_policies import (
    GATED_TOOLS,
    MCP_TOOL_PREFIX,
    SHELL_CONTROL_PATTERN,
    STARTUP_ALLOWED_TOOLS,
    STARTUP_BASH_PATTERNS,
    STARTUP_STEPS,
    StartupStep,
)
from tools.fs_tool import any_exists, relative_to_project

logger = logging.getLogger(__name__)

GATE_KEY = "startup_gate.json"

_STEP_LABELS = {step.name: step.label for step in STARTUP_STEPS}


@dataclass(frozen=True)
class GateState:
    session_id: str | None = None
    open: bool = False
    steps: dict[str, bool] = field(default_factory=dict)
    # Set once the project carried a manifest; survives the manifest's removal.
    managed: bool = False

    def pending(self) -> list[str]:
        return [name for name, done in self.steps.items() if not done]

    def completed(self) -> list[str]:
        return [name for name, done in self.steps.items() if done]

    def with_steps_done(self, names: set[str]) -> GateState:
        steps = {name: done or name in names for name, done in self.steps.items()}
        # Once open, stays open for the session.
        return replace(self, steps=steps, open=self.open or all(steps.values()))

    def to_payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "open": self.open,
            "steps": dict(self.steps),
            "managed": self.managed,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> GateState:
        steps = payload.get("steps")
        is_open = payload.get("open")
        session_id = payload.get("session_id")
        managed = payload.get("managed", False)
        if not isinstance(steps, dict) or not all(
            isinstance(k, str) and isinstance(v, bool) for k, v in steps.items()
        ):
            raise ValueError("steps must map str → bool")
        if not isinstance(is_open, bool):
            raise ValueError("open must be a boolean")
        if session_id is not None and not isinstance(session_id, str):
            raise ValueError("session_id must be a string or null")
        if not isinstance(managed, bool):
            raise ValueError("managed must be a boolean")
        return cls(
            session_id=session_id,
            open=is_open or all(steps.values()),
            steps=dict(steps),
            managed=managed,
        )


class StartupGate:
    def __init__(self, ctx: Context, store: StateStore | None = None):
        self.ctx = ctx
        self.store = store or StateStore(ctx.state_dir, ctx.signer, ctx.policy.lock_timeout_seconds)
        self._opened = False

    @property
    def enforced(self) -> bool:
        """Projects carrying the manifest, or that carried it when last gated."""
        return self.ctx.manifest_path.is_file() or self._previously_managed()

    def _previously_managed(self) -> bool:
        payload = self.store.read_verified(GATE_KEY)
        return bool(payload and payload.get("managed") is True)

    def _step_applies(self, step: StartupStep) -> bool:
        if not step.prerequisites:
            return True
        return any_exists(self.ctx.project_dir, step.prerequisites)

    # ── state ─────────────────────────────────────────────────────

    def initialize(self, session_id: str | None) -> GateState:
        """Fresh gate for a session; steps that do not apply start done."""
        steps = {step.name: not self._step_applies(step) for step in STARTUP_STEPS}
        state = GateState(
            session_id=session_id,
            open=all(steps.values()),
            steps=steps,
            managed=self.enforced,
        )
        self.store.write_signed(GATE_KEY, state.to_payload())
        logger.info("startup gate initialized (pending: %s)", ", ".join(state.pending()) or "none")
        self._opened = state.open
        return state

    def load(self, session_id: str | None) -> GateState:
        """Verified gate for this session, re-initialized (closed) otherwise."""
        payload = self.store.read_verified(GATE_KEY)
        if payload is not None:
            try:
                state = GateState.from_payload(payload)
            except ValueError as exc:
                logger.warning("startup gate state rejected: %s", exc)
            else:
                if session_id is None or state.session_id == session_id:
                    return state
        return self.initialize(session_id)

    # ── decisions ─────────────────────────────────────────────────

    def check_gate(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        session_id: str | None = None,
    ) -> Decision:
        if self._opened or not self.enforced:
            return Decision.allow("startup_gate")

        if tool_name in STARTUP_ALLOWED_TOOLS or tool_name.startswith(MCP_TOOL_PREFIX):
            return Decision.allow("startup_gate")
        if tool_name not in GATED_TOOLS:
            return Decision.allow("startup_gate")
        if tool_name == "Bash":
            command = str(tool_input.get("command") or "")
            if _is_startup_command(command):
                return Decision.allow("startup_gate")

        state = self.load(session_id)
        if state.open:
            self._opened = True
            return Decision.allow("startup_gate")
        return Decision.block(_block_message(state), "gate_closed", "startup_gate")

    def observe(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        session_id: str | None = None,
    ) -> GateState | None:
        """Mark startup steps completed by a tool use that just succeeded."""
        if not self.enforced:
            return None
        done = self._steps_completed_by(tool_name, tool_input)
        if not done:
            return None
        with self.store.locked(GATE_KEY):
            state = self.load(session_id)
            updated = state.with_steps_done(done)
            if updated != state:
                self.store.write_signed(GATE_KEY, updated.to_payload())
                logger.info("startup steps completed: %s", ", ".join(sorted(done)))
                if updated.open and not state.open:
                    logger.info("startup gate OPEN")
        self._opened = self._opened or updated.open
        return updated

    def _steps_completed_by(self, tool_name: str, tool_input: dict[str, Any]) -> set[str]:
        done: set[str] = set()
        if tool_name == "Read":
            rel = relative_to_project(str(tool_input.get("file_path") or ""), self.ctx.project_dir)
            if rel:
                done = {s.name for s in STARTUP_STEPS if rel in s.completes_on_read}
        elif tool_name == "Bash":
            command = str(tool_input.get("command") or "")
            if SHELL_CONTROL_PATTERN.search(command):
                return done
            done = {
                s.name for s in STARTUP_STEPS
                if s.completes_on_command is not None and s.completes_on_command.match(command)
            }
        return done


def _is_startup_command(command: str) -> bool:
    """One allow-listed command, with nothing chained on or redirected."""
    if SHELL_CONTROL_PATTERN.search(command):
        return False
    return any(p.match(command) for p in STARTUP_BASH_PATTERNS)

def _block_message(state: GateState) -> str:
    lines = ["STARTUP GATE: Complete startup steps before working", "", "Pending steps:"]
    lines += [f"  [ ] {_STEP_LABELS.get(s, s.replace('_', ' '))}" for s in state.pending()]
    completed = state.completed()
    if completed:
        lines += ["", "Completed:"]
        lines += [f"  [x] {_STEP_LABELS.get(s, s.replace('_', ' '))}" for s in completed]
    lines += [
        "",
        "Allowed now: Read, Grep, Glob, WebSearch, MCP tools, startup Bash",
        "Blocked until gate opens: Task, Edit, Write, Bash (non-startup)",
    ]
    return "\n".join(lines)
