"""Tests for core/policy_engine.py: dispatch order, field validation, fail-closed."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from core.circuit_breaker import CircuitBreaker
from core.clearance import ReleaseClearance
from core.config import Context, PolicyConfig
from core.policy_engine import PolicyDispatcher, ToolEvent
from core.requirements import RequirementTracker
from core.signer import Signer
from core.startup_gate import StartupGate

_KEY = b"0123456789abcdef0123456789abcdef"
NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
SHA = "b" * 40

# ── fixtures ──────────────────────────────────────────────────────────────────


def _make_ctx(tmp_path: Path) -> Context:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    return Context(
        project_dir=project,
        state_dir=project / ".hookgate",
        clearance_dir=tmp_path / "clearance",
        manifest_path=project / ".hookgate-project",
        signer=Signer(_KEY),
        policy=PolicyConfig(),
        clock=lambda: NOW,
    )


def _event(kind: str, **details: str) -> ToolEvent:
    return ToolEvent(action_kind=kind, action_details=details, session_id="s1")


@pytest.fixture
def ctx(tmp_path: Path) -> Context:
    return _make_ctx(tmp_path)


@pytest.fixture
def dispatcher(ctx: Context) -> PolicyDispatcher:
    return PolicyDispatcher(ctx, clearance=ReleaseClearance(ctx, sha_lookup=lambda d, t: SHA))


def _trip(dispatcher: PolicyDispatcher) -> None:
    for _ in range(3):
        dispatcher.breaker.record_failure("test_failed")


class TestDecide:
    def test_unmanaged_project_allows_edit(self, dispatcher: PolicyDispatcher) -> None:
        assert dispatcher.decide(_event("Edit", file_path="a.py")).allowed

    def test_unknown_tool_passes_through(self, dispatcher: PolicyDispatcher) -> None:
        assert dispatcher.decide(_event("SomeNewTool")).allowed

    def test_missing_required_field_blocks(self, dispatcher: PolicyDispatcher) -> None:
        decision = dispatcher.decide(_event("Bash"))
        assert not decision.allowed
        assert decision.code == "missing_fields"
        assert "command" in (decision.message or "")

    def test_notebook_needs_notebook_path(self, dispatcher: PolicyDispatcher) -> None:
        assert dispatcher.decide(_event("NotebookEdit", file_path="x.ipynb")).code == "missing_fields"

    def test_tripped_breaker_blocks_guarded_tools(self, dispatcher: PolicyDispatcher) -> None:
        _trip(dispatcher)
        decision = dispatcher.decide(_event("Write", file_path="a.py"))
        assert not decision.allowed
        assert decision.checker == "circuit_breaker"

    def test_tripped_breaker_allows_read(self, dispatcher: PolicyDispatcher) -> None:
        _trip(dispatcher)
        assert dispatcher.decide(_event("Read", file_path="a.py")).allowed

    def test_breaker_wins_over_clearance(self, ctx: Context, dispatcher: PolicyDispatcher) -> None:
        ctx.manifest_path.write_text("name: App\n")
        _trip(dispatcher)
        decision = dispatcher.decide(_event("Bash", command="./release.sh --deploy"))
        assert decision.checker == "circuit_breaker"

    def test_release_needs_clearance(self, ctx: Context, dispatcher: PolicyDispatcher) -> None:
        ctx.manifest_path.write_text("name: App\n")
        decision = dispatcher.decide(_event("Bash", command="./release.sh --deploy"))
        assert not decision.allowed
        assert decision.checker == "release_clearance"

    def test_clearance_wins_over_gate(self, ctx: Context, dispatcher: PolicyDispatcher) -> None:
        ctx.manifest_path.write_text("name: App\n")
        dispatcher.gate.initialize("s1")
        decision = dispatcher.decide(_event("Bash", command="./release.sh --full"))
        assert decision.checker == "release_clearance"

    def test_closed_gate_blocks(self, ctx: Context, dispatcher: PolicyDispatcher) -> None:
        ctx.manifest_path.write_text("name: App\n")
        dispatcher.gate.initialize("s1")
        decision = dispatcher.decide(_event("Edit", file_path="a.py"))
        assert decision.checker == "startup_gate"
        assert decision.code == "gate_closed"

    def test_bypass_skips_everything(self, dispatcher: PolicyDispatcher) -> None:
        _trip(dispatcher)
        dispatcher.requirements.process_prompt("bypass on")
        decision = dispatcher.decide(_event("Edit", file_path="a.py"))
        assert decision.allowed
        assert decision.checker == "bypass"

    def test_crashing_checker_blocks(self, ctx: Context) -> None:
        breaker = MagicMock(spec=CircuitBreaker)
        breaker.check.side_effect = RuntimeError("disk on fire")
        dispatcher = PolicyDispatcher(ctx, breaker=breaker)
        decision = dispatcher.decide(_event("Edit", file_path="a.py"))
        assert not decision.allowed
        assert decision.code == "checker_error"
        assert "circuit_breaker" in (decision.message or "")
        assert "disk on fire" in (decision.message or "")

    def test_unreadable_bypass_means_enforcing(self, ctx: Context) -> None:
        requirements = MagicMock(spec=RequirementTracker)
        requirements.bypass_active.side_effect = OSError("boom")
        gate = MagicMock(spec=StartupGate)
        gate.check_gate.return_value = MagicMock(allowed=False, checker="startup_gate", code="gate_closed")
        dispatcher = PolicyDispatcher(ctx, requirements=requirements, gate=gate)
        assert not dispatcher.decide(_event("Edit", file_path="a.py")).allowed


class TestProtectedPaths:
    @pytest.fixture
    def guarded(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> PolicyDispatcher:
        home = tmp_path / "home"
        monkeypatch.setenv("HOME", str(home))
        ctx = replace(
            _make_ctx(tmp_path),
            secret_path=home / ".hookgate" / "state_secret",
            clearance_dir=home / ".hookgate" / "ship_clearance",
        )
        return PolicyDispatcher(ctx, clearance=ReleaseClearance(ctx, sha_lookup=lambda d, t: SHA))

    def test_read_secret_blocked(self, guarded: PolicyDispatcher) -> None:
        decision = guarded.decide(_event("Read", file_path=str(guarded.ctx.secret_path)))
        assert not decision.allowed
        assert decision.code == "protected_path"

    def test_tilde_path_blocked(self, guarded: PolicyDispatcher) -> None:
        assert not guarded.decide(_event("Read", file_path="~/.hookgate/state_secret")).allowed

    @pytest.mark.parametrize(
        "command",
        [
            "cat ~/.hookgate/state_secret",
            "cat $HOME/.hookgate/state_secret",
            "cp ../../home/.hookgate/state_secret /tmp/k",
            "ls ~/.hookgate/ship_clearance",
        ],
    )
    def test_bash_naming_protected_path_blocked(self, guarded: PolicyDispatcher, command: str) -> None:
        assert guarded.decide(_event("Bash", command=command)).code == "protected_path"

    def test_write_into_clearance_dir_blocked(self, guarded: PolicyDispatcher) -> None:
        target = guarded.ctx.clearance_dir / "App.json"
        assert guarded.decide(_event("Write", file_path=str(target))).code == "protected_path"

    def test_search_over_parent_dir_blocked(self, guarded: PolicyDispatcher, tmp_path: Path) -> None:
        assert guarded.decide(_event("Grep", pattern="x", path=str(tmp_path / "home"))).code == "protected_path"

    def test_bypass_does_not_open_secret(self, guarded: PolicyDispatcher) -> None:
        guarded.requirements.process_prompt("bypass on")
        decision = guarded.decide(_event("Read", file_path=str(guarded.ctx.secret_path)))
        assert not decision.allowed
        assert decision.checker == "protected_paths"

    def test_ordinary_files_allowed(self, guarded: PolicyDispatcher) -> None:
        assert guarded.decide(_event("Read", file_path="src/app.py")).allowed
        assert guarded.decide(_event("Grep", pattern="TODO", path=".")).allowed


class TestRecordOutcome:
    def test_failures_trip_breaker(self, dispatcher: PolicyDispatcher) -> None:
        for _ in range(3):
            dispatcher.record_outcome(_event("Bash", command="make"), True, "make: build failed")
        state = dispatcher.breaker.load()
        assert state is not None and state.tripped
        assert state.trip_reason == "build_failed"

    def test_success_clears_count(self, dispatcher: PolicyDispatcher) -> None:
        dispatcher.record_outcome(_event("Bash", command="make"), True, "boom")
        dispatcher.record_outcome(_event("Bash", command="make"), False)
        state = dispatcher.breaker.load()
        assert state is not None and state.failures == 0

    def test_read_failures_not_counted(self, dispatcher: PolicyDispatcher) -> None:
        dispatcher.record_outcome(_event("Read", file_path="nope"), True, "file not found")
        assert dispatcher.breaker.load().failures == 0  # type: ignore[union-attr]

    def test_success_feeds_startup_gate(self, ctx: Context, dispatcher: PolicyDispatcher) -> None:
        ctx.manifest_path.write_text("name: App\n")
        dispatcher.gate.initialize("s1")
        dispatcher.record_outcome(_event("Bash", command="pgrep -f agent"), False)
        assert PolicyDispatcher(ctx).decide(_event("Edit", file_path="a.py")).allowed
