"""Tests for core/requirements.py: trigger merging, user-only commands, telemetry."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from core.audit_log import FINDINGS_LOG, PROMPT_LOG, AuditLog
from core.circuit_breaker import CircuitBreaker
from core.config import Context, PolicyConfig
from core.requirements import (
    BYPASS_KEY,
    RESEARCH_KEY,
    RequirementSet,
    RequirementTracker,
    detect,
    merge_requirements,
    skip_category,
)
from core.signer import Signer
from policies.triggers import FRUSTRATION_SIGNALS, MODIFIERS, TRIGGERS

_KEY = b"0123456789abcdef0123456789abcdef"
NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)

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


def _write_finding(ctx: Context, category: str, tool: str, stats: str) -> None:
    ctx.state_dir.mkdir(parents=True, exist_ok=True)
    with open(ctx.state_dir / FINDINGS_LOG, "a") as fh:
        fh.write(json.dumps({"category": category, "tool": tool, "output_stats": stats}) + "\n")


@pytest.fixture
def tracker(tmp_path: Path) -> RequirementTracker:
    return RequirementTracker(_make_ctx(tmp_path))


def _names(specs) -> list[str]:
    return [s.name for s in specs]


# ── pure matching ─────────────────────────────────────────────────────────────


class TestDetect:
    def test_fresh_start_trigger(self) -> None:
        assert _names(detect("do a work loop on the parser", TRIGGERS)) == ["work_loop"]

    def test_case_insensitive(self) -> None:
        assert "research" in _names(detect("RESEARCH THIS please", TRIGGERS))

    def test_modifiers(self) -> None:
        assert _names(detect("just be careful", MODIFIERS)) == ["just", "careful"]

    def test_frustration(self) -> None:
        assert "correction" in _names(detect("no, that's not what I asked", FRUSTRATION_SIGNALS))

    def test_nothing_matches(self) -> None:
        assert detect("rename the variable", TRIGGERS) == []

    def test_skip_category(self) -> None:
        assert skip_category("skip web") == "web"
        assert skip_category("github not needed") == "github"
        assert skip_category("skip lunch") is None


class TestMergeRequirements:
    def _triggers(self, text: str):
        return detect(text, TRIGGERS)

    def test_additive_unions(self) -> None:
        current = RequirementSet(requested=["research"], satisfied=["research"])
        updated, outcome = merge_requirements(current, self._triggers("make a plan"), [], NOW)
        assert outcome == "additive"
        assert updated.requested == ["research", "plan"]
        assert updated.satisfied == ["research"]

    def test_fresh_start_replaces(self) -> None:
        current = RequirementSet(requested=["research", "plan"], satisfied=["research"])
        updated, outcome = merge_requirements(current, self._triggers("start the work loop"), [], NOW)
        assert outcome == "fresh_start"
        assert updated.requested == ["work_loop"]
        assert updated.satisfied == []

    def test_fresh_start_keeps_additive_from_same_prompt(self) -> None:
        updated, _ = merge_requirements(
            RequirementSet(requested=["show"]), self._triggers("research first, then commit"), [], NOW
        )
        assert updated.requested == ["commit", "research"]

    def test_no_triggers_unchanged(self) -> None:
        current = RequirementSet(requested=["plan"])
        updated, outcome = merge_requirements(current, [], ["quick"], NOW)
        assert outcome == "unchanged"
        assert updated is current

    def test_modifiers_unioned(self) -> None:
        current = RequirementSet(modifiers=["quick"])
        updated, _ = merge_requirements(current, self._triggers("make a plan"), ["quick", "careful"], NOW)
        assert updated.modifiers == ["quick", "careful"]


# ── tracker ───────────────────────────────────────────────────────────────────


class TestProcessPrompt:
    def test_requirements_persisted(self, tracker: RequirementTracker) -> None:
        tracker.process_prompt("research this")
        tracker.process_prompt("and make a plan")
        assert tracker.requirements().requested == ["research", "plan"]
        tracker.process_prompt("ok, work loop time")
        reqs = tracker.requirements()
        assert reqs.requested == ["work_loop"]
        assert reqs.satisfied == []

    def test_plain_prompt_leaves_state(self, tracker: RequirementTracker) -> None:
        tracker.process_prompt("make a plan")
        analysis = tracker.process_prompt("rename the variable")
        assert analysis.outcome == "none"
        assert tracker.requirements().requested == ["plan"]

    def test_prompt_logged_truncated(self, tracker: RequirementTracker) -> None:
        tracker.process_prompt("x" * 800)
        lines = (tracker.ctx.state_dir / PROMPT_LOG).read_text().splitlines()
        assert len(json.loads(lines[0])["prompt"]) == 500

    def test_frustration_counted(self, tracker: RequirementTracker) -> None:
        analysis = tracker.process_prompt("no, I said the other file")
        assert "correction" in analysis.frustration_signals
        assert tracker.corrections() == 1
        tracker.process_prompt("are you sure?")
        assert tracker.corrections() == 2


class TestSkipResearch:
    def test_skip_without_attempt_rejected(self, tracker: RequirementTracker) -> None:
        analysis = tracker.process_prompt("skip web")
        assert analysis.outcome == "skip_rejected"
        assert analysis.messages[0] == "SKIP REJECTED: web was never attempted"
        assert tracker.research_progress().categories == {}

    def test_skip_after_attempt_approved(self, tracker: RequirementTracker) -> None:
        _write_finding(tracker.ctx, "web", "WebSearch", "0 results")
        analysis = tracker.process_prompt("skip web")
        assert analysis.outcome == "skip_approved"
        progress = tracker.research_progress().categories["web"]
        assert progress.skipped
        assert progress.attempt_proof == "WebSearch: 0 results"

    def test_attempt_in_other_category_does_not_count(self, tracker: RequirementTracker) -> None:
        _write_finding(tracker.ctx, "docs", "Read", "2 files")
        assert tracker.process_prompt("skip web").outcome == "skip_rejected"

    def test_corrupt_findings_lines_skipped(self, tracker: RequirementTracker) -> None:
        tracker.ctx.state_dir.mkdir(parents=True)
        (tracker.ctx.state_dir / FINDINGS_LOG).write_text("{broken\n")
        _write_finding(tracker.ctx, "web", "WebFetch", "1 page")
        assert tracker.process_prompt("skip web").outcome == "skip_approved"

    def test_reset_research(self, tracker: RequirementTracker) -> None:
        _write_finding(tracker.ctx, "web", "WebSearch", "0 results")
        tracker.process_prompt("skip web")
        analysis = tracker.process_prompt("reset research")
        assert analysis.outcome == "research_reset"
        assert not tracker.store.path_for(RESEARCH_KEY).exists()
        assert AuditLog(tracker.ctx.state_dir, tracker.ctx.clock).resets()[-1]["reset_type"] == "research"


class TestBreakerCommands:
    def test_reset_when_nothing_to_reset(self, tracker: RequirementTracker) -> None:
        analysis = tracker.process_prompt("reset breaker")
        assert analysis.outcome == "breaker_missing"
        assert "nothing to reset" in analysis.messages[0]

    def test_reset_when_not_tripped(self, tracker: RequirementTracker) -> None:
        tracker.breaker.record_failure("a")
        assert tracker.process_prompt("reset breaker").outcome == "breaker_not_tripped"

    def test_reset_tripped(self, tracker: RequirementTracker) -> None:
        for _ in range(3):
            tracker.breaker.record_failure("test_failed")
        analysis = tracker.process_prompt("please reset breaker")
        assert analysis.outcome == "breaker_reset"
        assert "test_failed" in analysis.messages[1]
        assert CircuitBreaker(tracker.ctx).check().allowed

    def test_breaker_status(self, tracker: RequirementTracker) -> None:
        tracker.breaker.record_failure("test_failed")
        analysis = tracker.process_prompt("breaker status")
        assert analysis.outcome == "status"
        assert "  Failures: 1" in analysis.messages


class TestBypass:
    def test_bypass_on_and_off(self, tracker: RequirementTracker) -> None:
        tracker.process_prompt("make a plan")
        assert tracker.process_prompt("bypass on").outcome == "bypass_on"
        assert tracker.bypass_active()
        assert tracker.requirements().requested == []

        assert tracker.process_prompt("bypass off").outcome == "bypass_off"
        assert not tracker.bypass_active()

        resets = AuditLog(tracker.ctx.state_dir, tracker.ctx.clock).resets()
        assert [r["reset_type"] for r in resets] == ["bypass", "bypass"]
        assert all(r["actor"] == "user" for r in resets)

    def test_forged_bypass_flag_ignored(self, tracker: RequirementTracker) -> None:
        tracker.ctx.state_dir.mkdir(parents=True)
        tracker.store.path_for(BYPASS_KEY).write_text(
            json.dumps({"payload": {"active": True, "actor": "user"}, "signature": "f" * 64})
        )
        assert not tracker.bypass_active()

    def test_bypass_status(self, tracker: RequirementTracker) -> None:
        assert tracker.process_prompt("bypass status").messages == ["ENFORCEMENT: ON (enforcing)"]
