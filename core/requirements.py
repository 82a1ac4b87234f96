"""Turn user prompts into tracked obligations and user-only commands.

Pattern matching (``detect`` / ``merge_requirements``) is pure; everything
that touches disk lives on ``RequirementTracker``.  Control commands (bypass,
skip research, breaker reset, ...) are only ever reached from prompt text,
i.e. from the user, and every one of them is written to the audit trail.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable, Sequence, TypeVar

from core.audit_log import AuditLog
from core.circuit_breaker import CircuitBreaker
from core.config import Context
from core.state_store import StateStore, StateWriteError
from policies.triggers import (
    BYPASS_OFF_PATTERN,
    FRUSTRATION_SIGNALS,
    MODIFIERS,
    SKIP_RESEARCH_PATTERNS,
    TRIGGERS,
    SignalSpec,
    TriggerSpec,
)

logger = logging.getLogger(__name__)

REQUIREMENTS_KEY = "prompt_requirements.json"
RESEARCH_KEY = "research_progress.json"
BYPASS_KEY = "bypass_active.json"
PATTERNS_KEY = "user_patterns.json"

_HOOK = "prompt_analyzer"

Entry = TypeVar("Entry", TriggerSpec, SignalSpec)


# ── documents ─────────────────────────────────────────────────────────────────


def _str_list(payload: dict[str, Any], name: str) -> list[str]:
    value = payload.get(name) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{name} must be a list of strings")
    return list(value)


def _union(existing: Iterable[str], new: Iterable[str]) -> list[str]:
    return list(dict.fromkeys([*existing, *new]))


@dataclass(frozen=True)
class RequirementSet:
    requested: list[str] = field(default_factory=list)
    satisfied: list[str] = field(default_factory=list)
    modifiers: list[str] = field(default_factory=list)
    timestamp: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "requested": list(self.requested),
            "satisfied": list(self.satisfied),
            "modifiers": list(self.modifiers),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RequirementSet:
        timestamp = payload.get("timestamp")
        if timestamp is not None and not isinstance(timestamp, str):
            raise ValueError("timestamp must be a string or null")
        return cls(
            requested=_str_list(payload, "requested"),
            satisfied=_str_list(payload, "satisfied"),
            modifiers=_str_list(payload, "modifiers"),
            timestamp=timestamp,
        )


@dataclass(frozen=True)
class CategoryProgress:
    skipped: bool = False
    skip_reason: str = ""
    skipped_at: str | None = None
    attempt_proof: str = ""


@dataclass(frozen=True)
class ResearchProgress:
    categories: dict[str, CategoryProgress] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "categories": {
                name: {
                    "skipped": p.skipped,
                    "skip_reason": p.skip_reason,
                    "skipped_at": p.skipped_at,
                    "attempt_proof": p.attempt_proof,
                }
                for name, p in self.categories.items()
            }
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ResearchProgress:
        raw = payload.get("categories") or {}
        if not isinstance(raw, dict):
            raise ValueError("categories must be an object")
        categories = {}
        for name, entry in raw.items():
            if not isinstance(entry, dict):
                raise ValueError(f"category {name!r} must be an object")
            categories[name] = CategoryProgress(
                skipped=bool(entry.get("skipped", False)),
                skip_reason=str(entry.get("skip_reason") or ""),
                skipped_at=entry.get("skipped_at"),
                attempt_proof=str(entry.get("attempt_proof") or ""),
            )
        return cls(categories)


@dataclass
class PromptAnalysis:
    triggers: list[str] = field(default_factory=list)
    modifiers: list[str] = field(default_factory=list)
    frustration_signals: list[str] = field(default_factory=list)
    outcome: str = "none"
    messages: list[str] = field(default_factory=list)


# ── pure matching ─────────────────────────────────────────────────────────────


def detect(text: str, registry: Sequence[Entry]) -> list[Entry]:
    """Entries with at least one matching pattern, in registry order."""
    return [entry for entry in registry if any(p.search(text) for p in entry.patterns)]


def merge_requirements(
    current: RequirementSet,
    triggers: Sequence[TriggerSpec],
    modifiers: Sequence[str],
    now: datetime,
) -> tuple[RequirementSet, str]:
    """Apply fresh-start / additive semantics.  Returns (new set, outcome)."""
    names = [t.name for t in triggers if t.fresh_start or t.additive]
    if any(t.fresh_start for t in triggers):
        updated = RequirementSet(
            requested=_union([], names),
            satisfied=[],
            modifiers=_union(current.modifiers, modifiers),
            timestamp=now.isoformat(),
        )
        return updated, "fresh_start"
    if names:
        updated = replace(
            current,
            requested=_union(current.requested, names),
            modifiers=_union(current.modifiers, modifiers),
            timestamp=now.isoformat(),
        )
        return updated, "additive"
    return current, "unchanged"


def skip_category(text: str) -> str | None:
    for pattern in SKIP_RESEARCH_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).lower()
    return None


# ── tracker ───────────────────────────────────────────────────────────────────


class RequirementTracker:
    def __init__(
        self,
        ctx: Context,
        store: StateStore | None = None,
        audit: AuditLog | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self.ctx = ctx
        self.store = store or StateStore(ctx.state_dir, ctx.signer, ctx.policy.lock_timeout_seconds)
        self.audit = audit or AuditLog(ctx.state_dir, ctx.clock)
        self.breaker = breaker or CircuitBreaker(ctx, self.store, self.audit)

    # ── reads ─────────────────────────────────────────────────────

    def requirements(self) -> RequirementSet:
        payload = self.store.read_verified(REQUIREMENTS_KEY)
        if payload is None:
            return RequirementSet()
        try:
            return RequirementSet.from_payload(payload)
        except ValueError as exc:
            logger.warning("requirement state rejected: %s", exc)
            return RequirementSet()

    def research_progress(self) -> ResearchProgress:
        payload = self.store.read_verified(RESEARCH_KEY)
        if payload is None:
            return ResearchProgress()
        try:
            return ResearchProgress.from_payload(payload)
        except ValueError as exc:
            logger.warning("research progress rejected: %s", exc)
            return ResearchProgress()

    def bypass_active(self) -> bool:
        """Only a verified, user-written flag counts; anything else means enforcing."""
        payload = self.store.read_verified(BYPASS_KEY)
        return bool(payload and payload.get("active") is True and payload.get("actor") == "user")

    def corrections(self) -> int:
        payload = self.store.read_verified(PATTERNS_KEY) or {}
        count = payload.get("corrections", 0)
        return count if isinstance(count, int) and not isinstance(count, bool) else 0

    # ── prompt processing ─────────────────────────────────────────

    def process_prompt(self, text: str) -> PromptAnalysis:
        triggers = detect(text, TRIGGERS)
        modifiers = detect(text, MODIFIERS)
        frustration = detect(text, FRUSTRATION_SIGNALS)
        analysis = PromptAnalysis(
            triggers=[t.name for t in triggers],
            modifiers=[m.name for m in modifiers],
            frustration_signals=[f.name for f in frustration],
        )

        try:
            self.audit.log_prompt(text, analysis.triggers, analysis.modifiers, analysis.frustration_signals)
        except StateWriteError as exc:
            logger.warning("prompt log unavailable: %s", exc)

        if frustration:
            self._record_frustration(frustration, analysis)

        control = [t for t in triggers if t.control]
        if control:
            self._handle_control(control[0], text, analysis)
            return analysis

        if triggers:
            self._update_requirements(triggers, analysis)
            analysis.messages.append("TRIGGERS: " + ", ".join(analysis.triggers))
            analysis.messages += [f"  {t.name}: {t.action}" for t in triggers]
            analysis.messages += [f"  +{m.name}: {m.meaning}" for m in modifiers]
        return analysis

    def _update_requirements(self, triggers: list[TriggerSpec], analysis: PromptAnalysis) -> None:
        with self.store.locked(REQUIREMENTS_KEY):
            current = self.requirements()
            updated, outcome = merge_requirements(current, triggers, analysis.modifiers, self.ctx.now())
            if outcome != "unchanged":
                self.store.write_signed(REQUIREMENTS_KEY, updated.to_payload())
        analysis.outcome = outcome
        if outcome == "fresh_start":
            analysis.messages.append("FRESH START: New task detected, resetting requirements")
        logger.info("requirements %s: %s", outcome, ", ".join(updated.requested) or "none")

    def _record_frustration(self, signals: list[SignalSpec], analysis: PromptAnalysis) -> None:
        with self.store.locked(PATTERNS_KEY):
            count = self.corrections() + 1
            self.store.write_signed(
                PATTERNS_KEY,
                {"corrections": count, "last_updated": self.ctx.now().isoformat()},
            )
        names = ", ".join(s.name for s in signals)
        self.audit.log_enforcement(
            rule="user_correction",
            hook=_HOOK,
            action="violation",
            details=f"User correction detected: {names}",
        )
        analysis.messages.append("USER CORRECTION DETECTED")
        analysis.messages += [f"   {s.name}: {s.meaning}" for s in signals]
        analysis.messages.append("   → Slow down, check what you missed")

    # ── user commands ─────────────────────────────────────────────

    def _handle_control(self, trigger: TriggerSpec, text: str, analysis: PromptAnalysis) -> None:
        handlers = {
            "bypass": self._toggle_bypass,
            "skip_research": self._skip_research,
            "reset_breaker": self._reset_breaker,
            "reset_research": self._reset_research,
            "breaker_status": self._breaker_status,
            "bypass_status": self._bypass_status,
        }
        handlers[trigger.name](text, analysis)

    def _toggle_bypass(self, text: str, analysis: PromptAnalysis) -> None:
        if BYPASS_OFF_PATTERN.search(text):
            if not self.bypass_active() and not self.store.path_for(BYPASS_KEY).exists():
                analysis.outcome = "bypass_off"
                analysis.messages.append("BYPASS already off, enforcement active")
                return
            self.audit.log_reset("bypass", "User re-enabled enforcement (bypass off)", actor="user")
            self.store.delete(BYPASS_KEY)
            analysis.outcome = "bypass_off"
            analysis.messages.append("BYPASS OFF: Enforcement re-enabled")
            logger.info("bypass disabled by user")
            return

        # Break-glass: only reachable from user prompt text, always audited.
        self.audit.log_reset("bypass", "User disabled enforcement (bypass on)", actor="user")
        self.store.write_signed(
            BYPASS_KEY,
            {"active": True, "activated_at": self.ctx.now().isoformat(), "actor": "user"},
        )
        self.store.delete(REQUIREMENTS_KEY)
        analysis.outcome = "bypass_on"
        analysis.messages.append('BYPASS ON: Enforcement disabled. Say "bypass off" to re-enable.')
        logger.warning("bypass enabled by user, policy layer standing down")

    def _skip_research(self, text: str, analysis: PromptAnalysis) -> None:
        category = skip_category(text)
        if category is None:
            analysis.outcome = "skip_unparsed"
            analysis.messages.append("SKIP: could not tell which research category to skip")
            return

        proof = self._attempt_proof(category)
        if proof is None:
            analysis.outcome = "skip_rejected"
            analysis.messages += [
                f"SKIP REJECTED: {category} was never attempted",
                "   Rule: a research category must be tried before it can be skipped.",
                f"   Attempt {category} research first; the attempt is recorded in the findings log.",
            ]
            logger.info("skip of %s rejected: never attempted", category)
            return

        with self.store.locked(RESEARCH_KEY):
            progress = self.research_progress()
            categories = dict(progress.categories)
            categories[category] = CategoryProgress(
                skipped=True,
                skip_reason="User approved after attempt",
                skipped_at=self.ctx.now().isoformat(),
                attempt_proof=proof,
            )
            self.store.write_signed(RESEARCH_KEY, ResearchProgress(categories).to_payload())

        self.audit.log_enforcement(
            rule="research_skip",
            hook=_HOOK,
            action="user_approved_skip",
            details=f"User approved skipping {category} after attempt: {proof}",
        )
        analysis.outcome = "skip_approved"
        analysis.messages.append(f"SKIP APPROVED: {category} (attempted: {proof})")

    def _attempt_proof(self, category: str) -> str | None:
        for finding in self.audit.findings():
            if str(finding.get("category", "")).lower() == category:
                return f"{finding.get('tool', '?')}: {finding.get('output_stats', '')}"
        return None

    def _reset_breaker(self, text: str, analysis: PromptAnalysis) -> None:
        result = self.breaker.user_approved_reset("user_approved")
        analysis.outcome = result.code
        if result.code == "breaker_missing":
            analysis.messages.append("No valid circuit breaker file found - nothing to reset")
        elif result.code == "breaker_not_tripped":
            analysis.messages.append("Circuit breaker is not tripped - nothing to reset")
        else:
            analysis.outcome = "breaker_reset"
            analysis.messages += [
                "CIRCUIT BREAKER RESET: User approved",
                f"   Was tripped by: {result.previous_reason}",
                "   Failure tracking cleared. Fresh start.",
            ]

    def _reset_research(self, text: str, analysis: PromptAnalysis) -> None:
        self.audit.log_reset("research", "User reset research requirements", actor="user")
        self.store.delete(RESEARCH_KEY)
        analysis.outcome = "research_reset"
        analysis.messages += [
            "RESEARCH RESET",
            "   All research categories cleared; each must be done again.",
        ]

    def _breaker_status(self, text: str, analysis: PromptAnalysis) -> None:
        state = self.breaker.load()
        analysis.outcome = "status"
        if state is None:
            analysis.messages.append("CIRCUIT BREAKER STATUS: unverifiable (treated as tripped)")
            return
        analysis.messages += [
            "CIRCUIT BREAKER STATUS",
            f"  Phase: {state.phase.value}",
            f"  Failures: {state.failures}",
        ]
        if state.trip_reason:
            analysis.messages.append(f"  Reason: {state.trip_reason}")
        analysis.messages += [f"    {sig}: {n}" for sig, n in sorted(state.error_signatures.items())]

    def _bypass_status(self, text: str, analysis: PromptAnalysis) -> None:
        analysis.outcome = "status"
        status = "OFF (bypassed)" if self.bypass_active() else "ON (enforcing)"
        analysis.messages.append(f"ENFORCEMENT: {status}")
