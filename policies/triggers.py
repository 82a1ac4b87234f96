"""Prompt trigger, modifier and frustration-signal registries.

Each entry is matched case-insensitively; the first matching pattern of an
entry wins.  Matching lives in core/requirements.py and has no side effects.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class TriggerSpec:
    name: str
    patterns: tuple[re.Pattern[str], ...]
    action: str
    satisfaction: str = ""
    fresh_start: bool = False   # replace requested, clear satisfied
    additive: bool = False      # union into requested
    control: bool = False       # user command handled before any merging


@dataclass(frozen=True)
class SignalSpec:
    name: str
    patterns: tuple[re.Pattern[str], ...]
    meaning: str


def _p(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


RESEARCH_CATEGORIES = ("memory", "docs", "web", "local", "github")
_CATEGORY = "|".join(RESEARCH_CATEGORIES)

SKIP_RESEARCH_PATTERNS = _p(
    rf"\b(?:approve\s+)?skip\s+({_CATEGORY})\b",
    rf"\b({_CATEGORY})\s+not\s+(?:needed|applicable|relevant)\b",
)

BYPASS_OFF_PATTERN = re.compile(r"\bbypass\s+off\b", re.IGNORECASE)


TRIGGERS = (
    # fresh-start
    TriggerSpec(
        "work_loop",
        _p(r"\bwork\s*loop\b", r"\bdo a.*loop\b"),
        "Start a work loop with acceptance criteria",
        "loop_started",
        fresh_start=True,
    ),
    TriggerSpec(
        "test_mode",
        _p(r"\btest mode\b"),
        "Kill → Build → Launch → Stream logs",
        "test_cycle_done",
        fresh_start=True,
    ),
    TriggerSpec(
        "commit",
        _p(r"\bcommit\b", r"\bpush\b", r"\bgit commit\b"),
        "Pull first, status, diff, add, commit, update README",
        "commit_done",
        fresh_start=True,
    ),
    # additive
    TriggerSpec(
        "research",
        _p(r"\bresearch this\b", r"\bresearch first\b", r"\bdo research\b"),
        "Use the research protocol: memory first, then docs/web",
        "research_done",
        additive=True,
    ),
    TriggerSpec(
        "plan",
        _p(r"\bmake a plan\b", r"\bplan this\b", r"\bplan first\b", r"\bcreate a plan\b"),
        "Show the plan in plain english for approval",
        "plan_shown",
        additive=True,
    ),
    TriggerSpec(
        "explain",
        _p(r"\bexplain\b", r"\bwhat does.*mean\b", r"\bwhy\b.*\?"),
        "Use plain english, define technical terms",
        "explanation_given",
        additive=True,
    ),
    TriggerSpec(
        "bug_note",
        _p(r"\bmake note.*bug\b", r"\bnote this bug\b", r"\blog.*bug\b", r"\bcheck bug\b"),
        "Update bug logs + memory + check for patterns",
        "bug_logged",
        additive=True,
    ),
    TriggerSpec(
        "verify",
        _p(r"\bverify everything\b", r"\bmake sure everything\b", r"\bcheck everything\b"),
        "Full verification with checklist",
        "verification_done",
        additive=True,
    ),
    TriggerSpec(
        "show",
        _p(r"\bshow me\b", r"\blet me see\b", r"\bdisplay\b"),
        "Display content directly, do not just describe it",
        "content_shown",
        additive=True,
    ),
    TriggerSpec(
        "remember",
        _p(r"\bremember\b", r"\bsave this\b", r"\bstore this\b", r"\bdon'?t forget\b"),
        "Store in memory",
        "memory_stored",
        additive=True,
    ),
    # reported only
    TriggerSpec(
        "stop",
        _p(r"\bstop\b", r"\bwait\b", r"\bhold on\b", r"\bhang on\b"),
        "Interrupt current action immediately",
        "stopped",
    ),
    TriggerSpec(
        "session_end",
        _p(r"\bwrap up\b", r"\bend session\b", r"\bclose.*session\b", r"\bfinish up\b"),
        "Run compliance report, then summary, then end the session",
        "session_ended",
    ),
    # user commands
    TriggerSpec(
        "bypass",
        _p(r"\bbypass\s+on\b", r"\bbypass\s+off\b", r"\benable\s+bypass\b", r"\bturn\s+off\s+enforcement\b"),
        "USER OVERRIDE - toggle enforcement",
        "bypassed",
        control=True,
    ),
    TriggerSpec(
        "skip_research",
        SKIP_RESEARCH_PATTERNS,
        "User approves skipping a research category",
        "skip_approved",
        control=True,
    ),
    TriggerSpec(
        "reset_breaker",
        _p(
            r"\breset\s+breaker\b",
            r"\bapprove\s+breaker\s+reset\b",
            r"\bclear\s+breaker\b",
            r"\breset\s+circuit\s*breaker\b",
        ),
        "User approves resetting the circuit breaker",
        "breaker_reset",
        control=True,
    ),
    TriggerSpec(
        "reset_research",
        _p(r"\breset\s+research\b"),
        "Clear research progress; every category must be redone",
        "research_reset",
        control=True,
    ),
    TriggerSpec(
        "breaker_status",
        _p(r"\bbreaker\s+status\b"),
        "Report circuit breaker state",
        control=True,
    ),
    TriggerSpec(
        "bypass_status",
        _p(r"\bbypass\s+status\b"),
        "Report whether enforcement is bypassed",
        control=True,
    ),
)


MODIFIERS = (
    SignalSpec("first", _p(r"first\b", r"\bbefore anything\b", r"\bbefore you\b"),
               "Do this BEFORE any other action"),
    SignalSpec("just", _p(r"\bjust\b", r"\bonly\b", r"\bminimal\b"),
               "Minimal scope - do not over-engineer"),
    SignalSpec("quick", _p(r"\bquick\b", r"\bquickly\b", r"\bfast\b"),
               "Speed matters but do not skip verification"),
    SignalSpec("everything", _p(r"\beverything\b", r"\babsolutely\b", r"\ball\b", r"\bcomprehensive\b"),
               "Leave no stone unturned"),
    SignalSpec("careful", _p(r"\bcareful\b", r"\bcarefully\b", r"\bthoroughly\b"),
               "Extra attention required"),
    SignalSpec("again", _p(r"\bagain\b", r"\btry again\b", r"\bone more time\b"),
               "Previous attempt failed - use a DIFFERENT approach"),
)


FRUSTRATION_SIGNALS = (
    SignalSpec("correction", _p(r"^no[,.]?\s", r"\bthat'?s not\b", r"\bi said\b", r"\bi already\b", r"\bi meant\b"),
               "Agent misunderstood - log for learning"),
    SignalSpec("impatience", _p(r"\bidiot\b", r"\buse your head\b", r"\bthink\b", r"\bstop rushing\b"),
               "Agent being careless - slow down"),
    SignalSpec("skepticism", _p(r"\.\.\.$", r"\breally\?", r"\bare you sure\b", r"\bhmm\b"),
               "User doubts response - verify before continuing"),
    SignalSpec("repetition", _p(r"\bi just said\b", r"\blike i said\b", r"\bas i mentioned\b"),
               "Agent ignored previous instruction - check history"),
)
