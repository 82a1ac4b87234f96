"""Declarative policy tables.

The runtime checks in core/ read their allow-lists and patterns from here.
``POLICIES`` is the human-readable summary printed by ``main.py policies``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# ── startup gate ──────────────────────────────────────────────────────────────

# Read-only / investigatory tools: never gated.
STARTUP_ALLOWED_TOOLS = frozenset({
    "Read", "Grep", "Glob", "WebSearch", "WebFetch",
    "AskUserQuestion", "ToolSearch", "ListMcpResourcesTool", "ReadMcpResourceTool",
})

MCP_TOOL_PREFIX = "mcp__"

# Tools that need the gate open.  Anything else passes through.
GATED_TOOLS = frozenset({"Task", "Edit", "Write", "NotebookEdit", "Bash", "Skill"})

# Chaining, substitution, backgrounding or redirection: a command line with any
# of these is never treated as one allow-listed command.
SHELL_CONTROL_PATTERN = re.compile(r"[;&|\n`<>]|\$\(")

VALIDATION_REPORT_COMMAND = re.compile(
    r"\A\s*(?:(?:ruby|python3?|bash|sh)\s+)?(?:\S+/)?validation_report\.(?:py|rb)\b"
)
CLEAN_SYSTEM_COMMAND = re.compile(r"\A\s*(?:(?:bash|sh)\s+)?(?:\S+/)?clean_system(?:\.sh)?\b")
PROCESS_CLEANUP_COMMAND = re.compile(r"\A\s*(?:pgrep|pkill|kill)\s+")

# Bash commands that complete startup or cannot change anything.  Each must
# match from the start of a command line free of SHELL_CONTROL_PATTERN.
STARTUP_BASH_PATTERNS = (
    VALIDATION_REPORT_COMMAND,
    CLEAN_SYSTEM_COMMAND,
    PROCESS_CLEANUP_COMMAND,
    re.compile(r"\A\s*ps(?:\s|\Z)"),
    re.compile(
        r"\A\s*(?:ls|cat|head|tail|wc|file|stat|which|type|echo|printf"
        r"|git\s+(?:status|log|diff|branch|remote)|pwd|date|whoami|hostname|uname)\b"
    ),
)


@dataclass(frozen=True)
class StartupStep:
    name: str
    label: str
    # Project-relative files; the step only applies when one of them exists.
    # Empty means the step always applies.
    prerequisites: tuple[str, ...] = ()
    # Reading one of these project-relative files completes the step.
    completes_on_read: tuple[str, ...] = ()
    # A Bash command matching this completes the step.
    completes_on_command: re.Pattern[str] | None = None


STARTUP_STEPS = (
    StartupStep(
        name="session_docs",
        label="Read session docs (SESSION_HANDOFF.md, DEVELOPMENT.md)",
        prerequisites=("SESSION_HANDOFF.md", "DEVELOPMENT.md"),
        completes_on_read=("SESSION_HANDOFF.md", "DEVELOPMENT.md"),
    ),
    StartupStep(
        name="skills_registry",
        label="Read SKILLS_REGISTRY.md",
        prerequisites=("SKILLS_REGISTRY.md", "docs/SKILLS_REGISTRY.md"),
        completes_on_read=("SKILLS_REGISTRY.md", "docs/SKILLS_REGISTRY.md"),
    ),
    StartupStep(
        name="validation_report",
        label="Run the validation report (scripts/validation_report.*)",
        prerequisites=("scripts/validation_report.py", "scripts/validation_report.rb"),
        completes_on_command=VALIDATION_REPORT_COMMAND,
    ),
    StartupStep(
        name="orphan_cleanup",
        label="Kill orphaned agent processes (pgrep / pkill)",
        completes_on_command=PROCESS_CLEANUP_COMMAND,
    ),
    StartupStep(
        name="system_clean",
        label="Run: ./scripts/clean_system.sh",
        prerequisites=("scripts/clean_system.sh",),
        completes_on_command=CLEAN_SYSTEM_COMMAND,
    ),
)

# ── release clearance ─────────────────────────────────────────────────────────

RELEASE_COMMAND_PATTERN = re.compile(r"(?:bash\s+|sh\s+)?(?:\S+/)?(?:full_)?release\.sh\b")
RELEASE_GATE_FLAG_PATTERN = re.compile(r"--(?:full|deploy)\b")
PROJECT_FLAG_PATTERN = re.compile(r"--project\s+(\S+)")
# Preflight tooling is always allowed, even with gate flags on the line, but
# only when it is the whole command (see SHELL_CONTROL_PATTERN).
RELEASE_ALWAYS_ALLOWED = re.compile(
    r"\A\s*(?:(?:bash|sh)\s+)?(?:\S+/)?(?:release_preflight|preflight\.sh)\b"
)

# ── protected paths ───────────────────────────────────────────────────────────

# Tool input fields that name a single file or directory.
PATH_FIELDS = ("file_path", "notebook_path", "path")

# ── tool input validation ─────────────────────────────────────────────────────

# Fields a governed tool must carry before any checker can reason about it.
REQUIRED_FIELDS = {
    "Bash": ("command",),
    "Edit": ("file_path",),
    "Write": ("file_path",),
    "NotebookEdit": ("notebook_path",),
}

# ── circuit breaker ───────────────────────────────────────────────────────────

# First match wins; unmatched errors get a slug of their first line.
ERROR_SIGNATURES = (
    ("build_timeout", re.compile(r"\b(?:build|compile)\b.*\btimed?\s*out\b|\btimeout\b.*\bbuild\b", re.I)),
    ("test_failed", re.compile(r"\btests?\b.*\b(?:failed|failure)\b|\bFAILED\b")),
    ("build_failed", re.compile(r"\bbuild\s+failed\b|\bcompil(?:e|ation)\s+(?:error|failed)\b", re.I)),
    ("command_not_found", re.compile(r"command not found|No such command", re.I)),
    ("permission_denied", re.compile(r"permission denied|operation not permitted", re.I)),
    ("file_not_found", re.compile(r"no such file or directory|file not found", re.I)),
    ("timeout", re.compile(r"\btimed?\s*out\b", re.I)),
)

# Tools whose use counts as "automated retry" once the breaker trips.
BREAKER_GUARDED_TOOLS = frozenset({"Edit", "Write", "NotebookEdit", "Bash", "Task", "Skill"})


POLICIES = {
    "protected_paths": {
        "description": "Keep the agent away from the signing secret and the clearance store.",
        "rules": [
            "any tool call naming the secret file or the clearance directory is blocked",
            "checked before every other policy, bypass included",
        ],
    },
    "circuit_breaker": {
        "description": "Stop automated retries after repeated failures.",
        "rules": [
            "TRIP_THRESHOLD consecutive failed tool results trip the breaker",
            "a tripped breaker blocks Edit/Write/Bash/Task until the user says 'reset breaker'",
            "starting a new session never clears a tripped breaker",
            "an unverifiable breaker file is treated as tripped",
        ],
    },
    "release_clearance": {
        "description": "Gate release.sh --full / --deploy on a signed clearance.",
        "rules": [
            "clearance must exist and carry a valid signature",
            "clearance app, git SHA (HEAD) and project directory must match",
            "clearance expires 4 hours after it was issued; no renewal",
            "preflight tooling is exempt only as a standalone command",
            "a clearance on file keeps the project gated without its manifest",
        ],
    },
    "startup_gate": {
        "description": "Block state-changing tools until startup steps are done.",
        "rules": [
            "read-only tools are always allowed",
            "single startup and read-only Bash commands are allowed; chained or redirecting ones are not",
            "steps whose files do not exist in the project are auto-completed",
            "once open, the gate stays open for the session",
            "a project gated once stays gated if its manifest disappears",
        ],
    },
    "requirements": {
        "description": "Track what the user asked for; handle user-only overrides.",
        "rules": [
            "fresh-start triggers replace requested obligations",
            "additive triggers merge into requested obligations",
            "a research category can only be skipped after it was attempted",
            "breaker reset and bypass toggles are user-only and audit-logged",
        ],
    },
}
