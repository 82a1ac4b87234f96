"""Entry point: read hook event → build context → decide → exit code.

Exit codes: 0 allow, 2 block (message on stderr), 1 enforcement failure.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from core.config import AppConfig, Context, build_context, load_config, resolve_project_dir
from core.policy_engine import PolicyDispatcher, ToolEvent
from core.requirements import RequirementTracker
from core.session import start_session
from core.state_store import StateStoreError
from policies.default_policies import POLICIES

logger = logging.getLogger(__name__)

EXIT_ALLOW = 0
EXIT_FAILURE = 1
EXIT_BLOCK = 2


def configure_logging(level: str = "WARNING") -> None:
    # stdout belongs to the hook host
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Policy hooks for an autonomous coding agent")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("pre-tool-use", help="decide whether a tool call may run (event JSON on stdin)")
    sub.add_parser("post-tool-use", help="record the outcome of a tool call (event JSON on stdin)")
    sub.add_parser("prompt", help="analyze a user prompt (event JSON on stdin)")
    sub.add_parser("session-start", help="bootstrap state for a new agent session")
    sub.add_parser("policies", help="print the active policy rules as JSON")
    return parser.parse_args(argv)


def read_event(stream=None) -> dict[str, Any]:
    """Parse the hook event.  Raises ValueError on anything but a JSON object."""
    raw = (stream or sys.stdin).read()
    if not raw.strip():
        return {}
    event = json.loads(raw)
    if not isinstance(event, dict):
        raise ValueError("hook event must be a JSON object")
    return event


def _session_id(event: dict[str, Any]) -> str | None:
    value = event.get("session_id")
    return None if value is None else str(value)


def to_tool_event(event: dict[str, Any], ctx: Context) -> ToolEvent:
    details = event.get("tool_input")
    return ToolEvent(
        action_kind=str(event.get("tool_name") or ""),
        action_details=details if isinstance(details, dict) else {},
        project_dir=ctx.project_dir,
        session_id=_session_id(event),
    )


def tool_failure(response: Any) -> tuple[bool, str]:
    """(failed, error text) from a tool_response payload."""
    if isinstance(response, dict):
        exit_code = response.get("exit_code", response.get("returncode"))
        failed = bool(
            response.get("is_error")
            or response.get("error")
            or response.get("interrupted")
            or (isinstance(exit_code, int) and exit_code != 0)
        )
        text = response.get("stderr") or response.get("error") or response.get("stdout") or ""
        return failed, str(text)
    if isinstance(response, str):
        return response.lower().startswith("error"), response
    return False, ""


# ── commands ──────────────────────────────────────────────────────────────────


def cmd_pre_tool_use(ctx: Context, event: dict[str, Any]) -> int:
    decision = PolicyDispatcher(ctx).decide(to_tool_event(event, ctx))
    if decision.allowed:
        return EXIT_ALLOW
    print(decision.message or f"blocked by {decision.checker} ({decision.code})", file=sys.stderr)
    return EXIT_BLOCK


def cmd_post_tool_use(ctx: Context, event: dict[str, Any]) -> int:
    failed, text = tool_failure(event.get("tool_response"))
    PolicyDispatcher(ctx).record_outcome(to_tool_event(event, ctx), failed, text)
    return EXIT_ALLOW


def cmd_prompt(ctx: Context, event: dict[str, Any]) -> int:
    analysis = RequirementTracker(ctx).process_prompt(str(event.get("prompt") or ""))
    for line in analysis.messages:
        print(line)
    return EXIT_ALLOW


def cmd_session_start(ctx: Context, event: dict[str, Any]) -> int:
    for line in start_session(ctx, _session_id(event)).lines:
        print(line)
    return EXIT_ALLOW


COMMANDS = {
    "pre-tool-use": cmd_pre_tool_use,
    "post-tool-use": cmd_post_tool_use,
    "prompt": cmd_prompt,
    "session-start": cmd_session_start,
}


def run(args: argparse.Namespace, config: AppConfig, stdin=None) -> int:
    if args.command == "policies":
        print(json.dumps(POLICIES, indent=2))
        return EXIT_ALLOW

    try:
        event = read_event(stdin)
    except ValueError as exc:
        print(f"hookgate: unreadable hook event: {exc}", file=sys.stderr)
        # A tool call we cannot parse is not allowed through.
        return EXIT_BLOCK if args.command == "pre-tool-use" else EXIT_FAILURE

    cwd = event.get("cwd")
    ctx = build_context(config, resolve_project_dir(cwd if isinstance(cwd, str) else None))
    try:
        return COMMANDS[args.command](ctx, event)
    except StateStoreError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"hookgate: enforcement state unavailable: {exc}", file=sys.stderr)
        return EXIT_FAILURE


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        config = load_config()
    except EnvironmentError as exc:
        configure_logging()
        logger.error("configuration error: %s", exc)
        sys.exit(EXIT_FAILURE)
    configure_logging(config.log_level)
    sys.exit(run(args, config))


if __name__ == "__main__":
    main()
