"""Issue a release clearance for the project's current HEAD.

Meant to be the last step of a passing release pipeline: run the checks,
then call this so that ``release.sh --deploy`` is allowed for the next few
hours, for exactly this commit.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from core.clearance import ReleaseClearance
from core.config import build_context, load_config
from core.decision import PolicyViolation
from core.state_store import StateStoreError
from tools.fs_tool import ManifestError, read_app_name
from tools.git_tool import GitError

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Grant a release clearance for HEAD")
    parser.add_argument("--project", default=".", help="project directory (default: cwd)")
    parser.add_argument("--app", help="app name (default: read from the project manifest)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    args = parse_args(argv)

    config = load_config()
    project_dir = Path(args.project).expanduser().resolve()
    ctx = build_context(config, project_dir)

    try:
        app = args.app or read_app_name(ctx.manifest_path)
    except ManifestError as exc:
        logger.error("%s", exc)
        sys.exit(1)
    if not app:
        logger.error("no app name: pass --app or add %s", ctx.manifest_path.name)
        sys.exit(1)

    try:
        doc = ReleaseClearance(ctx).issue_clearance(app, project_dir)
    except (GitError, StateStoreError, PolicyViolation) as exc:
        logger.error("clearance not granted: %s", exc)
        sys.exit(1)
    logger.info("cleared %s at %s until %s", doc.app, doc.git_sha, doc.expires_at)


if __name__ == "__main__":
    main()
