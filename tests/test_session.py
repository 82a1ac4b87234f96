"""Tests for core/session.py: state dir bootstrap and per-session resets."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from core.circuit_breaker import CircuitBreaker
from core.config import Context, PolicyConfig
from core.session import start_session
from core.signer import Signer

_KEY = b"0123456789abcdef0123456789abcdef"
NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


def _make_ctx(tmp_path: Path, signer: Signer | None = None) -> Context:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    return Context(
        project_dir=project,
        state_dir=project / ".hookgate",
        clearance_dir=tmp_path / "clearance",
        manifest_path=project / ".hookgate-project",
        signer=signer or Signer(_KEY),
        policy=PolicyConfig(),
        clock=lambda: NOW,
    )


class TestStartSession:
    def test_creates_state_dir_with_gitignore(self, tmp_path: Path) -> None:
        ctx = _make_ctx(tmp_path)
        start_session(ctx, "s1")
        assert (ctx.state_dir / ".gitignore").read_text().splitlines()[-1] == "*"

    def test_context_lines(self, tmp_path: Path) -> None:
        ctx = _make_ctx(tmp_path)
        ctx.manifest_path.write_text("name: App\n")
        (ctx.project_dir / "CONTRIBUTING.md").write_text("rules")
        lines = start_session(ctx, "s1").lines
        assert "Project: App" in lines
        assert "SOP: read CONTRIBUTING.md before starting work" in lines
        assert "Startup steps pending: orphan_cleanup" in lines

    def test_stale_failure_count_cleared(self, tmp_path: Path) -> None:
        ctx = _make_ctx(tmp_path)
        breaker = CircuitBreaker(ctx)
        breaker.record_failure("a")
        breaker.record_failure("a")
        result = start_session(ctx, "s2")
        assert result.breaker.failures == 0
        assert not result.breaker.tripped

    def test_tripped_breaker_survives_session_start(self, tmp_path: Path) -> None:
        ctx = _make_ctx(tmp_path)
        breaker = CircuitBreaker(ctx)
        for _ in range(3):
            breaker.record_failure("build_timeout")
        result = start_session(ctx, "s2")
        assert result.breaker.tripped
        assert result.breaker.pending_user_reset
        assert any("STILL TRIPPED" in line for line in result.lines)
        assert not CircuitBreaker(ctx).check().allowed

    def test_without_secret_warns_instead_of_crashing(self, tmp_path: Path) -> None:
        ctx = _make_ctx(tmp_path, signer=Signer(None))
        ctx.manifest_path.write_text("name: App\n")
        lines = start_session(ctx, "s1").lines
        assert any("startup gate not initialized" in line for line in lines)
        assert any("init_secret" in line for line in lines)
