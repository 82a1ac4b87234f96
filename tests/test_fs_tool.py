"""Tests for tools/fs_tool.py: manifest parsing, project-relative paths."""

from __future__ import annotations

from pathlib import Path

import pytest

from tools.fs_tool import (
    ManifestError,
    any_exists,
    find_sop_file,
    mentions_path,
    overlaps,
    read_app_name,
    relative_to_project,
)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "docs").mkdir(parents=True)
    return root


class TestReadAppName:
    def test_reads_name_line(self, project_root: Path) -> None:
        manifest = project_root / ".hookgate-project"
        manifest.write_text("# app\nname: Storefront\nversion: 3\n")
        assert read_app_name(manifest) == "Storefront"

    def test_no_manifest_is_unmanaged(self, project_root: Path) -> None:
        assert read_app_name(project_root / ".hookgate-project") is None

    def test_manifest_without_name_raises(self, project_root: Path) -> None:
        manifest = project_root / ".hookgate-project"
        manifest.write_text("version: 3\n")
        with pytest.raises(ManifestError, match="name:"):
            read_app_name(manifest)


class TestRelativeToProject:
    def test_absolute_inside(self, project_root: Path) -> None:
        assert relative_to_project(str(project_root / "docs" / "SOP.md"), project_root) == "docs/SOP.md"

    def test_relative_path(self, project_root: Path) -> None:
        assert relative_to_project("DEVELOPMENT.md", project_root) == "DEVELOPMENT.md"

    def test_dotdot_collapsed(self, project_root: Path) -> None:
        assert relative_to_project("docs/../SESSION_HANDOFF.md", project_root) == "SESSION_HANDOFF.md"

    def test_escape_returns_none(self, project_root: Path) -> None:
        assert relative_to_project("../other/SESSION_HANDOFF.md", project_root) is None


class TestLookups:
    def test_any_exists(self, project_root: Path) -> None:
        (project_root / "docs" / "SKILLS_REGISTRY.md").write_text("")
        assert any_exists(project_root, ("SKILLS_REGISTRY.md", "docs/SKILLS_REGISTRY.md"))
        assert not any_exists(project_root, ("SKILLS_REGISTRY.md",))

    def test_find_sop_prefers_development(self, project_root: Path) -> None:
        (project_root / "docs" / "SOP.md").write_text("")
        assert find_sop_file(project_root) == "docs/SOP.md"
        (project_root / "DEVELOPMENT.md").write_text("")
        assert find_sop_file(project_root) == "DEVELOPMENT.md"

    def test_find_sop_none(self, project_root: Path) -> None:
        assert find_sop_file(project_root) is None


class TestProtectedPathHelpers:
    @pytest.fixture
    def secret(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        return tmp_path / "home" / ".hookgate" / "state_secret"

    def test_mentions_every_spelling(self, secret: Path) -> None:
        for text in (
            f"cat {secret}",
            "cat ~/.hookgate/state_secret",
            "xxd ${HOME}/.hookgate/state_secret",
            "find / -name state_secret",
        ):
            assert mentions_path(text, secret), text
        assert not mentions_path("cat README.md", secret)

    def test_overlaps_target_and_children(self, secret: Path, project_root: Path) -> None:
        assert overlaps(str(secret), secret, project_root)
        assert overlaps("~/.hookgate/state_secret", secret, project_root)
        assert overlaps("x", secret.parent, secret.parent)
        assert not overlaps("docs/SOP.md", secret, project_root)

    def test_parents_only_when_asked(self, secret: Path, project_root: Path) -> None:
        assert not overlaps(str(secret.parent), secret, project_root)
        assert overlaps(str(secret.parent), secret, project_root, include_parents=True)
