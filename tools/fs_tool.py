"""Project file helpers: manifest lookup, project-relative and protected path checks."""

from __future__ import annotations

import re
from pathlib import Path

_NAME_LINE = re.compile(r"\Aname:\s*(\S+)")
_SOP_CANDIDATES = ("DEVELOPMENT.md", "CONTRIBUTING.md", "SOP.md", "docs/SOP.md")


class ManifestError(Exception):
    """The project manifest exists but does not name the app."""


def read_app_name(manifest_path: Path) -> str | None:
    """App name from the manifest's ``name:`` line.

    Returns None when the project has no manifest (not a managed project).
    Raises ManifestError when the manifest is present but has no name.
    """
    if not manifest_path.is_file():
        return None
    for line in manifest_path.read_text(encoding="utf-8", errors="replace").splitlines():
        match = _NAME_LINE.match(line)
        if match:
            return match.group(1)
    raise ManifestError(f"{manifest_path.name} must have a 'name:' field")


def relative_to_project(path: str, project_dir: Path) -> str | None:
    """Resolve *path* (collapses ../) and return it relative to the project.

    Returns None when the path escapes the project root.
    """
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = project_dir / candidate
    resolved = candidate.resolve()
    try:
        return resolved.relative_to(project_dir.resolve()).as_posix()
    except ValueError:
        return None


def any_exists(project_dir: Path, relative_paths: tuple[str, ...]) -> bool:
    return any((project_dir / p).exists() for p in relative_paths)


def find_sop_file(project_dir: Path) -> str | None:
    return next((c for c in _SOP_CANDIDATES if (project_dir / c).is_file()), None)


def path_spellings(path: Path) -> set[str]:
    """Ways a command line can spell *path*: absolute, ``~/``, ``$HOME/``, bare name."""
    absolute = path.expanduser()
    spellings = {str(absolute), absolute.name}
    try:
        rel = absolute.relative_to(Path.home()).as_posix()
    except (ValueError, RuntimeError):
        return spellings
    spellings.update({f"~/{rel}", f"$HOME/{rel}", f"${{HOME}}/{rel}"})
    return spellings


def mentions_path(text: str, path: Path) -> bool:
    return any(spelling and spelling in text for spelling in path_spellings(path))


def overlaps(path: str, target: Path, base_dir: Path, include_parents: bool = False) -> bool:
    """True when *path* resolves to *target* or somewhere below it.

    With ``include_parents`` a directory that contains *target* also counts,
    for tools that search a whole tree.
    """
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    resolved = candidate.resolve()
    protected = target.expanduser().resolve()
    if resolved == protected or protected in resolved.parents:
        return True
    return include_parents and resolved in protected.parents
