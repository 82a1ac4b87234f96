"""Load and validate hook configuration from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv

from core.signer import Signer, load_secret

load_dotenv()


DEFAULT_HOME_DIR = Path("~/.hookgate")


@dataclass(frozen=True)
class PolicyConfig:
    # Consecutive failures before the breaker trips.  Policy choice, not derived.
    trip_threshold: int = 3
    clearance_ttl_seconds: int = 4 * 3600
    git_timeout_seconds: float = 5.0
    lock_timeout_seconds: float = 1.0


@dataclass(frozen=True)
class PathsConfig:
    secret_path: Path = DEFAULT_HOME_DIR / "state_secret"
    clearance_dir: Path = DEFAULT_HOME_DIR / "ship_clearance"
    state_dir_name: str = ".hookgate"
    manifest_name: str = ".hookgate-project"


@dataclass(frozen=True)
class AppConfig:
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    log_level: str = "WARNING"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Context:
    """Everything a component needs about the current invocation.

    Built once at the process entry point; core logic never looks at the
    environment or the working directory itself.
    """

    project_dir: Path
    state_dir: Path
    clearance_dir: Path
    manifest_path: Path
    signer: Signer
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    clock: Callable[[], datetime] = _utcnow
    # The agent must never read this; the dispatcher blocks any call naming it.
    secret_path: Path | None = None

    def now(self) -> datetime:
        return self.clock()


def _getenv(name: str, default: str | None = None) -> str | None:
    """os.getenv wrapper that strips inline comments (e.g. '3  # note' → '3')."""
    raw = os.getenv(name, default)
    if raw is None:
        return None
    return raw.split(" #")[0].strip()


def _getenv_number(name: str, default: float, cast: Callable[[str], float]) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise EnvironmentError(f"Environment variable {name} must be numeric, got {raw!r}")
    if value <= 0:
        raise EnvironmentError(f"Environment variable {name} must be positive, got {raw!r}")
    return value


def load_config() -> AppConfig:
    """Build AppConfig from environment. Raises EnvironmentError on bad values."""
    defaults = PathsConfig()
    return AppConfig(
        policy=PolicyConfig(
            trip_threshold=int(_getenv_number("HOOKGATE_TRIP_THRESHOLD", 3, int)),
            clearance_ttl_seconds=int(
                _getenv_number("HOOKGATE_CLEARANCE_TTL_SECONDS", 4 * 3600, int)
            ),
            git_timeout_seconds=_getenv_number("HOOKGATE_GIT_TIMEOUT_SECONDS", 5.0, float),
            lock_timeout_seconds=_getenv_number("HOOKGATE_LOCK_TIMEOUT_SECONDS", 1.0, float),
        ),
        paths=PathsConfig(
            secret_path=Path(_getenv("HOOKGATE_SECRET_PATH") or defaults.secret_path),
            clearance_dir=Path(_getenv("HOOKGATE_CLEARANCE_DIR") or defaults.clearance_dir),
            state_dir_name=_getenv("HOOKGATE_STATE_DIR_NAME") or defaults.state_dir_name,
            manifest_name=_getenv("HOOKGATE_MANIFEST_NAME") or defaults.manifest_name,
        ),
        log_level=(_getenv("HOOKGATE_LOG_LEVEL") or "WARNING").upper(),
    )


def resolve_project_dir(event_cwd: str | None = None) -> Path:
    """Pick the project directory for this invocation (entry point only)."""
    explicit = _getenv("HOOKGATE_PROJECT_DIR")
    if explicit:
        return Path(explicit).expanduser().resolve()
    if event_cwd:
        return Path(event_cwd).expanduser().resolve()
    return Path.cwd().resolve()


def build_context(
    config: AppConfig,
    project_dir: Path,
    signer: Signer | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Context:
    """Assemble a Context; loads the secret once unless a signer is supplied."""
    if signer is None:
        signer = Signer(load_secret(config.paths.secret_path.expanduser()))
    return Context(
        project_dir=project_dir,
        state_dir=project_dir / config.paths.state_dir_name,
        clearance_dir=config.paths.clearance_dir.expanduser(),
        manifest_path=project_dir / config.paths.manifest_name,
        signer=signer,
        policy=config.policy,
        clock=clock or _utcnow,
        secret_path=config.paths.secret_path.expanduser(),
    )
