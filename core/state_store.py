"""Signed JSON state documents with atomic writes and advisory locks."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_delay, wait_fixed

from core.signer import Signer, SignerUnavailable

logger = logging.getLogger(__name__)

# Read outcomes.  Only OK carries a payload.
OK = "ok"
MISSING = "missing"
MALFORMED = "malformed"
TAMPERED = "tampered"
UNREADABLE = "unreadable"

_LOCK_POLL_SECONDS = 0.02


class StateStoreError(Exception):
    """The enforcement layer could not persist or lock its own state."""


class StateWriteError(StateStoreError):
    """A signed write (or delete) did not complete."""


class StateLockTimeout(StateStoreError):
    """The advisory lock for a document could not be taken in time."""


@dataclass(frozen=True)
class ReadResult:
    status: str
    payload: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.status == OK

    @property
    def present(self) -> bool:
        """True when a file existed, trustworthy or not."""
        return self.status != MISSING


class StateStore:
    """Named signed documents under one directory.  All reads go to disk."""

    def __init__(self, base_dir: Path, signer: Signer, lock_timeout: float = 1.0):
        self.base_dir = base_dir
        self.signer = signer
        self.lock_timeout = lock_timeout

    def path_for(self, key: str) -> Path:
        return self.base_dir / key

    # ── reads ─────────────────────────────────────────────────────

    def inspect(self, key: str) -> ReadResult:
        """Read and classify a document.  Never raises."""
        path = self.path_for(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ReadResult(MISSING)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("cannot read %s: %s", path, exc)
            return ReadResult(UNREADABLE)

        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("state %s is not valid JSON", path)
            return ReadResult(MALFORMED)

        if not isinstance(envelope, dict):
            return ReadResult(MALFORMED)
        payload = envelope.get("payload")
        signature = envelope.get("signature")
        if not isinstance(payload, dict) or not isinstance(signature, str):
            logger.warning("state %s has no signed envelope", path)
            return ReadResult(MALFORMED)

        if not self.signer.verify(payload, signature):
            logger.warning("state %s failed signature verification", path)
            return ReadResult(TAMPERED)
        return ReadResult(OK, payload)

    def read_verified(self, key: str) -> dict[str, Any] | None:
        """Payload if present and authentic, else None."""
        return self.inspect(key).payload

    # ── writes ────────────────────────────────────────────────────

    def write_signed(self, key: str, payload: dict[str, Any]) -> None:
        """Sign and atomically replace the document.  Raises StateWriteError."""
        path = self.path_for(key)
        try:
            signature = self.signer.sign(payload)
        except (SignerUnavailable, TypeError) as exc:
            raise StateWriteError(f"cannot sign {path}: {exc}") from exc

        envelope = {"payload": payload, "signature": signature}
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        except OSError as exc:
            raise StateWriteError(f"cannot write {path}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(envelope, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except OSError as exc:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise StateWriteError(f"cannot write {path}: {exc}") from exc
        logger.debug("wrote signed state %s", path)

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StateWriteError(f"cannot delete {path}: {exc}") from exc

    # ── locking ───────────────────────────────────────────────────

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """Hold an exclusive advisory lock for a read-modify-write of *key*.

        Polls a non-blocking flock until ``lock_timeout`` elapses, then raises
        StateLockTimeout instead of waiting forever.
        """
        lock_path = self.path_for(key + ".lock")
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(lock_path, "a+", encoding="utf-8")
        except OSError as exc:
            raise StateWriteError(f"cannot open lock {lock_path}: {exc}") from exc

        with handle:
            try:
                for attempt in Retrying(
                    stop=stop_after_delay(self.lock_timeout),
                    wait=wait_fixed(_LOCK_POLL_SECONDS),
                    retry=retry_if_exception_type(BlockingIOError),
                ):
                    with attempt:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except RetryError as exc:
                raise StateLockTimeout(
                    f"could not lock {lock_path} within {self.lock_timeout:.1f}s"
                ) from exc
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
