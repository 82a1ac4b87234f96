"""HMAC signing for state documents.

Every state file the hooks rely on is signed with a host-local secret that
lives outside the project tree.  An agent that rewrites a document without the
secret produces a signature mismatch, and the document is then treated as
absent.

If the secret cannot be loaded the signer is *unkeyed*: every verification
fails and signing raises.  There is no unsigned fallback.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
import stat
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_MIN_SECRET_BYTES = 16


class SignerUnavailable(Exception):
    """Raised when signing is attempted without a loaded secret."""


def canonical_json(payload: Any) -> str:
    """Deterministic JSON used as the signing input.

    - sort_keys: construction order never changes the tag
    - separators: no whitespace ambiguity
    - allow_nan=False: NaN/Infinity have no portable encoding
    - no ``default=``: non-JSON values are rejected, not stringified
    """
    try:
        return json.dumps(
            payload,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as exc:
        raise TypeError(f"payload is not canonical JSON: {exc}") from exc


def load_secret(path: Path) -> bytes | None:
    """Read the secret key file.  Returns None (fail closed) on any problem.

    The file must be owner-only (no group/other bits) and hold at least
    16 bytes of key material; surrounding whitespace is ignored.
    """
    try:
        mode = os.stat(path).st_mode
    except FileNotFoundError:
        logger.warning("state secret %s not found; all signed state is untrusted", path)
        return None
    except OSError as exc:
        logger.warning("cannot stat state secret %s: %s", path, exc)
        return None

    if mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(
            "state secret %s has insecure permissions %s; run: chmod 600 %s",
            path, oct(mode & 0o777), path,
        )
        return None

    try:
        key = path.read_bytes().strip()
    except OSError as exc:
        logger.warning("cannot read state secret %s: %s", path, exc)
        return None

    if len(key) < _MIN_SECRET_BYTES:
        logger.warning("state secret %s is too short (%d bytes)", path, len(key))
        return None
    return key


def generate_secret(path: Path) -> None:
    """Create a new owner-only secret file.  Refuses to overwrite."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as fh:
        fh.write(secrets.token_hex(32) + "\n")


class Signer:
    """Keyed HMAC-SHA256 over canonical JSON."""

    def __init__(self, secret: bytes | None):
        self._secret = secret

    @property
    def keyed(self) -> bool:
        return self._secret is not None

    def sign(self, payload: dict[str, Any]) -> str:
        if self._secret is None:
            raise SignerUnavailable("no state secret loaded; cannot sign state")
        message = canonical_json(payload).encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def verify(self, payload: dict[str, Any], tag: str) -> bool:
        if self._secret is None or not isinstance(tag, str):
            return False
        try:
            expected = self.sign(payload)
        except TypeError:
            return False
        return hmac.compare_digest(expected.encode("ascii"), tag.encode("utf-8"))
