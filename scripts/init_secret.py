"""Create the host's state-signing secret.

Run once per machine.  The file is owner-only (0600) and is never
overwritten; delete it by hand to rotate, which voids every signed state
file and clearance on this host.
"""

from __future__ import annotations

import logging
import sys

from core.config import load_config
from core.signer import generate_secret, load_secret

logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config = load_config()
    path = config.paths.secret_path.expanduser()
    try:
        generate_secret(path)
    except FileExistsError:
        usable = load_secret(path) is not None
        logger.info("secret already exists at %s (usable=%s)", path, usable)
        sys.exit(0 if usable else 1)
    except OSError as exc:
        logger.error("could not create secret at %s: %s", path, exc)
        sys.exit(1)
    logger.info("secret written to %s", path)


if __name__ == "__main__":
    main()
