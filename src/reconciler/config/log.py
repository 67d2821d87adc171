"""Logging setup for embedding applications and scripts."""

from __future__ import annotations

import logging
import os
import sys

_LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"
_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def configure_logging(verbose: int = 0) -> None:
    """Set up stdlib logging based on a ``-v`` count or the ``RECONCILE_LOG`` env var.

    The library itself never configures handlers; call this from the
    application that embeds it.
    """
    env_level = os.environ.get("RECONCILE_LOG", "").upper()
    if env_level:
        if env_level not in _VALID_LEVELS:
            print(
                f"WARNING: invalid RECONCILE_LOG level '{env_level}', "
                f"expected one of {', '.join(sorted(_VALID_LEVELS))}; defaulting to INFO",
                file=sys.stderr,
            )
        level = getattr(logging, env_level, logging.INFO)
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose >= 1:
        level = logging.INFO
    else:
        return  # no flag: stay unconfigured
    logging.basicConfig(
        level=logging.WARNING,
        format=_LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    logging.getLogger("reconciler").setLevel(level)
