"""Envoy logging configuration.

All modules log through the standard library: each module owns
`logger = logging.getLogger(__name__)` and this module attaches the single
handler to the `envoy` logger. Level comes from `ENVOY_LOG_LEVEL` (default INFO).
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"


def setup_logging(level: Optional[str] = None) -> None:
    """Configure Envoy logging.

    Args:
        level: Optional override for `ENVOY_LOG_LEVEL`.
    """
    if level:
        os.environ["ENVOY_LOG_LEVEL"] = level

    resolved = os.getenv("ENVOY_LOG_LEVEL", "INFO").upper()
    root = logging.getLogger("envoy")
    root.setLevel(getattr(logging, resolved, logging.INFO))

    # Re-running setup must not stack handlers.
    for handler in list(root.handlers):
        if getattr(handler, "_envoy_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    handler._envoy_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
