"""Named error policies."""

from __future__ import annotations

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


def best_effort(description: str, op: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
    """Run *op* and report whether it succeeded, never raising.

    Used for work whose failure must not replace the caller's real outcome:
    remote cleanup, local temp-file removal, notifications.
    """
    try:
        op(*args, **kwargs)
    except Exception as exc:
        logger.warning("%s failed (ignored): %s", description, exc)
        return False
    return True
