"""
Operator alerts for data-integrity gaps and stuck payments.

The default hook only logs at CRITICAL so log shipping can page on the
``[ALERT]`` tag; the container accepts any callable with the same signature.
"""

import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

AlertHook = Callable[[str, Dict[str, Any]], None]


def log_alert(event: str, details: Optional[Dict[str, Any]] = None) -> None:
    """Emit an operator alert."""
    logger.critical(f"[ALERT] {event}: {details or {}}")
