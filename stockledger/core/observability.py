import json
import logging
from typing import Any

from stockledger.core.config import settings

logger = logging.getLogger("stockledger.ledger")


def setup_observability() -> None:
    if logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(settings.log_level)
    logger.propagate = False


def _default(value: Any) -> str:
    return str(value)


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one JSON line per ledger event."""
    if not logger.isEnabledFor(level):
        return
    logger.log(level, json.dumps({"event": event, **fields}, default=_default))
