"""Logging helpers for the user lifecycle consumer."""

from __future__ import annotations

import logging
from pathlib import Path


_NOISY_LOGGERS = ("cassandra", "user_lifecycle.event_bus.kafka.client")


def configure_logging(
    level: int = logging.INFO,
    log_paths: list[str] | None = None,
    *,
    verbose: bool = False,
) -> None:
    """Configure default logging if no handlers are present."""
    root = logging.getLogger()
    if root.handlers:
        return
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    for entry in log_paths or []:
        path = Path(entry)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )
    if not verbose:
        # client libraries only speak up on warnings unless asked to
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
