import logging
import os
from pathlib import Path
from typing import Optional, Union


def setup_logging(
    level: Union[int, str, None] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure process-wide logging with a consistent format.

    Called once from the entrypoint. ``TRADER_LOG_LEVEL`` overrides the level
    when none is passed. Subsequent calls are ignored if handlers exist.
    """
    if logging.getLogger().handlers:
        return

    resolved = level if level is not None else os.getenv('TRADER_LOG_LEVEL', 'INFO')
    if isinstance(resolved, str):
        resolved = logging.getLevelName(resolved.upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    handlers = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    logging.basicConfig(level=resolved, format=fmt, handlers=handlers)
