from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional


def configure_logging(log_dir: Optional[Path] = None, level: str = "INFO") -> logging.Logger:
    """Configure the "pulsebot" and "infra" loggers: stderr plus optional log_dir/pulsebot.log."""
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    lvl = getattr(logging, str(level).upper(), logging.INFO)

    handlers: list = []
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(fmt)
    handlers.append(stream_handler)

    if log_dir is not None:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path / "pulsebot.log", encoding="utf-8")
        file_handler.setFormatter(fmt)
        handlers.append(file_handler)

    for name in ("pulsebot", "infra"):
        logger = logging.getLogger(name)
        logger.setLevel(lvl)
        logger.handlers.clear()
        for h in handlers:
            logger.addHandler(h)
        logger.propagate = False

    return logging.getLogger("pulsebot")
