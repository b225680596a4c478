from __future__ import annotations

import json
import logging
import os
import sys
import time
from typing import Optional

import numpy as np


def _jsonable(obj):
    """Fallback for numpy scalars/arrays that show up in `extra` payloads."""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.generic):
        return obj.item()
    return str(obj)


class JsonFormatter(logging.Formatter):
    """
    Minimal JSON log formatter:
      { "t": 169, "lvl": "INFO", "name": "mod", "msg": "text", "extra": {...} }
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "t": int(time.time() * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if hasattr(record, "extra") and isinstance(record.extra, dict):  # type: ignore[attr-defined]
            payload["extra"] = record.extra  # type: ignore[attr-defined]
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=_jsonable)


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Configure root logger once with JSON formatting.
    Level precedence:
      - explicit `level` arg
      - env LOG_LEVEL (e.g., DEBUG/INFO/WARN/ERROR)
      - default INFO
    A later call with an explicit level or file reconfigures the root logger;
    a bare call on an already configured logger is a no-op.
    """
    root = logging.getLogger()
    if getattr(root, "_glacier_configured", False) and level is None and log_file is None:
        return

    lvl_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    lvl = getattr(logging, lvl_name, logging.INFO)
    if not isinstance(lvl, int):
        lvl = logging.INFO

    formatter = JsonFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(lvl)
    root._glacier_configured = True  # type: ignore[attr-defined]


def get_logger(name: str) -> logging.Logger:
    """Get a module logger; ensures root is configured."""
    setup_logging()
    return logging.getLogger(name)
