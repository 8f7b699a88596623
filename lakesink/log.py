"""Logging setup for the CLI.

Plain `logging`, one logger per module. The console always gets output; a
file under `log_dir` is added when one is given. Calling setup again only
updates the level and format of the handlers it installed before.
"""

from __future__ import annotations
import logging
import os
from typing import Optional

def _install(root: logging.Logger, handler_name: str, factory, fmt: logging.Formatter) -> None:
    for h in root.handlers:
        if h.get_name() == handler_name:
            h.setFormatter(fmt)
            return
    h = factory()
    h.set_name(handler_name)
    h.setFormatter(fmt)
    root.addHandler(h)

def setup_logging(level: str = "INFO", log_dir: Optional[str] = None, name: str = "lakesink") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s | %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    _install(root, f"{name}-console", logging.StreamHandler, fmt)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        path = os.path.join(log_dir, f"{name}.log")
        _install(root, f"{name}-file:{path}", lambda: logging.FileHandler(path, encoding="utf-8"), fmt)
