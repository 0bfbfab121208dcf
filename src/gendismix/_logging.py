"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/_logging.py

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations

import json
import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

console = Console(stderr=True)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        return json.dumps(payload)


def setup_console_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure the root logger for scripts. Library code only uses logging.getLogger(__name__)."""
    root = logging.getLogger()
    for h in list(root.handlers):  # idempotent re-init
        root.removeHandler(h)
    root.setLevel(level.upper())

    if json_logs:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
    else:
        handler = RichHandler(
            console=console,
            show_time=True,
            show_level=True,
            show_path=False,
            rich_tracebacks=False,
            markup=False,
        )
    handler.setLevel(level.upper())
    root.addHandler(handler)
