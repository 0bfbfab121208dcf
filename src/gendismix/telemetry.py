"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/telemetry.py

Send evaluation telemetry updates to a caller-supplied sink.

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations

from typing import Any, Dict, List, Protocol

import pandas as pd


class EvaluationTelemetry(Protocol):
    def update(self, **fields: Any) -> None: ...


class NullTelemetry:
    def update(self, **_fields: Any) -> None:
        return None


class RecordingTelemetry:
    """Keeps every update, e.g. to inspect an optimizer's trajectory afterwards."""

    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []

    def update(self, **fields: Any) -> None:
        self.records.append(dict(fields))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame.from_records(self.records)
