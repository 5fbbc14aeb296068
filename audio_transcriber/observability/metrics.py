"""Per-job processing metrics.

Provides the JobMetrics dataclass, a StageTimer context manager for
measuring pipeline stage durations, and log_job_metrics() for emitting a
job's metrics as one structured JSON line to stdout.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime


@dataclass
class JobMetrics:
    """Metrics collected for a single job once it reaches a terminal state."""

    job_id: str
    status: str
    file_size_bytes: int
    audio_duration_seconds: float | None
    processing_wall_time_seconds: float
    was_converted: bool = False
    cost_estimate: float = 0.0
    retry_count: int = 0
    stage_timings: dict[str, float] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None


class StageTimer:
    """Context manager that records the wall-clock duration of a stage.

    The duration is stored on the timer and, when a ``timings`` dict is
    given, under ``stage_name`` in that dict. A stage that raises is
    recorded as ``_<stage_name>_failed`` instead.

    Usage:
        timings = {}
        with StageTimer("conversion", timings):
            do_work()
    """

    def __init__(
        self, stage_name: str, timings: dict[str, float] | None = None
    ) -> None:
        self.stage_name = stage_name
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.duration_seconds: float = 0.0
        self._timings = timings
        self._mono_start: float = 0.0

    def __enter__(self) -> StageTimer:
        self.start_time = datetime.now(UTC)
        self._mono_start = time.monotonic()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.duration_seconds = time.monotonic() - self._mono_start
        self.end_time = datetime.now(UTC)
        if self._timings is not None:
            key = self.stage_name if exc_type is None else f"_{self.stage_name}_failed"
            self._timings[key] = self.duration_seconds


def log_job_metrics(metrics: JobMetrics) -> None:
    """Emit job metrics as a single structured JSON line to stdout.

    Args:
        metrics: Populated JobMetrics dataclass.
    """
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": "INFO",
        "metric_type": "job_completion",
        **asdict(metrics),
    }
    print(json.dumps(entry))
