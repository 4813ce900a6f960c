import csv
import logging
from datetime import datetime, timezone

from coordinator.models import NodeMetrics

logger = logging.getLogger(__name__)

COLUMNS = [
    "timestamp",
    "node",
    "step",
    "connected",
    "avg_startup_ms",
    "avg_bitrate_bps",
    "avg_buffers",
    "avg_buffer_time_ms",
    "cpu",
    "mem",
    "clients",
    "failures",
]


class ReportSink:
    """Appends every accepted node report to a CSV file for offline analysis."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._fh = None
        self._writer = None

    def _open(self) -> csv.DictWriter:
        if self._writer is None:
            self._fh = open(self.path, "a", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._fh, fieldnames=COLUMNS)
            if self._fh.tell() == 0:
                self._writer.writeheader()
        return self._writer

    def append(self, node_id: str, step: int, metrics: NodeMetrics, timestamp: datetime | None = None) -> dict:
        timestamp = timestamp or datetime.now(timezone.utc)
        row = {
            "timestamp": timestamp.isoformat(),
            "node": node_id,
            "step": step if step >= 0 else "",
            "connected": metrics.connected,
            "avg_startup_ms": metrics.avgStartup,
            "avg_bitrate_bps": metrics.avgBitrate,
            "avg_buffers": metrics.avgBuffers,
            "avg_buffer_time_ms": metrics.avgBufferTime,
            "cpu": metrics.cpu,
            "mem": metrics.mem,
            "clients": metrics.clients,
            "failures": metrics.failures,
        }

        self._open().writerow(row)
        self._fh.flush()
        return row

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
        self._fh = None
        self._writer = None
