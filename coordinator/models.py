from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


# ---------------- Wire messages ----------------
class RegisterMessage(BaseModel):
    type: Literal["register"] = "register"
    nodeId: str


class RampMessage(BaseModel):
    type: Literal["ramp"] = "ramp"
    clients: int = Field(..., ge=0)
    step: int = Field(..., ge=0)


class NodeMetrics(BaseModel):
    """Telemetry a node reports. Unknown keys are dropped."""

    model_config = ConfigDict(extra="ignore")

    connected: float | None = None
    avgStartup: float | None = None
    avgBitrate: float | None = None
    avgBuffers: float | None = None
    avgBufferTime: float | None = None
    cpu: float | None = None
    mem: float | None = None
    clients: float | None = None
    failures: float | None = None

    # only `connected` decides whether a report counts; a bad optional figure is blanked
    @field_validator(
        "avgStartup", "avgBitrate", "avgBuffers", "avgBufferTime", "cpu", "mem", "clients", "failures", mode="wrap"
    )
    @classmethod
    def _figure_or_none(cls, value, handler):
        try:
            return handler(value)
        except ValidationError:
            return None


class InboundMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str


class ReportMessage(BaseModel):
    type: Literal["report"] = "report"
    metrics: NodeMetrics


# ---------------- Read models ----------------
@dataclass(frozen=True)
class ClusterSnapshot:
    total_clients: float = 0
    avg_startup_ms: float = 0.0
    avg_bitrate_bps: float = 0.0
    avg_buffer_events: float = 0.0
    avg_buffer_time_ms: float = 0.0
    drop_rate: float = 0.0
    active_nodes: int = 0
    updated_at: float | None = None


@dataclass(frozen=True)
class NodeResources:
    cpu: float = 0.0
    mem: float = 0.0
    clients: float = 0.0
    failures: float = 0.0
