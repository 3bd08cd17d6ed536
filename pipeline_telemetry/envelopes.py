"""
Wire format for the telemetry feed.

Every frame on the socket is a JSON object tagged by ``type``. Frames are
validated into one of the envelope models below; anything else is an
EnvelopeError and must never be treated as telemetry.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr, TypeAdapter, ValidationError, field_validator

from .stages import Stage

METRIC_KEYS = ("throughput", "latency", "securityScore")


class EnvelopeError(ValueError):
    """A frame that is not valid JSON or not a known envelope."""


class ReportError(ValueError):
    """An inbound telemetry report that cannot be accepted."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


class Metrics(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    throughput: float = 0
    latency: float = 0
    security_score: float = Field(0, alias="securityScore")


class InfoEnvelope(BaseModel):
    type: Literal["info"]
    message: str = ""


class TelemetryEnvelope(BaseModel):
    # re-broadcast reports carry extra fields (deviceId, status, ...)
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Literal["telemetry"]
    source: StrictStr
    stage: Optional[Stage] = Field(None, alias="stageId")
    is_last_stage: bool = Field(False, alias="isLastStage")
    metrics: Metrics = Field(default_factory=Metrics)
    ts: float = 0


class DeviceInfo(BaseModel):
    id: StrictStr
    name: StrictStr
    ip: StrictStr


class DeviceJoinEnvelope(BaseModel):
    type: Literal["device_join"]
    device: DeviceInfo


class DeviceExitEnvelope(BaseModel):
    type: Literal["device_exit"]
    ip: StrictStr
    name: str = ""


class ErrorEnvelope(BaseModel):
    type: Literal["error"]
    message: str = ""


Envelope = Annotated[
    Union[InfoEnvelope, TelemetryEnvelope, DeviceJoinEnvelope, DeviceExitEnvelope, ErrorEnvelope],
    Field(discriminator="type"),
]

_envelope_adapter = TypeAdapter(Envelope)
_device_listing_adapter = TypeAdapter(List[DeviceInfo])


def parse_envelope(frame):
    """Validate a raw text/bytes frame into an envelope model."""
    try:
        return _envelope_adapter.validate_json(frame)
    except ValidationError as exc:
        first = exc.errors()[0]
        raise EnvelopeError(f"{first['type']}: {first['msg']}") from exc


def parse_device_listing(payload) -> List[DeviceInfo]:
    """Validate the decoded body of GET /api/devices."""
    try:
        return _device_listing_adapter.validate_python(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        raise EnvelopeError(f"{first['type']}: {first['msg']}") from exc


def info_message(message: str) -> dict:
    return {"type": "info", "message": message}


def error_message(message: str) -> dict:
    return {"type": "error", "message": message}


class TelemetryReport(BaseModel):
    """Telemetry pushed in by a gateway, over REST or the socket."""

    model_config = ConfigDict(extra="allow")

    device_id: StrictStr = Field(alias="deviceId", min_length=1)
    status: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None

    @field_validator("metrics")
    @classmethod
    def _known_metrics_are_numbers(cls, value):
        for key in METRIC_KEYS:
            if value and key in value:
                number = value[key]
                if isinstance(number, bool) or not isinstance(number, (int, float)):
                    raise ValueError(f"metrics.{key} must be a number")
        return value


def parse_report(payload: Any) -> TelemetryReport:
    if not isinstance(payload, dict):
        raise ReportError("deviceId required")
    try:
        return TelemetryReport.model_validate(payload)
    except ValidationError as exc:
        errors = exc.errors()
        fields = {err["loc"][0] for err in errors if err["loc"]}
        if "deviceId" in fields:
            raise ReportError("deviceId required") from exc
        for err in errors:
            if err["loc"] == ("metrics",) and err["type"] == "value_error":
                raise ReportError(str(err["ctx"]["error"])) from exc
        if "metrics" in fields:
            raise ReportError("metrics must be object") from exc
        raise ReportError(errors[0]["msg"]) from exc
