"""
Schema definitions for dispatched calls.

This module defines the wire payloads exchanged with the remote service,
the classified outcome of a single call, and the summary of a finished run.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt
import logging

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Classification of a failed call."""

    RATE_LIMITED = "rate_limited"
    REQUEST_ERROR = "request_error"
    TRANSPORT_ERROR = "transport_error"


class RequestPayload(BaseModel):
    """Body posted for one call."""

    index: int = Field(..., ge=1, description="Call index, 1..total_requests")


class ResultData(BaseModel):
    """Inner ``data`` object of a successful response."""

    model_config = ConfigDict(extra="allow")

    result: Union[StrictInt, StrictFloat] = Field(..., description="Numeric result value")


class ResultEnvelope(BaseModel):
    """Successful response body: ``{"data": {"result": <number>}}``."""

    model_config = ConfigDict(extra="allow")

    data: ResultData


@dataclass(frozen=True)
class Success:
    """A call that produced a result value."""

    index: int
    value: Union[int, float]


@dataclass(frozen=True)
class Failure:
    """A call that failed, with its classification and diagnostics."""

    index: int
    kind: ErrorKind
    status_code: Optional[int] = None
    detail: Optional[str] = None

    def describe(self) -> str:
        if self.kind == ErrorKind.RATE_LIMITED:
            return "Too many requests"
        if self.status_code is not None and self.detail:
            return f"HTTP {self.status_code}: {self.detail}"
        if self.status_code is not None:
            return f"HTTP {self.status_code}"
        return self.detail or self.kind.value


Outcome = Union[Success, Failure]


@dataclass(frozen=True)
class RunReport:
    """Result of a dispatch run."""

    run_id: str
    total_requests: int
    dispatched_count: int
    results: Tuple[Union[int, float], ...]
    failures: Dict[str, int]
    cooldowns: int
    started_at: datetime
    finished_at: datetime
    cancelled: bool = False
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return sum(self.failures.values())

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Serializable roll-up used by the run summary writer."""
        return {
            "run_id": self.run_id,
            "config": dict(self.config),
            "total_requests": self.total_requests,
            "dispatched_count": self.dispatched_count,
            "successful_calls": self.succeeded,
            "failed_calls": self.failed,
            "failures": dict(self.failures),
            "cooldowns": self.cooldowns,
            "cancelled": self.cancelled,
            "start_time": self.started_at.isoformat(),
            "end_time": self.finished_at.isoformat(),
            "duration_seconds": self.duration_seconds,
        }
