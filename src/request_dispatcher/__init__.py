"""Bounded-concurrency batch request dispatcher."""

from request_dispatcher.io.collector import ResultCollector
from request_dispatcher.io.schema import ErrorKind, Failure, Outcome, RunReport, Success
from request_dispatcher.pipeline.config import ConfigError, DispatchConfig, DispatchError
from request_dispatcher.pipeline.dispatcher import DispatchInProgressError, Dispatcher
from request_dispatcher.pipeline.rate_gate import RateGate
from request_dispatcher.core.call_unit import CallUnit
from request_dispatcher.core.transport import HttpTransport

__version__ = "1.0.0"

__all__ = [
    "CallUnit",
    "ConfigError",
    "DispatchConfig",
    "DispatchError",
    "DispatchInProgressError",
    "Dispatcher",
    "ErrorKind",
    "Failure",
    "HttpTransport",
    "Outcome",
    "RateGate",
    "ResultCollector",
    "RunReport",
    "Success",
]
