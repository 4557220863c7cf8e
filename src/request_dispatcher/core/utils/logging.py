"""
Enhanced logging system for the request dispatcher.
Provides colored console output, rotating log files, and run metrics tracking.
"""

import sys
import json
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import colorlog

from request_dispatcher.io.schema import ErrorKind, Failure

APP_LOGGER_NAME = "request_dispatcher"
METRICS_LOGGER_NAME = "request_dispatcher.metrics"

CONSOLE_FORMAT = "%(log_color)s%(asctime)s - %(name)s - %(levelname)s%(reset)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"


class DispatchMetricsLogger:
    """Counts dispatch activity for the current run"""

    def __init__(self):
        self.start_time: Optional[datetime] = None
        self.metrics: Dict[str, int] = {}
        self.reset()

    def reset(self):
        self.start_time = None
        self.metrics = {
            "calls_dispatched": 0,
            "calls_succeeded": 0,
            "calls_failed": 0,
            "cooldowns": 0,
            **{f"failures_{kind.value}": 0 for kind in ErrorKind},
        }

    def start_processing(self):
        """Mark the start of a run"""
        self.reset()
        self.start_time = datetime.now()

    def log_dispatch(self):
        self.metrics["calls_dispatched"] += 1

    def log_success(self):
        self.metrics["calls_succeeded"] += 1

    def log_failure(self, kind: ErrorKind):
        self.metrics["calls_failed"] += 1
        self.metrics[f"failures_{kind.value}"] += 1

    def log_cooldown(self):
        self.metrics["cooldowns"] += 1

    def get_current_metrics(self) -> Dict[str, Any]:
        """Get current run metrics"""
        total_duration = 0.0
        if self.start_time:
            total_duration = (datetime.now() - self.start_time).total_seconds()

        settled = self.metrics["calls_succeeded"] + self.metrics["calls_failed"]
        success_rate = 0.0
        if settled > 0:
            success_rate = (self.metrics["calls_succeeded"] / settled) * 100

        return {
            **self.metrics,
            "total_duration_seconds": total_duration,
            "success_rate_percent": success_rate,
            "current_time": datetime.now().isoformat(),
        }


class EnhancedLogger:
    """Application logging setup plus run-level tracking helpers"""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.log_to_file = bool(config.get("log_to_file", True))
        self.log_dir = Path(config.get("log_dir", "var/logs"))
        if self.log_to_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self.metrics = DispatchMetricsLogger()
        self._setup_loggers()

    def _setup_loggers(self):
        """Set up console and file handlers on the application logger"""
        level_name = str(self.config.get("level", "INFO")).upper()
        level = getattr(logging, level_name, None)
        if not isinstance(level, int):
            level = logging.INFO

        self.logger = logging.getLogger(APP_LOGGER_NAME)
        self.logger.setLevel(level)

        # Clear any existing handlers
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(colorlog.ColoredFormatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))
        self.logger.addHandler(console_handler)

        # Metrics snapshots go to their own file only
        self.metrics_logger = logging.getLogger(METRICS_LOGGER_NAME)
        self.metrics_logger.setLevel(logging.INFO)
        self.metrics_logger.propagate = False
        for handler in list(self.metrics_logger.handlers):
            self.metrics_logger.removeHandler(handler)
            handler.close()

        if not self.log_to_file:
            self.metrics_logger.addHandler(logging.NullHandler())
            return

        file_formatter = logging.Formatter(FILE_FORMAT)

        main_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / "request_dispatcher.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        )
        main_handler.setLevel(logging.DEBUG)
        main_handler.setFormatter(file_formatter)
        self.logger.addHandler(main_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / "errors.log",
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3,
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(file_formatter)
        self.logger.addHandler(error_handler)

        metrics_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / "metrics.log",
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3,
        )
        self.metrics_logger.addHandler(metrics_handler)

    def close(self):
        """Detach and close every handler this logger installed"""
        for target in (self.logger, self.metrics_logger):
            for handler in list(target.handlers):
                target.removeHandler(handler)
                handler.close()

    def log_metrics_snapshot(self, metrics: Dict[str, Any]):
        """Log current metrics snapshot"""
        metrics_json = json.dumps(metrics, indent=2)
        self.metrics_logger.info(f"METRICS_SNAPSHOT: {metrics_json}")

    def log_run_banner(self, run_id: str, concurrency: int, batch_size: int, total_requests: int,
                       cooldown_ms: int):
        """Print a run banner with core parameters."""
        self.metrics.start_processing()
        self.logger.info(
            f"🚀 RUN {run_id} | concurrency={concurrency} batch_size={batch_size} "
            f"total_requests={total_requests} cooldown_ms={cooldown_ms}"
        )

    def log_call_dispatched(self, index: int, in_flight: int):
        self.metrics.log_dispatch()
        self.logger.debug(f"📡 Dispatched request {index} (in_flight={in_flight})")

    def log_call_succeeded(self, index: int, value: Any):
        self.metrics.log_success()
        self.logger.debug(f"✅ Request {index} -> {value}")

    def log_call_failure(self, failure: Failure):
        """Count a classified failure; the call unit has already logged the details."""
        self.metrics.log_failure(failure.kind)

    def log_cooldown(self, dispatched_count: int, cooldown_ms: int, in_flight: int):
        self.metrics.log_cooldown()
        self.logger.info(
            f"⏸️  COOLDOWN after {dispatched_count} dispatched ({cooldown_ms}ms, in_flight={in_flight})"
        )

    def log_run_end(self, run_id: str, summary: Dict[str, Any]):
        """Log the end of a run and persist a metrics snapshot"""
        status = "⚠️  CANCELLED" if summary.get("cancelled") else "🏁 COMPLETED"
        self.logger.info(f"{status} RUN {run_id}")
        self.logger.info(f"   📊 Dispatched: {summary.get('dispatched_count', 0)}")
        self.logger.info(f"   ✅ Successful: {summary.get('successful_calls', 0)}")
        self.logger.info(f"   ❌ Failed: {summary.get('failed_calls', 0)}")
        for kind, count in (summary.get("failures") or {}).items():
            if count:
                self.logger.info(f"      - {kind}: {count}")
        self.logger.info(f"   ⏸️  Cooldowns: {summary.get('cooldowns', 0)}")
        self.logger.info(f"   ⏱️  Duration: {summary.get('duration_seconds', 0.0):.2f}s")
        self.log_metrics_snapshot(self.metrics.get_current_metrics())

    def get_final_report(self) -> Dict[str, Any]:
        """Generate final run report"""
        report: Dict[str, Any] = {"summary_metrics": self.metrics.get_current_metrics()}
        if self.log_to_file:
            report["log_files"] = {
                "main_log": str(self.log_dir / "request_dispatcher.log"),
                "error_log": str(self.log_dir / "errors.log"),
                "metrics_log": str(self.log_dir / "metrics.log"),
            }
        return report


def create_enhanced_logger(config: Dict[str, Any]) -> EnhancedLogger:
    """Factory function to create enhanced logger"""
    return EnhancedLogger(config)
