"""
Main Dispatch Pipeline

This module wires configuration, logging, the HTTP transport, and the
dispatcher together, and provides the command-line entry point that starts
a run and renders the collected results.
"""

import argparse
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union
from uuid import uuid4

from dotenv import load_dotenv
from tqdm import tqdm

from request_dispatcher.core.call_unit import CallUnit
from request_dispatcher.core.transport import HttpTransport
from request_dispatcher.core.utils.logging import create_enhanced_logger
from request_dispatcher.core.utils.run_summary import RunSummaryWriter
from request_dispatcher.io.collector import ResultCollector
from request_dispatcher.io.schema import RunReport
from request_dispatcher.pipeline.config import DispatchError, create_config_loader
from request_dispatcher.pipeline.dispatcher import DispatchInProgressError, Dispatcher

logger = logging.getLogger(__name__)

INPUT_MIN = 1
INPUT_MAX = 100


def load_environment(env_file: Optional[str] = None) -> Optional[Path]:
    """
    Load environment variables from a .env file.

    Args:
        env_file: Explicit .env path; when omitted the working directory and
            project root are tried in order

    Returns:
        Optional[Path]: The file that was loaded, if any
    """
    if env_file:
        candidates = [Path(env_file)]
    else:
        candidates = [
            Path.cwd() / ".env",
            Path(__file__).parent.parent.parent.parent / ".env",  # Project root
        ]

    for env_path in candidates:
        if env_path.exists():
            load_dotenv(env_path)
            logger.info(f"Loaded environment variables from: {env_path}")
            return env_path

    logger.info("No .env file found, using system environment variables")
    return None


class RequestDispatchProcessor:
    """Runs dispatch runs against the configured service and accumulates their results."""

    def __init__(
        self,
        config_file_path: str = "config/config.yaml",
        api_host: Optional[str] = None,
        log_level: Optional[str] = None,
    ):
        """
        Initialize the processor.

        Args:
            config_file_path: Path to the YAML configuration file
            api_host: Overrides the configured API host
            log_level: Overrides the configured logging level
        """
        self.config_file_path = config_file_path
        self.api_host = api_host
        self.log_level = log_level

        self.collector = ResultCollector()
        self.dispatcher: Optional[Dispatcher] = None
        self.last_report: Optional[RunReport] = None
        self._running = False

        self._initialize_components()

    def _initialize_components(self) -> None:
        """Initialize configuration and logging."""
        self.config_loader = create_config_loader(self.config_file_path)

        # Command-line overrides are applied in memory only
        if self.api_host:
            self.config_loader.config_data.setdefault("transport", {})["api_host"] = self.api_host
        if self.log_level:
            self.config_loader.config_data.setdefault("logging", {})["level"] = self.log_level

        self.enhanced_logger = create_enhanced_logger(self.config_loader.get_logging_config())
        self.enhanced_logger.logger.info("Enhanced logging system initialized")

    @property
    def is_running(self) -> bool:
        return self._running

    def validate_setup(self) -> Dict[str, Any]:
        """Validate configuration and return the report."""
        return self.config_loader.validate_configuration()

    def create_transport(self, pool_size: int) -> HttpTransport:
        """Build the HTTP transport from the transport configuration."""
        transport_cfg = self.config_loader.get_transport_config()
        return HttpTransport(
            api_host=transport_cfg.get("api_host"),
            path=transport_cfg.get("path", "api"),
            timeout_seconds=float(transport_cfg.get("timeout_seconds", 10.0)),
            headers=transport_cfg.get("headers"),
            pool_size=pool_size,
        )

    def _create_summary_writer(self, run_id: str) -> Optional[RunSummaryWriter]:
        summary_cfg = self.config_loader.get_run_summary_config()
        if not summary_cfg.get("enabled"):
            return None
        return RunSummaryWriter(run_id=run_id, base_dir=summary_cfg.get("base_dir", "var/logs/runs"))

    async def start_async(
        self,
        overrides: Optional[Dict[str, Any]] = None,
        on_result: Optional[Callable[[Union[int, float]], None]] = None,
    ) -> RunReport:
        """
        Run one dispatch.

        Args:
            overrides: Dispatch values taking precedence over the configuration file
            on_result: Sink notified with each successful value as it arrives

        Returns:
            RunReport: Summary of the run

        Raises:
            ConfigError: If the dispatch configuration is invalid
            DispatchInProgressError: If a run is already active
        """
        if self._running:
            raise DispatchInProgressError("A dispatch run is already in progress")

        config = self.config_loader.get_dispatch_config(overrides)
        self._running = True
        unsubscribe = self.collector.subscribe(on_result) if on_result else None
        transport = None
        try:
            transport = self.create_transport(config.concurrency_limit)
            run_id = str(uuid4())
            summary_writer = self._create_summary_writer(run_id)

            with ThreadPoolExecutor(
                max_workers=config.concurrency_limit, thread_name_prefix="dispatch"
            ) as executor:
                call_unit = CallUnit(transport, executor=executor)
                self.dispatcher = Dispatcher(
                    call_unit, collector=self.collector, enhanced_logger=self.enhanced_logger
                )
                self.last_report = await self.dispatcher.run(
                    config, run_id=run_id, summary_writer=summary_writer
                )

            if summary_writer:
                logger.info(f"Run summary written to {summary_writer.get_run_directory()}")
            return self.last_report
        finally:
            self._running = False
            if unsubscribe:
                unsubscribe()
            if transport:
                transport.close()

    def start(
        self,
        overrides: Optional[Dict[str, Any]] = None,
        on_result: Optional[Callable[[Union[int, float]], None]] = None,
    ) -> RunReport:
        """Blocking wrapper around :meth:`start_async`."""
        return asyncio.run(self.start_async(overrides=overrides, on_result=on_result))

    def cancel(self) -> None:
        if self.dispatcher:
            self.dispatcher.cancel()

    def get_results(self) -> Tuple[Union[int, float], ...]:
        return self.collector.snapshot()

    def get_processing_statistics(self) -> Dict[str, Any]:
        """Metrics of the latest run plus collector totals."""
        return {
            **self.enhanced_logger.get_final_report(),
            "collected_results": len(self.collector),
        }

    def close(self) -> None:
        self.enhanced_logger.close()


def bounded_int(value: str) -> int:
    """argparse type accepting an integer in the supported input range."""
    try:
        number = int(value)
    except ValueError:
        number = None
    if number is None or not INPUT_MIN <= number <= INPUT_MAX:
        raise argparse.ArgumentTypeError(
            f"Please enter a valid number between {INPUT_MIN} and {INPUT_MAX}"
        )
    return number


def main(argv=None):
    """Main entry point for the dispatcher."""
    parser = argparse.ArgumentParser(description="Bounded-concurrency request dispatcher")
    parser.add_argument("--config", default="config/config.yaml", help="Configuration file path")
    parser.add_argument("--env-file", help="Path to a .env file (defaults to ./.env)")
    parser.add_argument("--api-host", help="API host (overrides config and API_HOST)")
    parser.add_argument(
        "--concurrency", type=bounded_int, help="Maximum requests in flight (1-100)"
    )
    parser.add_argument(
        "--batch-size", type=bounded_int, help="Requests dispatched between cooldowns (1-100)"
    )
    parser.add_argument("--total-requests", type=int, help="Number of requests to send")
    parser.add_argument("--cooldown-ms", type=int, help="Pause after each batch in milliseconds")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, WARNING, ...)")
    parser.add_argument("--validate", action="store_true", help="Only validate setup")
    parser.add_argument("--show-results", action="store_true", help="Print every collected value")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar")

    args = parser.parse_args(argv)

    processor = None
    try:
        load_environment(args.env_file)
        processor = RequestDispatchProcessor(
            args.config, api_host=args.api_host, log_level=args.log_level
        )

        if args.validate:
            validation = processor.validate_setup()
            print("Setup Validation:")
            print(f"Valid: {validation['valid']}")
            if validation["issues"]:
                print("Issues:")
                for issue in validation["issues"]:
                    print(f"  - {issue}")
            if validation["warnings"]:
                print("Warnings:")
                for warning in validation["warnings"]:
                    print(f"  - {warning}")
            return 0 if validation["valid"] else 1

        overrides = {
            "concurrency_limit": args.concurrency,
            "batch_size": args.batch_size,
            "total_requests": args.total_requests,
            "cooldown_ms": args.cooldown_ms,
        }
        # Validate before opening the progress bar
        dispatch_config = processor.config_loader.get_dispatch_config(overrides)

        progress = None
        if not args.no_progress:
            progress = tqdm(total=dispatch_config.total_requests, desc="Responses", unit="resp")
        try:
            report = processor.start(
                overrides=dispatch_config.model_dump(),
                on_result=(lambda _value: progress.update(1)) if progress else None,
            )
        finally:
            if progress:
                progress.close()

        print("Dispatch completed:" if not report.cancelled else "Dispatch cancelled:")
        print(f"Dispatched: {report.dispatched_count}/{report.total_requests}")
        print(f"Successful: {report.succeeded}")
        print(f"Failed: {report.failed}")
        for kind, count in report.failures.items():
            if count:
                print(f"  - {kind}: {count}")
        print(f"Cooldowns: {report.cooldowns}")
        print(f"Duration: {report.duration_seconds:.2f} seconds")

        if args.show_results:
            print("Responses:")
            for value in report.results:
                print(f"  {value}")

    except DispatchError as e:
        logger.error(f"Dispatch rejected: {str(e)}")
        print(f"Error: {str(e)}")
        return 1
    except Exception as e:
        logger.error(f"Error in main: {str(e)}")
        print(f"Error: {str(e)}")
        return 1
    finally:
        if processor:
            processor.close()

    return 0


if __name__ == "__main__":
    exit(main())
