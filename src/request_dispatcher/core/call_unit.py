"""
Call Unit Module

Performs one indexed outbound call and classifies its result. A call unit
never raises to the dispatcher: every failure becomes a ``Failure`` outcome
that is logged and handed to the optional diagnostics hook.
"""

import asyncio
import logging
from concurrent.futures import Executor
from typing import Callable, Optional

import requests

from request_dispatcher.io.schema import ErrorKind, Failure, Outcome, ResultEnvelope, Success

logger = logging.getLogger(__name__)

MAX_DETAIL_CHARS = 500


class CallUnit:
    """Runs the blocking transport on an executor and turns its result into an Outcome."""

    def __init__(
        self,
        transport,
        executor: Optional[Executor] = None,
        on_failure: Optional[Callable[[Failure], None]] = None,
    ):
        """
        Initialize the call unit.

        Args:
            transport: Object exposing ``post_index(index)`` returning the decoded body
            executor: Executor for the blocking call (``None`` uses the loop default)
            on_failure: Diagnostics hook receiving every classified failure
        """
        self.transport = transport
        self.executor = executor
        self.on_failure = on_failure

    async def send(self, index: int) -> Outcome:
        loop = asyncio.get_running_loop()
        try:
            body = await loop.run_in_executor(self.executor, self.transport.post_index, index)
            envelope = ResultEnvelope.model_validate(body)
        except requests.HTTPError as e:
            return self._report(self._classify_http_error(index, e))
        except (requests.RequestException, ValueError) as e:
            # ValueError covers undecodable JSON and pydantic validation errors
            return self._report(
                Failure(index=index, kind=ErrorKind.TRANSPORT_ERROR, detail=_truncate(str(e)))
            )
        except Exception as e:
            return self._report(
                Failure(
                    index=index,
                    kind=ErrorKind.TRANSPORT_ERROR,
                    detail=_truncate(f"{type(e).__name__}: {e}"),
                )
            )

        logger.debug(f"Request {index} succeeded with result {envelope.data.result}")
        return Success(index=index, value=envelope.data.result)

    def _classify_http_error(self, index: int, error: requests.HTTPError) -> Failure:
        response = error.response
        if response is None:
            return Failure(index=index, kind=ErrorKind.TRANSPORT_ERROR, detail=_truncate(str(error)))

        if response.status_code == 429:
            return Failure(index=index, kind=ErrorKind.RATE_LIMITED, status_code=429)

        try:
            detail = str(response.json())
        except ValueError:
            detail = response.text or str(error)
        return Failure(
            index=index,
            kind=ErrorKind.REQUEST_ERROR,
            status_code=response.status_code,
            detail=_truncate(detail),
        )

    def _report(self, failure: Failure) -> Failure:
        if failure.kind == ErrorKind.RATE_LIMITED:
            logger.warning(f"Error sending request {failure.index}: Too many requests")
        else:
            logger.error(
                f"Error sending request {failure.index} [{failure.kind.value}]: {failure.describe()}"
            )

        if self.on_failure:
            try:
                self.on_failure(failure)
            except Exception as e:
                logger.error(f"Failure diagnostics hook raised for request {failure.index}: {e}")
        return failure


def _truncate(text: str) -> str:
    if len(text) <= MAX_DETAIL_CHARS:
        return text
    return text[:MAX_DETAIL_CHARS] + "..."
