"""Long-running operation waiter.

Mutating ARM calls (CreateOrUpdate, Delete) return an operation that must
be polled until it reports a terminal status. The waiter classifies every
poll:

- 2xx + Succeeded: done, return the result.
- 2xx + Failed / Canceled: the remote operation failed.
- 2xx + anything else: still running, sleep and poll again.
- 4xx / 5xx on the poll itself: transport error, retried until the
  consecutive-failure budget is exhausted.

Exceeding the deadline raises OperationTimeoutError, which is distinct from
a remote failure: the operation may still complete after we stop waiting.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from azure.core.exceptions import AzureError, HttpResponseError
from azure.core.polling import LROPoller

from .errors import (
    OperationTimeoutError,
    RemoteOperationError,
    ResourceContext,
    TransportRetryExhaustedError,
)

logger = logging.getLogger(__name__)

STATUS_SUCCEEDED = "Succeeded"
STATUS_FAILED = "Failed"
STATUS_CANCELED = "Canceled"
STATUS_IN_PROGRESS = "InProgress"

TERMINAL_STATUSES = frozenset(s.lower() for s in (STATUS_SUCCEEDED, STATUS_FAILED, STATUS_CANCELED))


@dataclass(frozen=True)
class OperationStatus:
    """Result of a single poll."""

    status: str
    status_code: int | None = 200
    body: Any = None
    error: str | None = None

    @property
    def is_transport_error(self) -> bool:
        return self.status_code is None or self.status_code >= 400

    @property
    def is_terminal(self) -> bool:
        return self.status.lower() in TERMINAL_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status.lower() == STATUS_SUCCEEDED.lower()


@dataclass(frozen=True)
class OperationResult:
    """Final outcome of a successfully completed operation."""

    status: OperationStatus
    polls: int
    elapsed_seconds: float

    @property
    def body(self) -> Any:
        return self.status.body


class LongRunningOperation(Protocol):
    """An in-flight remote mutation. Consumed by exactly one wait call."""

    description: str

    async def poll(self) -> OperationStatus: ...


class CompletedOperation:
    """A mutation that completed synchronously (no polling required)."""

    def __init__(self, body: Any = None, description: str = "operation") -> None:
        self.body = body
        self.description = description

    async def poll(self) -> OperationStatus:
        return OperationStatus(status=STATUS_SUCCEEDED, status_code=200, body=self.body)


class PollerOperation:
    """Adapts an azure-core LROPoller to the LongRunningOperation protocol.

    The poller drives its own polling thread; each poll() only inspects it.
    Transport retries for SDK pollers happen inside the azure-core pipeline,
    so an error surfaced by the finished poller is reported as a remote
    failure.
    """

    def __init__(self, poller: LROPoller, description: str) -> None:
        self._poller = poller
        self.description = description

    async def poll(self) -> OperationStatus:
        if not self._poller.done():
            return OperationStatus(
                status=self._poller.status() or STATUS_IN_PROGRESS, status_code=202
            )

        loop = asyncio.get_running_loop()
        try:
            body = await loop.run_in_executor(None, self._poller.result)
        except HttpResponseError as e:
            status = self._poller.status()
            if not status or status.lower() not in TERMINAL_STATUSES:
                status = STATUS_FAILED
            return OperationStatus(status=status, status_code=200, error=str(e))

        return OperationStatus(status=STATUS_SUCCEEDED, status_code=200, body=body)


async def _poll_once(operation: LongRunningOperation) -> OperationStatus:
    """Poll, folding transport exceptions into a transport-error status."""
    try:
        return await operation.poll()
    except HttpResponseError as e:
        return OperationStatus(status="Unknown", status_code=e.status_code, error=str(e))
    except AzureError as e:
        # Connection-level failure, no HTTP status at all
        return OperationStatus(status="Unknown", status_code=None, error=str(e))


async def _poll_until_terminal(
    operation: LongRunningOperation,
    poll_interval: float,
    transport_retry_budget: int,
    context: ResourceContext | None,
    counters: dict[str, int],
) -> OperationStatus:
    consecutive_failures = 0

    while True:
        status = await _poll_once(operation)
        counters["polls"] += 1

        if status.is_transport_error:
            consecutive_failures += 1
            logger.warning(
                "Transport error while polling operation",
                extra={
                    "operation": operation.description,
                    "status_code": status.status_code,
                    "consecutive_failures": consecutive_failures,
                    "retry_budget": transport_retry_budget,
                    "error": status.error,
                },
            )
            if consecutive_failures > transport_retry_budget:
                raise TransportRetryExhaustedError(
                    f"polling {operation.description} failed {consecutive_failures} times "
                    f"in a row (last status code {status.status_code}): {status.error}",
                    attempts=consecutive_failures,
                    status_code=status.status_code,
                    context=context,
                )
            await asyncio.sleep(poll_interval)
            continue

        consecutive_failures = 0

        if status.is_terminal:
            if status.succeeded:
                return status
            raise RemoteOperationError(
                f"{operation.description} finished with status {status.status!r}"
                + (f": {status.error}" if status.error else ""),
                status=status.status,
                status_code=status.status_code,
                context=context,
            )

        logger.debug(
            "Operation still running",
            extra={"operation": operation.description, "status": status.status},
        )
        await asyncio.sleep(poll_interval)


async def wait_for_operation(
    operation: LongRunningOperation,
    poll_interval: float,
    timeout: float,
    transport_retry_budget: int = 3,
    context: ResourceContext | None = None,
) -> OperationResult:
    """Poll an operation until it reaches a terminal status.

    Args:
        operation: The in-flight operation.
        poll_interval: Seconds to sleep between polls.
        timeout: Overall deadline in seconds.
        transport_retry_budget: Consecutive 4xx/5xx polls tolerated.
        context: Resource the operation belongs to, attached to errors.

    Returns:
        OperationResult with the final status and poll count.

    Raises:
        RemoteOperationError: Terminal Failed or Canceled status.
        TransportRetryExhaustedError: Too many consecutive transport errors.
        OperationTimeoutError: Deadline reached; outcome unknown.
    """
    start = time.monotonic()
    counters = {"polls": 0}

    try:
        status = await asyncio.wait_for(
            _poll_until_terminal(
                operation, poll_interval, transport_retry_budget, context, counters
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        logger.error(
            "Operation timed out",
            extra={
                "operation": operation.description,
                "timeout_seconds": timeout,
                "polls": counters["polls"],
            },
        )
        raise OperationTimeoutError(operation.description, timeout, context) from e

    elapsed = time.monotonic() - start
    logger.info(
        "Operation succeeded",
        extra={
            "operation": operation.description,
            "polls": counters["polls"],
            "duration_seconds": round(elapsed, 3),
        },
    )
    return OperationResult(status=status, polls=counters["polls"], elapsed_seconds=elapsed)
