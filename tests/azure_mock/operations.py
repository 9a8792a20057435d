"""Scripted long-running operations and azure-core error helpers."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

from provisioner.lro import STATUS_IN_PROGRESS, STATUS_SUCCEEDED, OperationStatus


def http_error(status_code: int, message: str = "request failed") -> HttpResponseError:
    """An HttpResponseError carrying `status_code`, as the SDK raises it."""
    error = HttpResponseError(message=message)
    error.status_code = status_code
    return error


def not_found(message: str = "resource not found") -> ResourceNotFoundError:
    error = ResourceNotFoundError(message=message)
    error.status_code = 404
    return error


class ScriptedOperation:
    """Returns the scripted statuses in order, then repeats the last one.

    An entry may be an Exception, which is raised from that poll instead.
    """

    def __init__(
        self,
        statuses: Iterable[OperationStatus | Exception],
        description: str = "scripted operation",
    ) -> None:
        self._statuses = list(statuses)
        if not self._statuses:
            raise ValueError("at least one status is required")
        self.description = description
        self.polls = 0

    async def poll(self) -> OperationStatus:
        index = min(self.polls, len(self._statuses) - 1)
        self.polls += 1
        status = self._statuses[index]
        if isinstance(status, Exception):
            raise status
        return status


def running(count: int, then: str = STATUS_SUCCEEDED, body: Any = None) -> list[OperationStatus]:
    """`count` in-progress polls followed by a terminal status."""
    return [OperationStatus(STATUS_IN_PROGRESS, 202) for _ in range(count)] + [
        OperationStatus(then, 200, body=body)
    ]


def never_finishes() -> ScriptedOperation:
    return ScriptedOperation([OperationStatus(STATUS_IN_PROGRESS, 202)], "stuck operation")
