from dataclasses import dataclass
from typing import Any, Awaitable, Generic, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Completed(Generic[T]):
    value: "T"


@dataclass(frozen=True, slots=True)
class Failed:
    error: "Exception"


BestEffortResult = Completed[T] | Failed


async def best_effort(
    awaitable: "Awaitable[T]",
    event: "str",
    **context: "Any",
) -> "BestEffortResult[T]":
    """
    awaits a non-critical side effect. Failures are logged under
    the given event name with the context and returned as Failed,
    never raised. Cancellation still propagates.
    """
    try:
        return Completed(await awaitable)
    except Exception as exc:
        logger.exception(event, error=str(exc), **context)
        return Failed(exc)
