"""
Request coalescing to prevent duplicate downloads.

When multiple concurrent callers ask for the same work, only one
operation runs and all callers share its result.
"""
import asyncio
import time
import logging
from typing import Any, Awaitable, Callable, Dict
from dataclasses import dataclass, field

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress operation."""
    future: asyncio.Future
    started_at: float = field(default_factory=time.time)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same key share one operation.

    Pattern:
    - First request for a key starts the factory
    - Subsequent requests for the same key await the same future
    - When the operation settles, every caller receives the same result
      (or the same exception) and the key is forgotten immediately

    Runs on a single event loop, so no locking is needed: the check and
    the registration of a new future happen without a suspension point.

    Usage:
        coalescer = RequestCoalescer()
        result = await coalescer.get_or_start(
            "download:1080p",
            lambda: downloader.download("1080p"),
        )
    """

    def __init__(self):
        self._in_flight: Dict[str, InFlightRequest] = {}

    async def get_or_start(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Either join an existing in-flight operation or start a new one.

        Args:
            key: Unique key for this operation
            factory: Coroutine function to call if nothing is in flight

        Returns:
            The operation result (shared among all concurrent callers)

        Raises:
            Exception: Any error from factory is propagated to every caller
        """
        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            in_flight.waiter_count += 1
            logger.debug(
                f"Coalescing request for {key} "
                f"(waiters: {in_flight.waiter_count})"
            )
            # shield: a cancelled waiter must not cancel the shared operation
            return await asyncio.shield(in_flight.future)

        loop = asyncio.get_running_loop()
        in_flight = InFlightRequest(future=loop.create_future())
        self._in_flight[key] = in_flight
        logger.debug(f"Starting operation for {key}")

        try:
            result = await factory()
        except asyncio.CancelledError:
            in_flight.future.cancel()
            raise
        except Exception as e:
            logger.warning(f"Operation failed for {key}: {e}")
            if not in_flight.future.done():
                in_flight.future.set_exception(e)
                # Consume it so lone initiators don't trigger
                # "exception was never retrieved" warnings.
                in_flight.future.exception()
            raise
        else:
            if not in_flight.future.done():
                in_flight.future.set_result(result)
            return result
        finally:
            if self._in_flight.get(key) is in_flight:
                del self._in_flight[key]

    def is_in_flight(self, key: str) -> bool:
        """Whether an operation for key is currently running."""
        return key in self._in_flight

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight operations."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
        }
