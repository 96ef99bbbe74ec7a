"""
Delayed retries for categories whose download failed or fell back.

Delays cycle through a fixed table (30s, 60s, 120s, 240s, 30s, ...) and
scheduling stops once a category has used up its attempts. Counts live in
memory only and start over when the process restarts.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger("wallpaper.retry")

RETRY_DELAYS_SECONDS = [30, 60, 120, 240]
MAX_RETRY_COUNT = 8


@dataclass
class RetryState:
    """Retry bookkeeping for one category."""
    attempts: int = 0
    task: Optional[asyncio.Task] = None
    next_delay: Optional[float] = None
    running: Optional[asyncio.Task] = None  # Timer task currently inside on_retry

    @property
    def pending(self) -> bool:
        return self.task is not None and not self.task.done()


class RetryScheduler:
    """
    One pending retry timer per category at most.

    Usage:
        scheduler = RetryScheduler(on_retry=service.refresh)
        scheduler.schedule("1080p")   # fires service.refresh("1080p") in 30s
        scheduler.reset("1080p")      # after a genuine success
    """

    def __init__(
        self,
        on_retry: Callable[[str], Awaitable[None]],
        delays: Optional[List[float]] = None,
        max_retries: int = MAX_RETRY_COUNT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            on_retry: Coroutine function run with the category when a timer fires
            delays: Backoff table, indexed by attempt count modulo its length
            max_retries: Attempts after which scheduling stops
            sleep: Timer implementation (injectable for tests)
        """
        self.on_retry = on_retry
        self.delays = list(delays or RETRY_DELAYS_SECONDS)
        self.max_retries = max_retries
        self._sleep = sleep
        self._states: Dict[str, RetryState] = {}
        self._closed = False

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number attempt + 1."""
        return self.delays[attempt % len(self.delays)]

    def attempts(self, category: str) -> int:
        state = self._states.get(category)
        return state.attempts if state else 0

    def pending(self, category: str) -> bool:
        state = self._states.get(category)
        return state is not None and state.pending

    def schedule(self, category: str) -> bool:
        """
        Schedule a retry for category unless one is pending or attempts ran out.

        Returns:
            True if a new timer was started
        """
        if self._closed:
            logger.debug(f"Retry scheduler closed, not retrying {category}")
            return False

        state = self._states.setdefault(category, RetryState())
        if state.pending:
            return False

        if state.attempts >= self.max_retries:
            logger.warning(
                f"{category} wallpaper reached max retries ({self.max_retries}), giving up"
            )
            return False

        delay = self.delay_for(state.attempts)
        state.next_delay = delay
        logger.info(
            f"Retrying {category} wallpaper in {delay:g}s "
            f"(attempt {state.attempts + 1}/{self.max_retries})"
        )
        state.task = asyncio.create_task(
            self._fire_after(category, state, delay),
            name=f"wallpaper-retry-{category}",
        )
        return True

    async def _fire_after(self, category: str, state: RetryState, delay: float) -> None:
        await self._sleep(delay)
        state.task = None
        state.next_delay = None
        state.attempts += 1
        state.running = asyncio.current_task()
        logger.info(
            f"Running delayed {category} wallpaper retry "
            f"(attempt {state.attempts}/{self.max_retries})"
        )
        try:
            await self.on_retry(category)
        except Exception as e:
            logger.warning(f"Delayed retry for {category} failed: {e}")
        finally:
            if state.running is asyncio.current_task():
                state.running = None

    def reset(self, category: str) -> None:
        """Cancel any pending timer and forget the attempt count."""
        state = self._states.pop(category, None)
        if state is not None and state.pending:
            state.task.cancel()
            logger.debug(f"Cancelled pending {category} retry")

    async def shutdown(self) -> None:
        """
        Stop for good: cancel pending timers and retries still running,
        and refuse to schedule new ones.
        """
        self._closed = True
        current = asyncio.current_task()
        tasks = []
        for state in self._states.values():
            for task in (state.task, state.running):
                if task is not None and task is not current and not task.done():
                    task.cancel()
                    tasks.append(task)
        self._states.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug(f"Cancelled {len(tasks)} wallpaper retry tasks")

    def get_stats(self) -> Dict[str, Dict[str, object]]:
        return {
            category: {
                "attempts": state.attempts,
                "pending": state.pending,
                "next_delay_seconds": state.next_delay,
            }
            for category, state in self._states.items()
        }
