import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Union

from jobconsole.core.errors import JobConsoleError, UpstreamHttpError

logger = logging.getLogger(__name__)

OUTCOME_DONE = "done"
OUTCOME_EXHAUSTED = "exhausted"
OUTCOME_ERROR = "error"
OUTCOME_STOPPED = "stopped"

Tick = Callable[[], Awaitable[bool]]
Interval = Union[float, Callable[[], float]]


class PollingLoop:
    """A cancelable polling task with one request in flight at a time.

    ``tick`` returns True once the loop has what it needs. The loop sleeps
    between ticks, so the next request is only issued after the previous
    one has been answered. Budget exhaustion and request failures end the
    loop and are reported through ``on_exhausted`` / ``on_error``.
    """

    def __init__(
        self,
        name: str,
        tick: Tick,
        interval: Interval,
        *,
        max_attempts: Optional[int] = None,
        max_duration_sec: Optional[float] = None,
        on_exhausted: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[JobConsoleError], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self._tick = tick
        self._interval = interval
        self.max_attempts = max_attempts
        self.max_duration_sec = max_duration_sec
        self._on_exhausted = on_exhausted
        self._on_error = on_error
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.attempts = 0
        self.outcome: Optional[str] = None
        self.error: Optional[JobConsoleError] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self.attempts = 0
        self.outcome = None
        self.error = None
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("POLL_START", extra={"loop": self.name})

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
            self.outcome = OUTCOME_STOPPED
            logger.info("POLL_STOP", extra={"loop": self.name, "attempts": self.attempts})

    async def wait(self) -> None:
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    def _next_interval(self) -> float:
        value = self._interval() if callable(self._interval) else self._interval
        return max(0.0, float(value))

    def _is_current(self) -> bool:
        return self._task is not None and self._task is asyncio.current_task()

    def _finish(self, outcome: str) -> None:
        self.outcome = outcome
        self._task = None
        logger.info(
            "POLL_END",
            extra={"loop": self.name, "outcome": outcome, "attempts": self.attempts},
        )

    async def _run(self) -> None:
        started = self._clock()
        while True:
            self.attempts += 1
            try:
                done = await self._tick()
            except JobConsoleError as exc:
                if not self._is_current():
                    return
                logger.warning(
                    "POLL_ERROR",
                    extra={"loop": self.name, "code": exc.code, "attempts": self.attempts},
                )
                self.error = exc
                self._finish(OUTCOME_ERROR)
                if self._on_error is not None:
                    self._on_error(exc)
                return
            except Exception as exc:
                if not self._is_current():
                    return
                logger.exception("POLL_FAILED", extra={"loop": self.name, "attempts": self.attempts})
                error = UpstreamHttpError(
                    "UNEXPECTED_RESPONSE",
                    f"Could not process the {self.name} response: {exc}",
                )
                self.error = error
                self._finish(OUTCOME_ERROR)
                if self._on_error is not None:
                    self._on_error(error)
                return

            # stopped while the request was in flight
            if not self._is_current():
                return
            if done:
                self._finish(OUTCOME_DONE)
                return
            out_of_attempts = self.max_attempts is not None and self.attempts >= self.max_attempts
            out_of_time = (
                self.max_duration_sec is not None
                and self._clock() - started >= self.max_duration_sec
            )
            if out_of_attempts or out_of_time:
                self._finish(OUTCOME_EXHAUSTED)
                if self._on_exhausted is not None:
                    self._on_exhausted()
                return
            await self._sleep(self._next_interval())
