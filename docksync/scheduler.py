"""Self-rescheduling background loops for consumers and companion sync."""

from __future__ import annotations

import threading
from typing import Callable, Optional

from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="scheduler")


class ConsumerLoop:
    """Runs `step()` on a daemon thread; each call returns the delay before the next one.

    `stop()` wakes the thread immediately and no further steps are scheduled.
    A step that raises is logged and retried after `error_delay`.
    """

    def __init__(
        self,
        name: str,
        step: Callable[[], float],
        *,
        initial_delay: float = 0.0,
        error_delay: float = 30.0,
    ) -> None:
        self.name = name
        self._step = step
        self.initial_delay = initial_delay
        self.error_delay = error_delay
        self.iterations = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"loop-{self.name}", daemon=True)
        self._thread.start()
        logger.info("Started loop", extra={"loop": self.name})

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Stopped loop", extra={"loop": self.name})

    def _run(self) -> None:
        delay = self.initial_delay
        while not self._stop.wait(max(0.0, delay)):
            try:
                delay = float(self._step())
            except Exception:
                logger.exception("Loop step failed", extra={"loop": self.name})
                delay = self.error_delay
            self.iterations += 1


class FixedIntervalLoop(ConsumerLoop):
    """ConsumerLoop that runs `action()` every `interval` seconds."""

    def __init__(self, name: str, interval: float, action: Callable[[], object], **kwargs) -> None:
        def step() -> float:
            action()
            return interval

        super().__init__(name, step, **kwargs)
        self.interval = interval
