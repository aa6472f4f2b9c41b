"""
Bounded channels connecting concurrently running pipeline stages.

A producer blocks once a channel is full, so no stage can run unboundedly
ahead of its slowest downstream consumer. A shared cancel event stops every
stage at its next send or receive.
"""

import logging
import queue
import threading
from typing import Callable, Iterable, Iterator, Optional

from .errors import BackupError, JobCancelled


logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
DEFAULT_CAPACITY = 8


class _End:
    """End-of-stream marker, optionally carrying an upstream error."""

    def __init__(self, error: Optional[BaseException] = None):
        self.error = error


class Channel:
    """Bounded FIFO of byte chunks between two threads."""

    def __init__(self, cancel_event: threading.Event, capacity: int = DEFAULT_CAPACITY, name: str = 'channel'):
        self._queue = queue.Queue(maxsize=capacity)
        self._cancel = cancel_event
        self.name = name

    def send(self, item) -> None:
        """Block until there is room for item or the job is cancelled."""
        while True:
            if self._cancel.is_set():
                raise JobCancelled(f"Job cancelled while sending on {self.name}")
            try:
                self._queue.put(item, timeout=POLL_INTERVAL)
                return
            except queue.Full:
                continue

    def close(self, error: Optional[BaseException] = None) -> None:
        """Signal end of stream; error is re-raised on the consumer side."""
        self.send(_End(error))

    def __iter__(self) -> Iterator[bytes]:
        while True:
            if self._cancel.is_set():
                raise JobCancelled(f"Job cancelled while receiving on {self.name}")
            try:
                item = self._queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            if isinstance(item, _End):
                if item.error is not None:
                    raise item.error
                return
            yield item


class StageThread(threading.Thread):
    """
    Runs one pipeline stage in its own thread, feeding an output channel.

    The stage is given as a factory so the generator is created inside the
    thread. If the stage stops early (cancellation, downstream failure) the
    generator is closed, which lets adapters kill their child processes.
    """

    def __init__(
        self,
        name: str,
        factory: Callable[[], Iterable[bytes]],
        output: Channel,
        stage: Optional[str] = None
    ):
        super().__init__(name=name, daemon=True)
        self._factory = factory
        self.output = output
        self.stage = stage
        self.error: Optional[BaseException] = None

    def run(self):
        stream = None
        try:
            stream = self._factory()
            for chunk in stream:
                self.output.send(chunk)
            self.output.close()
        except JobCancelled:
            logger.debug(f"Stage {self.name} stopped after cancellation")
        except Exception as e:
            if isinstance(e, BackupError):
                e.with_context(stage=self.stage)
            self.error = e
            try:
                self.output.close(e)
            except JobCancelled:
                pass
        finally:
            close = getattr(stream, 'close', None)
            if close is not None:
                close()
