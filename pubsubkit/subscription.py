"""A handle on one subscription to a topic."""

from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Iterator, Optional

from pubsubkit.message import Message

DEFAULT_BUFFER_SIZE = 32


class Subscription:
    """Buffered stream of messages for a topic.

    Messages are handed over with ``_deliver``; a full buffer refuses them.
    """

    def __init__(
        self,
        topic: str,
        on_cancel: Optional[Callable[["Subscription"], None]] = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        self._topic = topic
        self._on_cancel = on_cancel
        self._capacity = buffer_size
        self._buffer: deque[Message] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.error: Optional[BaseException] = None

    @property
    def topic(self) -> str:
        """The topic this subscription belongs to."""
        return self._topic

    def _deliver(self, msg: Message) -> bool:
        with self._cond:
            if self._closed or len(self._buffer) >= self._capacity:
                return False
            self._buffer.append(msg)
            self._cond.notify()
            return True

    def next(self, timeout: Optional[float] = None) -> Optional[Message]:
        """Return the next message, waiting up to ``timeout`` seconds.

        Once closed and drained, raises the subscription's error or returns None.
        """
        with self._cond:
            ready = self._cond.wait_for(
                lambda: bool(self._buffer) or self._closed, timeout
            )
            if not ready:
                raise TimeoutError("no message received before the timeout")
            if self._buffer:
                return self._buffer.popleft()
            if self.error is not None:
                raise self.error
            return None

    def cancel(self) -> None:
        """Ask the owner to drop this subscription, or close it if it has none."""
        if self._on_cancel is None:
            self.close()
        else:
            self._on_cancel(self)

    def close(self) -> None:
        """Stop accepting messages and wake up readers; safe to call more than once."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[Message]:
        while True:
            msg = self.next()
            if msg is None:
                return
            yield msg