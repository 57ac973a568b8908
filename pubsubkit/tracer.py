"""Event tracers that buffer trace events and write them out."""

from __future__ import annotations

import enum
import json
import logging
import threading
from typing import IO, Union

from pubsubkit.trace import EventTracer, TraceEvent

log = logging.getLogger(__name__)

TRACE_BUFFER_SIZE = 1 << 16


class RejectReason(str, enum.Enum):
    """Reasons for rejecting a message."""

    BLACKLISTED_PEER = "blacklisted peer"
    BLACKLISTED_SOURCE = "blacklisted source"
    MISSING_SIGNATURE = "missing signature"
    UNEXPECTED_SIGNATURE = "unexpected signature"
    UNEXPECTED_AUTH_INFO = "unexpected auth info"
    INVALID_SIGNATURE = "invalid signature"
    VALIDATION_QUEUE_FULL = "validation queue full"
    VALIDATION_THROTTLED = "validation throttled"
    VALIDATION_FAILED = "validation failed"
    VALIDATION_IGNORED = "validation ignored"
    SELF_ORIGIN = "self originated message"

    def __str__(self) -> str:
        return self.value


class BasicTracer(EventTracer):
    """Buffers trace events until they are taken; a lossy tracer drops on overflow."""

    def __init__(self, lossy: bool = False) -> None:
        self._cond = threading.Condition()
        self._buf: list[TraceEvent] = []
        self._lossy = lossy
        self._closed = False

    def trace(self, evt: TraceEvent) -> None:
        with self._cond:
            if self._closed:
                return
            if self._lossy and len(self._buf) > TRACE_BUFFER_SIZE:
                log.debug("trace buffer overflow; dropping trace event")
            else:
                self._buf.append(evt)
            self._cond.notify_all()

    def close(self) -> None:
        """Stop accepting events; safe to call more than once."""
        with self._cond:
            if not self._closed:
                self._closed = True
                self._cond.notify_all()

    @property
    def closed(self) -> bool:
        """True once the tracer has been closed."""
        with self._cond:
            return self._closed

    @property
    def pending(self) -> int:
        """Number of buffered events not yet taken."""
        with self._cond:
            return len(self._buf)

    def _take(self) -> tuple[list[TraceEvent], bool]:
        """Wait for events or closure; return the buffered events and the closed flag."""
        with self._cond:
            self._cond.wait_for(lambda: bool(self._buf) or self._closed)
            events, self._buf = self._buf, []
            return events, self._closed


class JSONTracer(BasicTracer):
    """Writes trace events to a text stream as newline-delimited JSON.

    The stream is closed when the tracer is closed.
    """

    def __init__(self, stream: IO[str]) -> None:
        super().__init__()
        self._stream = stream
        self._writer = threading.Thread(
            target=self._write_loop, name="json-tracer", daemon=True
        )
        self._writer.start()

    def _write_loop(self) -> None:
        while True:
            events, closed = self._take()
            for evt in events:
                try:
                    self._stream.write(json.dumps(evt.to_dict()) + "\n")
                except (OSError, TypeError, ValueError) as exc:
                    log.warning("error writing event trace: %s", exc)
            try:
                self._stream.flush()
            except OSError as exc:
                log.warning("error flushing event trace: %s", exc)
            if closed:
                self._stream.close()
                return

    def close(self) -> None:
        """Write out all buffered events, then close the stream."""
        super().close()
        if self._writer is not threading.current_thread():
            self._writer.join()

    def __enter__(self) -> "JSONTracer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def open_json_tracer(path: Union[str, "os.PathLike[str]"]) -> JSONTracer:
    """Create (or truncate) ``path`` and trace to it as newline-delimited JSON."""
    return JSONTracer(open(path, "w", encoding="utf-8"))


import os  # noqa: E402  (used only in the annotation above)