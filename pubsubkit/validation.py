"""The message validation pipeline: signature checks and per-topic validators."""

from __future__ import annotations

import enum
import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional, Union

from pubsubkit.message import Message, SignatureError, verify_message_signature
from pubsubkit.timecache import TimeCache, new_time_cache
from pubsubkit.trace import PubsubTracer
from pubsubkit.tracer import RejectReason

log = logging.getLogger(__name__)

DEFAULT_VALIDATE_QUEUE_SIZE = 32
DEFAULT_VALIDATE_CONCURRENCY = 1024
DEFAULT_VALIDATE_THROTTLE = 8192
DEFAULT_SEEN_TTL = timedelta(minutes=2)

Timeout = Union[timedelta, float, int, None]
ValidatorFn = Callable[[bytes, Message], Any]


class ValidationResult(enum.IntEnum):
    """Decision of a validator."""

    ACCEPT = 0
    REJECT = 1
    IGNORE = 2
    THROTTLED = -1


class ValidationError(Exception):
    """Raised when a message fails validation; ``reason`` says why."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class DuplicateMessageError(Exception):
    """Raised when a message has been seen before."""

    def __init__(self, message: str = "duplicate message") -> None:
        super().__init__(message)


def _seconds(value: Timeout) -> float:
    if value is None:
        return 0.0
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _coerce(raw: Any) -> ValidationResult:
    """Map a validator's return value onto accept, reject or ignore."""
    if isinstance(raw, bool):
        return ValidationResult.ACCEPT if raw else ValidationResult.REJECT
    if isinstance(raw, int) and raw in (0, 1, 2):
        return ValidationResult(raw)
    log.warning("unexpected result from validator: %r; ignoring message", raw)
    return ValidationResult.IGNORE


def _default_id(msg: Message) -> str:
    if msg.id:
        return msg.id
    return ((msg.from_peer or b"") + (msg.seqno or b"")).decode("latin-1")


@dataclass
class _Validator:
    topic: str
    fn: ValidatorFn
    timeout: float
    throttle: threading.Semaphore
    inline: bool

    def run(self, src: bytes, msg: Message) -> ValidationResult:
        start = time.monotonic()
        try:
            if self.timeout > 0:
                return self._run_with_timeout(src, msg)
            return self._call(src, msg)
        finally:
            log.debug("validation done; took %.6fs", time.monotonic() - start)

    def _call(self, src: bytes, msg: Message) -> ValidationResult:
        try:
            raw = self.fn(src, msg)
        except Exception:  # a failing validator must not take the pipeline down
            log.warning("validator for topic %s raised; ignoring message", self.topic, exc_info=True)
            return ValidationResult.IGNORE
        return _coerce(raw)

    def _run_with_timeout(self, src: bytes, msg: Message) -> ValidationResult:
        outcome: list[ValidationResult] = []
        worker = threading.Thread(
            target=lambda: outcome.append(self._call(src, msg)), daemon=True
        )
        worker.start()
        worker.join(self.timeout)
        if not outcome:
            log.debug("validation timed out for topic %s", self.topic)
            return ValidationResult.IGNORE
        return outcome[0]


class Validation:
    """Validates messages: signature check, deduplication, then user validators.

    Pushed messages are validated by background workers and handed to
    ``deliver`` once accepted. Validators are callables ``fn(src, msg)`` that
    return a bool or a ValidationResult.
    """

    def __init__(
        self,
        deliver: Optional[Callable[[Message], None]] = None,
        *,
        tracer: Optional[PubsubTracer] = None,
        id_fn: Optional[Callable[[Message], str]] = None,
        mark_seen: Optional[Callable[[str], bool]] = None,
        check_signing_policy: Optional[Callable[[Message], None]] = None,
        queue_size: int = DEFAULT_VALIDATE_QUEUE_SIZE,
        throttle: int = DEFAULT_VALIDATE_THROTTLE,
        workers: Optional[int] = None,
    ) -> None:
        if queue_size <= 0:
            raise ValueError("validate queue size must be > 0")
        if workers is None:
            workers = os.cpu_count() or 1
        if workers <= 0:
            raise ValueError("number of validation workers must be > 0")

        self._deliver = deliver or (lambda _msg: None)
        self._tracer = tracer or PubsubTracer(b"")
        self._id = id_fn or _default_id
        self._own_cache: Optional[TimeCache] = None
        if mark_seen is None:
            self._own_cache = new_time_cache(DEFAULT_SEEN_TTL)
            mark_seen = self._own_cache.add
        self._mark_seen = mark_seen
        self._check_signing_policy = check_signing_policy

        self._lock = threading.Lock()
        self._topic_vals: dict[str, _Validator] = {}
        self._default_vals: list[_Validator] = []

        self._queue: "queue.Queue[tuple[list[_Validator], bytes, Message]]" = queue.Queue(
            maxsize=queue_size
        )
        self._throttle = threading.Semaphore(throttle)
        self._stopped = threading.Event()
        self._workers = [
            threading.Thread(target=self._worker, name="validation-worker", daemon=True)
            for _ in range(workers)
        ]
        for worker in self._workers:
            worker.start()

    # -- validator registry

    @staticmethod
    def _make_validator(
        topic: str, validator: Any, timeout: Timeout, throttle: int, inline: bool
    ) -> _Validator:
        if not callable(validator):
            name = topic or "(default)"
            raise TypeError(
                f"unknown validator type for topic {name}; must be a callable "
                "returning a bool or a ValidationResult"
            )
        concurrency = throttle if throttle > 0 else DEFAULT_VALIDATE_CONCURRENCY
        return _Validator(
            topic=topic,
            fn=validator,
            timeout=max(_seconds(timeout), 0.0),
            throttle=threading.Semaphore(concurrency),
            inline=inline,
        )

    def add_validator(
        self,
        topic: str,
        validator: ValidatorFn,
        timeout: Timeout = None,
        throttle: int = 0,
        inline: bool = False,
    ) -> None:
        """Register the validator of ``topic``; a topic has at most one."""
        val = self._make_validator(topic, validator, timeout, throttle, inline)
        with self._lock:
            if topic in self._topic_vals:
                raise ValueError(f"duplicate validator for topic {topic}")
            self._topic_vals[topic] = val

    def add_default_validator(
        self,
        validator: ValidatorFn,
        timeout: Timeout = None,
        throttle: int = 0,
        inline: bool = False,
    ) -> None:
        """Add a validator that applies to every topic."""
        val = self._make_validator("", validator, timeout, throttle, inline)
        with self._lock:
            self._default_vals.append(val)

    def remove_validator(self, topic: str) -> None:
        """Remove the validator of ``topic``."""
        with self._lock:
            if topic not in self._topic_vals:
                raise ValueError(f"no validator for topic {topic}")
            del self._topic_vals[topic]

    def _validators_for(self, msg: Message) -> list[_Validator]:
        with self._lock:
            vals = list(self._default_vals)
            val = self._topic_vals.get(msg.topic or "")
            if val is not None:
                vals.append(val)
            return vals

    # -- entry points

    def validate_local(self, msg: Message) -> None:
        """Synchronously validate a locally published message; raise on failure."""
        self._tracer.publish_message(msg)
        if self._check_signing_policy is not None:
            self._check_signing_policy(msg)
        vals = self._validators_for(msg)
        self._validate(vals, msg.received_from, msg, True, lambda _msg: None)

    def push(self, src: bytes, msg: Message) -> bool:
        """Queue ``msg`` for validation; True if it may be forwarded right away."""
        vals = self._validators_for(msg)
        if not vals and msg.signature is None:
            return True
        try:
            self._queue.put_nowait((vals, src, msg))
        except queue.Full:
            log.debug("message validation throttled: queue full; dropping message from %r", src)
            self._tracer.reject_message(msg, RejectReason.VALIDATION_QUEUE_FULL.value)
        return False

    def close(self) -> None:
        """Stop the workers and release the seen-message cache."""
        self._stopped.set()
        for worker in self._workers:
            worker.join()
        if self._own_cache is not None:
            self._own_cache.done()

    def __enter__(self) -> "Validation":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- pipeline

    def _worker(self) -> None:
        while not self._stopped.is_set():
            try:
                vals, src, msg = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._validate(vals, src, msg, False, self._deliver)
            except (ValidationError, DuplicateMessageError):
                pass
            except Exception:
                log.warning("error in validation worker", exc_info=True)

    def _reject(self, msg: Message, reason: RejectReason) -> None:
        self._tracer.reject_message(msg, reason.value)

    def _validate(
        self,
        vals: list[_Validator],
        src: bytes,
        msg: Message,
        synchronous: bool,
        on_valid: Callable[[Message], None],
    ) -> None:
        if msg.signature is not None:
            try:
                verify_message_signature(msg)
            except SignatureError as exc:
                log.debug("signature verification error: %s; dropping message from %r", exc, src)
                self._reject(msg, RejectReason.INVALID_SIGNATURE)
                raise ValidationError(RejectReason.INVALID_SIGNATURE.value) from exc

        if not self._mark_seen(self._id(msg)):
            self._tracer.duplicate_message(msg)
            raise DuplicateMessageError()
        self._tracer.validate_message(msg)

        inline = [val for val in vals if val.inline or synchronous]
        deferred = [val for val in vals if not (val.inline or synchronous)]

        result = ValidationResult.ACCEPT
        for val in inline:
            outcome = val.run(src, msg)
            if outcome == ValidationResult.REJECT:
                result = ValidationResult.REJECT
                break
            if outcome == ValidationResult.IGNORE:
                result = ValidationResult.IGNORE

        if result == ValidationResult.REJECT:
            log.debug("message validation failed; dropping message from %r", src)
            self._reject(msg, RejectReason.VALIDATION_FAILED)
            raise ValidationError(RejectReason.VALIDATION_FAILED.value)

        if deferred:
            if self._throttle.acquire(blocking=False):
                threading.Thread(
                    target=self._validate_deferred,
                    args=(deferred, src, msg, result, on_valid),
                    daemon=True,
                ).start()
            else:
                log.debug("message validation throttled; dropping message from %r", src)
                self._reject(msg, RejectReason.VALIDATION_THROTTLED)
            return

        if result == ValidationResult.IGNORE:
            self._reject(msg, RejectReason.VALIDATION_IGNORED)
            raise ValidationError(RejectReason.VALIDATION_IGNORED.value)

        on_valid(msg)

    def _validate_deferred(
        self,
        vals: list[_Validator],
        src: bytes,
        msg: Message,
        prior: ValidationResult,
        on_valid: Callable[[Message], None],
    ) -> None:
        try:
            result = self._validate_topic(vals, src, msg)
            if result == ValidationResult.ACCEPT and prior != ValidationResult.ACCEPT:
                result = prior
            if result == ValidationResult.ACCEPT:
                try:
                    on_valid(msg)
                except Exception:
                    log.warning("error delivering validated message", exc_info=True)
            elif result == ValidationResult.REJECT:
                log.debug("message validation failed; dropping message from %r", src)
                self._reject(msg, RejectReason.VALIDATION_FAILED)
            elif result == ValidationResult.IGNORE:
                log.debug("message validation punted; ignoring message from %r", src)
                self._reject(msg, RejectReason.VALIDATION_IGNORED)
            else:
                log.debug("message validation throttled; ignoring message from %r", src)
                self._reject(msg, RejectReason.VALIDATION_THROTTLED)
        finally:
            self._throttle.release()

    def _validate_topic(
        self, vals: list[_Validator], src: bytes, msg: Message
    ) -> ValidationResult:
        if len(vals) == 1:
            return self._validate_single(vals[0], src, msg)

        results: "queue.Queue[ValidationResult]" = queue.Queue()

        def run(val: _Validator) -> None:
            try:
                results.put(val.run(src, msg))
            finally:
                val.throttle.release()

        for val in vals:
            if val.throttle.acquire(blocking=False):
                threading.Thread(target=run, args=(val,), daemon=True).start()
            else:
                log.debug("validation throttled for topic %s", val.topic)
                results.put(ValidationResult.THROTTLED)

        result = ValidationResult.ACCEPT
        for _ in vals:
            outcome = results.get()
            if outcome == ValidationResult.REJECT:
                return ValidationResult.REJECT
            if outcome == ValidationResult.IGNORE:
                if result != ValidationResult.THROTTLED:
                    result = ValidationResult.IGNORE
            elif outcome == ValidationResult.THROTTLED:
                result = ValidationResult.THROTTLED
        return result

    @staticmethod
    def _validate_single(val: _Validator, src: bytes, msg: Message) -> ValidationResult:
        if not val.throttle.acquire(blocking=False):
            log.debug("validation throttled for topic %s", val.topic)
            return ValidationResult.THROTTLED
        try:
            return val.run(src, msg)
        finally:
            val.throttle.release()