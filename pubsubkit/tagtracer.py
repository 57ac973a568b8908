"""Connection-manager tagging of peers based on their pubsub behaviour."""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from typing import Callable, Iterable, Optional, Union

from pubsubkit.message import Message
from pubsubkit.trace import RawTracer
from pubsubkit.tracer import RejectReason

log = logging.getLogger(__name__)

Interval = Union[timedelta, float, int]

GOSSIPSUB_CONN_TAG_BUMP_MESSAGE_DELIVERY = 1
GOSSIPSUB_CONN_TAG_DECAY_INTERVAL = timedelta(minutes=10)
GOSSIPSUB_CONN_TAG_DECAY_AMOUNT = 1
GOSSIPSUB_CONN_TAG_MESSAGE_DELIVERY_CAP = 15

DIRECT_PEER_TAG = "pubsub:<direct>"

_CLEARS_NEAR_FIRST = frozenset(
    {
        RejectReason.VALIDATION_THROTTLED.value,
        RejectReason.VALIDATION_IGNORED.value,
        RejectReason.VALIDATION_FAILED.value,
    }
)


def _seconds(value: Interval) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _default_message_id(msg: Message) -> str:
    if msg.id:
        return msg.id
    return ((msg.from_peer or b"") + (msg.seqno or b"")).decode("latin-1")


def _topic_tag(topic: str) -> str:
    return f"pubsub:{topic}"


class DecayingTag:
    """A per-peer counter that is bumped up to a cap and decays at fixed intervals."""

    def __init__(
        self,
        name: str,
        interval: Interval,
        decay_amount: int,
        cap: int,
        clock: Callable[[], float],
        on_close: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.name = name
        self.interval = _seconds(interval)
        if self.interval <= 0:
            raise ValueError("decay interval must be positive")
        self.decay_amount = decay_amount
        self.cap = cap
        self._clock = clock
        self._on_close = on_close
        self._last = clock()
        self._values: dict[bytes, int] = {}
        self._lock = threading.Lock()
        self._closed = False

    def bump(self, peer: bytes, delta: int) -> None:
        """Add ``delta`` to the peer's value, bounded to [0, cap]."""
        with self._lock:
            if self._closed:
                raise RuntimeError(f"decaying tag {self.name} is closed")
            value = self._values.get(peer, 0) + delta
            self._values[peer] = min(self.cap, max(0, value))

    def value(self, peer: bytes) -> int:
        """Current value for ``peer``, 0 if untagged."""
        with self._lock:
            return self._values.get(peer, 0)

    def values(self) -> dict[bytes, int]:
        """A copy of all current values."""
        with self._lock:
            return dict(self._values)

    def decay(self, now: Optional[float] = None) -> None:
        """Apply the decay for every full interval elapsed; drop values at zero."""
        if now is None:
            now = self._clock()
        with self._lock:
            ticks = int((now - self._last) // self.interval)
            if ticks <= 0:
                return
            self._last += ticks * self.interval
            drop = self.decay_amount * ticks
            self._values = {
                peer: value - drop
                for peer, value in self._values.items()
                if value - drop > 0
            }

    def close(self) -> None:
        """Remove the tag from every peer and stop accepting bumps."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._values.clear()
        if self._on_close is not None:
            self._on_close(self.name)


class ConnManager:
    """In-memory connection manager: protections, plain tags and decaying tags."""

    def __init__(
        self, supports_decay: bool = True, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.supports_decay = supports_decay
        self._clock = clock
        self._lock = threading.Lock()
        self._protected: dict[bytes, set[str]] = {}
        self._tags: dict[bytes, dict[str, int]] = {}
        self._decaying: dict[str, DecayingTag] = {}

    def protect(self, peer: bytes, tag: str) -> None:
        """Protect ``peer`` under ``tag``."""
        with self._lock:
            self._protected.setdefault(peer, set()).add(tag)

    def unprotect(self, peer: bytes, tag: str) -> bool:
        """Remove protection ``tag``; return True if the peer is still protected."""
        with self._lock:
            tags = self._protected.get(peer)
            if tags is None:
                return False
            tags.discard(tag)
            if not tags:
                del self._protected[peer]
                return False
            return True

    def is_protected(self, peer: bytes, tag: str = "") -> bool:
        """True if ``peer`` is protected under ``tag``, or under any tag if empty."""
        with self._lock:
            tags = self._protected.get(peer, set())
            return bool(tags) if not tag else tag in tags

    def tag_peer(self, peer: bytes, tag: str, value: int) -> None:
        """Set a plain tag value on ``peer``."""
        with self._lock:
            self._tags.setdefault(peer, {})[tag] = value

    def untag_peer(self, peer: bytes, tag: str) -> None:
        """Remove a plain tag from ``peer``."""
        with self._lock:
            tags = self._tags.get(peer)
            if tags is not None:
                tags.pop(tag, None)
                if not tags:
                    del self._tags[peer]

    def get_tag_info(self, peer: bytes) -> dict[str, int]:
        """All tag values of ``peer``, plain and decaying."""
        with self._lock:
            info = dict(self._tags.get(peer, {}))
            decaying = list(self._decaying.values())
        for tag in decaying:
            values = tag.values()
            if peer in values:
                info[tag.name] = values[peer]
        return info

    def register_decaying_tag(
        self, name: str, interval: Interval, decay_amount: int, cap: int
    ) -> DecayingTag:
        """Create a decaying tag with fixed decay and a bounded sum."""
        if not self.supports_decay:
            raise RuntimeError("connection manager does not support decaying tags")
        with self._lock:
            if name in self._decaying:
                raise ValueError(f"decaying tag {name} already registered")
            tag = DecayingTag(
                name, interval, decay_amount, cap, self._clock, self._forget
            )
            self._decaying[name] = tag
            return tag

    def _forget(self, name: str) -> None:
        with self._lock:
            self._decaying.pop(name, None)

    def decay(self, now: Optional[float] = None) -> None:
        """Apply elapsed decay to every registered decaying tag."""
        with self._lock:
            tags = list(self._decaying.values())
        for tag in tags:
            tag.decay(now)


class TagTracer(RawTracer):
    """Tags peer connections: direct peers, mesh peers and message deliverers.

    First (and near-first) deliverers of a message get a decaying per-topic
    delivery tag bumped, capped and decaying over time.
    """

    def __init__(
        self,
        cmgr: ConnManager,
        id_fn: Optional[Callable[[Message], str]] = None,
        direct: Optional[Iterable[bytes]] = None,
    ) -> None:
        self._cmgr = cmgr
        self._decayer: Optional[ConnManager] = cmgr if cmgr.supports_decay else None
        if self._decayer is None:
            log.debug(
                "connection manager does not support decaying tags, "
                "delivery tags will not be applied"
            )
        self._id = id_fn or _default_message_id
        self.direct: Optional[set[bytes]] = set(direct) if direct is not None else None
        self._lock = threading.Lock()
        self._decaying: dict[str, DecayingTag] = {}
        self._near_first: dict[str, set[bytes]] = {}

    def _bump(self, peer: bytes, topic: str) -> None:
        with self._lock:
            tag = self._decaying.get(topic)
        if tag is None:
            log.warning(
                "error bumping delivery tag: no decaying tag registered for topic %s",
                topic,
            )
            return
        try:
            tag.bump(peer, GOSSIPSUB_CONN_TAG_BUMP_MESSAGE_DELIVERY)
        except RuntimeError as exc:
            log.warning("error bumping delivery tag: %s", exc)

    def near_first_peers(self, msg: Message) -> list[bytes]:
        """Peers that delivered ``msg`` while it was still being validated."""
        with self._lock:
            return list(self._near_first.get(self._id(msg), ()))

    def add_peer(self, peer: bytes, proto: str) -> None:
        if self.direct is not None and peer in self.direct:
            self._cmgr.protect(peer, DIRECT_PEER_TAG)

    def join(self, topic: str) -> None:
        if self._decayer is None:
            return
        with self._lock:
            try:
                tag = self._decayer.register_decaying_tag(
                    f"pubsub-deliveries:{topic}",
                    GOSSIPSUB_CONN_TAG_DECAY_INTERVAL,
                    GOSSIPSUB_CONN_TAG_DECAY_AMOUNT,
                    GOSSIPSUB_CONN_TAG_MESSAGE_DELIVERY_CAP,
                )
            except (RuntimeError, ValueError) as exc:
                log.warning("unable to create decaying delivery tag: %s", exc)
                return
            self._decaying[topic] = tag

    def leave(self, topic: str) -> None:
        with self._lock:
            tag = self._decaying.pop(topic, None)
        if tag is not None:
            tag.close()

    def graft(self, peer: bytes, topic: str) -> None:
        self._cmgr.protect(peer, _topic_tag(topic))

    def prune(self, peer: bytes, topic: str) -> None:
        self._cmgr.unprotect(peer, _topic_tag(topic))

    def validate_message(self, msg: Message) -> None:
        with self._lock:
            self._near_first.setdefault(self._id(msg), set())

    def duplicate_message(self, msg: Message) -> None:
        with self._lock:
            peers = self._near_first.get(self._id(msg))
            if peers is not None:
                peers.add(msg.received_from)

    def deliver_message(self, msg: Message) -> None:
        topic = msg.topic or ""
        near_first = self.near_first_peers(msg)
        self._bump(msg.received_from, topic)
        for peer in near_first:
            self._bump(peer, topic)
        with self._lock:
            self._near_first.pop(self._id(msg), None)

    def reject_message(self, msg: Message, reason: str) -> None:
        # Only rejections from the validation pipeline end near-first tracking;
        # other reasons skip the queue while the message may still be validating.
        if str(reason) in _CLEARS_NEAR_FIRST:
            with self._lock:
                self._near_first.pop(self._id(msg), None)