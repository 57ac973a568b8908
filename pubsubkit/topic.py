"""Topic-level errors, publishing options and peer event handlers."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from pubsubkit.message import PrivateKey


class TopicClosedError(Exception):
    """Raised when a topic is used after it has been closed."""

    def __init__(self, message: str = "this Topic is closed, try opening a new one") -> None:
        super().__init__(message)


class NilSignKeyError(Exception):
    """Raised when no private key was provided for signing."""

    def __init__(self, message: str = "nil sign key") -> None:
        super().__init__(message)


class EmptyPeerIDError(Exception):
    """Raised when an empty peer ID was provided."""

    def __init__(self, message: str = "empty peer ID") -> None:
        super().__init__(message)


class EventType(enum.IntEnum):
    """Kinds of topic peer events."""

    PEER_JOIN = 0
    PEER_LEAVE = 1


@dataclass(frozen=True)
class PeerEvent:
    """A peer joining or leaving a topic."""

    type: EventType
    peer: bytes


RouterReady = Callable[[Any, str], bool]
ProvideKey = Callable[[], "tuple[Optional[PrivateKey], bytes]"]


@dataclass
class PublishOptions:
    """Options of one publication.

    ``ready`` decides whether the router is ready to publish; ``custom_key``
    provides the key and peer ID to sign with; ``local`` restricts delivery to
    in-process subscribers; ``validator_data`` is handed to local validators.
    """

    ready: Optional[RouterReady] = None
    custom_key: Optional[ProvideKey] = None
    local: bool = False
    validator_data: Any = None

    @classmethod
    def with_secret_key_and_peer_id(
        cls, key: Optional[PrivateKey], peer_id: bytes, **kwargs: Any
    ) -> "PublishOptions":
        """Options signing with a fixed key on behalf of ``peer_id``."""
        return cls(custom_key=lambda: (key, peer_id), **kwargs)

    def resolve_signer(
        self, key: Optional[PrivateKey], peer_id: bytes
    ) -> "tuple[Optional[PrivateKey], bytes]":
        """Return the key and peer ID to publish with, given the defaults."""
        if self.custom_key is None or self.local:
            return key, peer_id
        key, peer_id = self.custom_key()
        if key is None:
            raise NilSignKeyError()
        if not peer_id:
            raise EmptyPeerIDError()
        return key, peer_id


class TopicEventHandler:
    """Delivers join and leave events for the peers of one topic.

    A join and a leave of the same peer that are both still pending cancel out.
    """

    def __init__(
        self,
        peers: Iterable[bytes] = (),
        on_cancel: Optional[Callable[["TopicEventHandler"], None]] = None,
    ) -> None:
        self._cond = threading.Condition()
        self._log: dict[bytes, EventType] = {peer: EventType.PEER_JOIN for peer in peers}
        self._on_cancel = on_cancel
        self._cancelled = False
        self.error: Optional[BaseException] = None

    def send_notification(self, evt: PeerEvent) -> None:
        """Record an event; ignored once the handler is cancelled."""
        with self._cond:
            if self._cancelled:
                return
            pending = self._log.get(evt.peer)
            if pending is None:
                self._log[evt.peer] = evt.type
                self._cond.notify_all()
            elif pending != evt.type:
                del self._log[evt.peer]

    def next_peer_event(self, timeout: Optional[float] = None) -> PeerEvent:
        """Return the next pending event, waiting up to ``timeout`` seconds."""
        with self._cond:
            if not self._cond.wait_for(lambda: bool(self._log), timeout):
                raise TimeoutError("no peer event before the timeout")
            peer = next(iter(self._log))
            return PeerEvent(type=self._log.pop(peer), peer=peer)

    def cancel(self) -> None:
        """Stop receiving events and detach from the topic."""
        with self._cond:
            self._cancelled = True
            self.error = RuntimeError(
                "topic event handler cancelled by calling handler.cancel()"
            )
        if self._on_cancel is not None:
            self._on_cancel(self)