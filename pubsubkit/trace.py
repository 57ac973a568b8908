"""Tracing of pubsub internals: high-level trace events and low-level raw hooks."""

from __future__ import annotations

import base64
import enum
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional

from pubsubkit.message import Message, SubOpts

MessageIdFn = Callable[[Message], str]


class TraceEventType(enum.IntEnum):
    """Kinds of trace events."""

    PUBLISH_MESSAGE = 0
    REJECT_MESSAGE = 1
    DUPLICATE_MESSAGE = 2
    DELIVER_MESSAGE = 3
    ADD_PEER = 4
    REMOVE_PEER = 5
    RECV_RPC = 6
    SEND_RPC = 7
    DROP_RPC = 8
    JOIN = 9
    LEAVE = 10
    GRAFT = 11
    PRUNE = 12

    @property
    def field_name(self) -> str:
        """Name of the key that holds this event's details in encoded form."""
        return _FIELD_NAMES[self]


_FIELD_NAMES = {
    TraceEventType.PUBLISH_MESSAGE: "publishMessage",
    TraceEventType.REJECT_MESSAGE: "rejectMessage",
    TraceEventType.DUPLICATE_MESSAGE: "duplicateMessage",
    TraceEventType.DELIVER_MESSAGE: "deliverMessage",
    TraceEventType.ADD_PEER: "addPeer",
    TraceEventType.REMOVE_PEER: "removePeer",
    TraceEventType.RECV_RPC: "recvRPC",
    TraceEventType.SEND_RPC: "sendRPC",
    TraceEventType.DROP_RPC: "dropRPC",
    TraceEventType.JOIN: "join",
    TraceEventType.LEAVE: "leave",
    TraceEventType.GRAFT: "graft",
    TraceEventType.PRUNE: "prune",
}


def _jsonable(value: Any) -> Any:
    """Convert to JSON-friendly values: bytes become base64, None entries vanish."""
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class TraceEvent:
    """One trace event, emitted by the local peer at a nanosecond timestamp."""

    type: TraceEventType
    peer_id: bytes
    timestamp: int
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable form of the event."""
        return {
            "type": int(self.type),
            "peerID": _jsonable(self.peer_id),
            "timestamp": self.timestamp,
            self.type.field_name: _jsonable(self.details),
        }


@dataclass
class ControlMessage:
    """Gossip control messages carried by an RPC."""

    ihave: list[tuple[str, list[str]]] = field(default_factory=list)
    iwant: list[list[str]] = field(default_factory=list)
    graft: list[str] = field(default_factory=list)
    prune: list[tuple[str, list[bytes]]] = field(default_factory=list)
    idontwant: list[list[str]] = field(default_factory=list)


@dataclass
class RPC:
    """An RPC exchanged with a peer."""

    from_peer: bytes = b""
    publish: list[Message] = field(default_factory=list)
    subscriptions: list[SubOpts] = field(default_factory=list)
    control: Optional[ControlMessage] = None


class EventTracer(ABC):
    """Receiver of high-level trace events."""

    @abstractmethod
    def trace(self, evt: TraceEvent) -> None:
        """Handle one trace event."""


_RAW_HOOKS = frozenset(
    {
        "add_peer",
        "remove_peer",
        "join",
        "leave",
        "graft",
        "prune",
        "validate_message",
        "deliver_message",
        "reject_message",
        "duplicate_message",
        "throttle_peer",
        "recv_rpc",
        "send_rpc",
        "drop_rpc",
        "undeliverable_message",
    }
)


class RawTracer:
    """Low-level hooks into pubsub operation.

    Subclasses override the hooks they care about; alternatively callables can
    be passed by hook name, e.g. ``RawTracer(join=print)``. Hooks without a
    callable are ignored. Hooks are called synchronously and must neither block
    nor modify arguments.
    """

    _hooks: Mapping[str, Callable[..., Any]] = MappingProxyType({})

    def __init__(self, **hooks: Callable[..., Any]) -> None:
        unknown = set(hooks) - _RAW_HOOKS
        if unknown:
            raise TypeError(f"unknown raw tracer hooks: {', '.join(sorted(unknown))}")
        self._hooks = MappingProxyType(dict(hooks))

    def _notify(self, hook: str, *args: Any) -> None:
        callback = self._hooks.get(hook)
        if callback is not None:
            callback(*args)

    def add_peer(self, peer: bytes, proto: str) -> None:
        """A new peer was added."""
        self._notify("add_peer", peer, proto)

    def remove_peer(self, peer: bytes) -> None:
        """A peer was removed."""
        self._notify("remove_peer", peer)

    def join(self, topic: str) -> None:
        """A topic was joined."""
        self._notify("join", topic)

    def leave(self, topic: str) -> None:
        """A topic was abandoned."""
        self._notify("leave", topic)

    def graft(self, peer: bytes, topic: str) -> None:
        """A peer was grafted onto the mesh."""
        self._notify("graft", peer, topic)

    def prune(self, peer: bytes, topic: str) -> None:
        """A peer was pruned from the mesh."""
        self._notify("prune", peer, topic)

    def validate_message(self, msg: Message) -> None:
        """A message entered the validation pipeline."""
        self._notify("validate_message", msg)

    def deliver_message(self, msg: Message) -> None:
        """A message was delivered."""
        self._notify("deliver_message", msg)

    def reject_message(self, msg: Message, reason: str) -> None:
        """A message was rejected or ignored."""
        self._notify("reject_message", msg, reason)

    def duplicate_message(self, msg: Message) -> None:
        """A duplicate message was dropped."""
        self._notify("duplicate_message", msg)

    def throttle_peer(self, peer: bytes) -> None:
        """A peer was throttled."""
        self._notify("throttle_peer", peer)

    def recv_rpc(self, rpc: RPC) -> None:
        """An RPC was received."""
        self._notify("recv_rpc", rpc)

    def send_rpc(self, rpc: RPC, peer: bytes) -> None:
        """An RPC was sent."""
        self._notify("send_rpc", rpc, peer)

    def drop_rpc(self, rpc: RPC, peer: bytes) -> None:
        """An outbound RPC was dropped."""
        self._notify("drop_rpc", rpc, peer)

    def undeliverable_message(self, msg: Message) -> None:
        """A message could not be handed to a slow subscriber."""
        self._notify("undeliverable_message", msg)


def _default_message_id(msg: Message) -> str:
    if msg.id:
        return msg.id
    return ((msg.from_peer or b"") + (msg.seqno or b"")).decode("latin-1")


class PubsubTracer:
    """Dispatches pubsub activity to raw tracers and to an optional event tracer."""

    def __init__(
        self,
        peer_id: bytes,
        tracer: Optional[EventTracer] = None,
        raw: Iterable[RawTracer] = (),
        id_fn: Optional[MessageIdFn] = None,
        clock: Callable[[], int] = time.time_ns,
    ) -> None:
        self._peer_id = peer_id
        self._tracer = tracer
        self._raw = tuple(raw)
        self._id = id_fn or _default_message_id
        self._clock = clock

    def _emit(self, kind: TraceEventType, details: dict[str, Any]) -> None:
        if self._tracer is not None:
            self._tracer.trace(TraceEvent(kind, self._peer_id, self._clock(), details))

    def _raw_for(self, msg: Message) -> tuple[RawTracer, ...]:
        return () if msg.received_from == self._peer_id else self._raw

    def publish_message(self, msg: Message) -> None:
        """Trace a locally published message."""
        self._emit(
            TraceEventType.PUBLISH_MESSAGE,
            {"messageID": self._id(msg), "topic": msg.topic},
        )

    def validate_message(self, msg: Message) -> None:
        """Notify raw tracers that a remote message entered validation."""
        for tr in self._raw_for(msg):
            tr.validate_message(msg)

    def reject_message(self, msg: Message, reason: str) -> None:
        """Trace a rejected message."""
        for tr in self._raw_for(msg):
            tr.reject_message(msg, reason)
        self._emit(
            TraceEventType.REJECT_MESSAGE,
            {
                "messageID": self._id(msg),
                "receivedFrom": msg.received_from,
                "reason": reason,
                "topic": msg.topic,
            },
        )

    def duplicate_message(self, msg: Message) -> None:
        """Trace a dropped duplicate."""
        for tr in self._raw_for(msg):
            tr.duplicate_message(msg)
        self._emit(
            TraceEventType.DUPLICATE_MESSAGE,
            {
                "messageID": self._id(msg),
                "receivedFrom": msg.received_from,
                "topic": msg.topic,
            },
        )

    def deliver_message(self, msg: Message) -> None:
        """Trace a delivered message."""
        for tr in self._raw_for(msg):
            tr.deliver_message(msg)
        self._emit(
            TraceEventType.DELIVER_MESSAGE,
            {
                "messageID": self._id(msg),
                "topic": msg.topic,
                "receivedFrom": msg.received_from,
            },
        )

    def add_peer(self, peer: bytes, proto: str) -> None:
        """Trace a newly added peer."""
        for tr in self._raw:
            tr.add_peer(peer, proto)
        self._emit(TraceEventType.ADD_PEER, {"peerID": peer, "proto": proto})

    def remove_peer(self, peer: bytes) -> None:
        """Trace a removed peer."""
        for tr in self._raw:
            tr.remove_peer(peer)
        self._emit(TraceEventType.REMOVE_PEER, {"peerID": peer})

    def recv_rpc(self, rpc: RPC) -> None:
        """Trace an incoming RPC."""
        for tr in self._raw:
            tr.recv_rpc(rpc)
        if self._tracer is not None:
            self._emit(
                TraceEventType.RECV_RPC,
                {"receivedFrom": rpc.from_peer, "meta": self.rpc_meta(rpc)},
            )

    def send_rpc(self, rpc: RPC, peer: bytes) -> None:
        """Trace an RPC sent to ``peer``."""
        for tr in self._raw:
            tr.send_rpc(rpc, peer)
        if self._tracer is not None:
            self._emit(
                TraceEventType.SEND_RPC, {"sendTo": peer, "meta": self.rpc_meta(rpc)}
            )

    def drop_rpc(self, rpc: RPC, peer: bytes) -> None:
        """Trace an RPC to ``peer`` that was dropped."""
        for tr in self._raw:
            tr.drop_rpc(rpc, peer)
        if self._tracer is not None:
            self._emit(
                TraceEventType.DROP_RPC, {"sendTo": peer, "meta": self.rpc_meta(rpc)}
            )

    def undeliverable_message(self, msg: Message) -> None:
        """Notify raw tracers of a message a slow subscriber missed."""
        for tr in self._raw:
            tr.undeliverable_message(msg)

    def join(self, topic: str) -> None:
        """Trace joining a topic."""
        for tr in self._raw:
            tr.join(topic)
        self._emit(TraceEventType.JOIN, {"topic": topic})

    def leave(self, topic: str) -> None:
        """Trace leaving a topic."""
        for tr in self._raw:
            tr.leave(topic)
        self._emit(TraceEventType.LEAVE, {"topic": topic})

    def graft(self, peer: bytes, topic: str) -> None:
        """Trace a mesh graft."""
        for tr in self._raw:
            tr.graft(peer, topic)
        self._emit(TraceEventType.GRAFT, {"peerID": peer, "topic": topic})

    def prune(self, peer: bytes, topic: str) -> None:
        """Trace a mesh prune."""
        for tr in self._raw:
            tr.prune(peer, topic)
        self._emit(TraceEventType.PRUNE, {"peerID": peer, "topic": topic})

    def throttle_peer(self, peer: bytes) -> None:
        """Notify raw tracers of a throttled peer."""
        for tr in self._raw:
            tr.throttle_peer(peer)

    def rpc_meta(self, rpc: RPC) -> dict[str, Any]:
        """Summarise an RPC: message ids, subscriptions and control messages."""
        meta: dict[str, Any] = {
            "messages": [
                {"messageID": self._id(m), "topic": m.topic} for m in rpc.publish
            ],
            "subscription": [
                {"subscribe": s.subscribe, "topic": s.topic_id}
                for s in rpc.subscriptions
            ],
        }
        ctl = rpc.control
        if ctl is not None:
            meta["control"] = {
                "ihave": [
                    {"topic": topic, "messageIDs": list(ids)} for topic, ids in ctl.ihave
                ],
                "iwant": [{"messageIDs": list(ids)} for ids in ctl.iwant],
                "graft": [{"topic": topic} for topic in ctl.graft],
                "prune": [
                    {"topic": topic, "peers": list(peers)} for topic, peers in ctl.prune
                ],
                "idontwant": [{"messageIDs": list(ids)} for ids in ctl.idontwant],
            }
        return meta