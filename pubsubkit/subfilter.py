"""Filters deciding which topic subscriptions are tracked."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Union

from pubsubkit.message import SubOpts


class TooManySubscriptionsError(Exception):
    """Raised when an RPC carries more subscriptions than allowed."""

    def __init__(self, message: str = "too many subscriptions") -> None:
        super().__init__(message)


class SubscriptionFilter(ABC):
    """Decides which topics may be joined and which announcements are kept."""

    @abstractmethod
    def can_subscribe(self, topic: str) -> bool:
        """True if the topic is of interest."""

    @abstractmethod
    def filter_incoming_subscriptions(
        self, peer: bytes, subs: list[SubOpts]
    ) -> list[SubOpts]:
        """Return the announcements of interest; may raise TooManySubscriptionsError."""


class AllowlistSubscriptionFilter(SubscriptionFilter):
    """Allows only an explicit set of topics."""

    def __init__(self, *topics: str) -> None:
        self._allow = frozenset(topics)

    def can_subscribe(self, topic: str) -> bool:
        return topic in self._allow

    def filter_incoming_subscriptions(
        self, peer: bytes, subs: list[SubOpts]
    ) -> list[SubOpts]:
        return filter_subscriptions(subs, self.can_subscribe)


class RegexpSubscriptionFilter(SubscriptionFilter):
    """Allows topics in which the pattern matches anywhere; anchor it to match whole names."""

    def __init__(self, pattern: Union[str, "re.Pattern[str]"]) -> None:
        self._allow = re.compile(pattern) if isinstance(pattern, str) else pattern

    def can_subscribe(self, topic: str) -> bool:
        return self._allow.search(topic) is not None

    def filter_incoming_subscriptions(
        self, peer: bytes, subs: list[SubOpts]
    ) -> list[SubOpts]:
        return filter_subscriptions(subs, self.can_subscribe)


class LimitSubscriptionFilter(SubscriptionFilter):
    """Wraps a filter with a hard limit on subscriptions per RPC."""

    def __init__(self, inner: SubscriptionFilter, limit: int) -> None:
        self._inner = inner
        self._limit = limit

    def can_subscribe(self, topic: str) -> bool:
        return self._inner.can_subscribe(topic)

    def filter_incoming_subscriptions(
        self, peer: bytes, subs: list[SubOpts]
    ) -> list[SubOpts]:
        if len(subs) > self._limit:
            raise TooManySubscriptionsError()
        return self._inner.filter_incoming_subscriptions(peer, subs)


def filter_subscriptions(
    subs: Iterable[SubOpts], accept: Callable[[str], bool]
) -> list[SubOpts]:
    """Keep accepted topics, deduplicated; contradictory announcements cancel out."""
    kept: dict[str, SubOpts] = {}
    for sub in subs:
        topic = sub.topic_id
        if not accept(topic):
            continue
        other = kept.get(topic)
        if other is None:
            kept[topic] = sub
        elif other.subscribe != sub.subscribe:
            del kept[topic]
    return list(kept.values())