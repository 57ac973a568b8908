# pubsubkit

Building blocks for a gossip-style publish/subscribe node. The package holds no
network transport. It provides the pieces a router uses around one:

- **Peer scoring parameters** (`pubsubkit.scoreparams`). `PeerScoreThresholds`,
  `PeerScoreParams` and `TopicScoreParams` validate themselves and raise
  `ScoreParamsError` when a value is out of range. They support both atomic and
  selective (`skip_atomic_validation`) modes. `score_parameter_decay` and
  `score_parameter_decay_with_base` compute decay factors.
- **Messages and signing** (`pubsubkit.message`). `Message` and `SubOpts` are the
  wire records. `sign_message` and `verify_message_signature` sign and check
  messages using Ed25519 and RSA keys from `cryptography`.
  `MessageSignaturePolicy` selects strict or lax signing.
- **Subscription filters** (`pubsubkit.subfilter`). `AllowlistSubscriptionFilter`
  and `RegexpSubscriptionFilter` decide which topics are accepted.
  `LimitSubscriptionFilter` caps how many subscriptions one RPC may carry and
  raises `TooManySubscriptionsError` when there are more. `filter_subscriptions`
  drops unwanted topics and removes duplicates.
- **Subscriptions** (`pubsubkit.subscription`). `Subscription` is a
  per-subscriber message queue with `next(timeout)`, `cancel()` and `close()`.
- **Seen-message caches** (`pubsubkit.timecache`). `FirstSeenCache` and
  `LastSeenCache` are created through `new_time_cache(ttl, strategy)`.
- **Tracing** (`pubsubkit.trace`, `pubsubkit.tracer`). `PubsubTracer` fans events
  out to raw tracers and to an event tracer. `open_json_tracer(path)` writes
  events as newline-delimited JSON.
- **Validation** (`pubsubkit.validation`). `Validation` runs per-topic and
  default validators, inline or asynchronous, with throttling and timeouts.
- **Connection tagging** (`pubsubkit.tagtracer`). `TagTracer` protects mesh and
  direct peers through a `ConnManager` and keeps capped, decaying delivery tags.
- **Topic events** (`pubsubkit.topic`). `TopicEventHandler` merges peer join and
  leave notifications. `PublishOptions.resolve_signer` picks the key used to sign
  a message.

## Installing

```
pip install .
```

## Example

```python
from datetime import timedelta

from pubsubkit.scoreparams import PeerScoreThresholds, score_parameter_decay
from pubsubkit.subfilter import AllowlistSubscriptionFilter, LimitSubscriptionFilter
from pubsubkit.timecache import Strategy, new_time_cache

thresholds = PeerScoreThresholds(
    gossip_threshold=-1,
    publish_threshold=-2,
    graylist_threshold=-3,
    accept_px_threshold=1,
    opportunistic_graft_threshold=2,
)
thresholds.validate()  # raises ScoreParamsError when invalid

print(score_parameter_decay(timedelta(hours=1)))  # 0.9987216039048303

allow = LimitSubscriptionFilter(AllowlistSubscriptionFilter("blocks", "txs"), limit=100)
print(allow.can_subscribe("blocks"))  # True

seen = new_time_cache(timedelta(minutes=2), Strategy.LAST_SEEN)
print(seen.add("msg-1"), seen.add("msg-1"))  # True False
seen.done()
```

## Running the tests

```
pip install ".[test]"
pytest
```