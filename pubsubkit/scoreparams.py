"""Peer scoring parameters and thresholds, with their validation rules."""

from __future__ import annotations

import ipaddress
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Optional, Union

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

DEFAULT_DECAY_INTERVAL = timedelta(seconds=1)
DEFAULT_DECAY_TO_ZERO = 0.01

_ZERO = timedelta(0)
_ONE_SECOND = timedelta(seconds=1)


class ScoreParamsError(ValueError):
    """Raised when score parameters or thresholds are invalid."""


def _invalid(num: float) -> bool:
    """True for NaN or an infinite value."""
    return math.isnan(num) or math.isinf(num)


@dataclass
class PeerScoreThresholds:
    """Score thresholds that gate gossip, publishing, graylisting, PX and grafting."""

    skip_atomic_validation: bool = False
    gossip_threshold: float = 0.0
    publish_threshold: float = 0.0
    graylist_threshold: float = 0.0
    accept_px_threshold: float = 0.0
    opportunistic_graft_threshold: float = 0.0

    def validate(self) -> None:
        """Raise ScoreParamsError if the thresholds are inconsistent."""
        skip = self.skip_atomic_validation
        if (
            not skip
            or self.publish_threshold != 0
            or self.gossip_threshold != 0
            or self.graylist_threshold != 0
        ):
            if self.gossip_threshold > 0 or _invalid(self.gossip_threshold):
                raise ScoreParamsError(
                    "invalid gossip threshold; it must be <= 0 and a valid number"
                )
            if (
                self.publish_threshold > 0
                or self.publish_threshold > self.gossip_threshold
                or _invalid(self.publish_threshold)
            ):
                raise ScoreParamsError(
                    "invalid publish threshold; it must be <= 0 and <= gossip threshold "
                    "and a valid number"
                )
            if (
                self.graylist_threshold > 0
                or self.graylist_threshold > self.publish_threshold
                or _invalid(self.graylist_threshold)
            ):
                raise ScoreParamsError(
                    "invalid graylist threshold; it must be <= 0 and <= publish threshold "
                    "and a valid number"
                )

        if not skip or self.accept_px_threshold != 0:
            if self.accept_px_threshold < 0 or _invalid(self.accept_px_threshold):
                raise ScoreParamsError(
                    "invalid accept PX threshold; it must be >= 0 and a valid number"
                )

        if not skip or self.opportunistic_graft_threshold != 0:
            if self.opportunistic_graft_threshold < 0 or _invalid(
                self.opportunistic_graft_threshold
            ):
                raise ScoreParamsError(
                    "invalid opportunistic grafting threshold; it must be >= 0 "
                    "and a valid number"
                )


@dataclass
class TopicScoreParams:
    """Per-topic score parameters (P1 to P4)."""

    skip_atomic_validation: bool = False
    topic_weight: float = 0.0

    # P1: time in mesh
    time_in_mesh_weight: float = 0.0
    time_in_mesh_quantum: timedelta = _ZERO
    time_in_mesh_cap: float = 0.0

    # P2: first message deliveries
    first_message_deliveries_weight: float = 0.0
    first_message_deliveries_decay: float = 0.0
    first_message_deliveries_cap: float = 0.0

    # P3: mesh message deliveries
    mesh_message_deliveries_weight: float = 0.0
    mesh_message_deliveries_decay: float = 0.0
    mesh_message_deliveries_cap: float = 0.0
    mesh_message_deliveries_threshold: float = 0.0
    mesh_message_deliveries_window: timedelta = _ZERO
    mesh_message_deliveries_activation: timedelta = _ZERO

    # P3b: sticky mesh propagation failures
    mesh_failure_penalty_weight: float = 0.0
    mesh_failure_penalty_decay: float = 0.0

    # P4: invalid messages
    invalid_message_deliveries_weight: float = 0.0
    invalid_message_deliveries_decay: float = 0.0

    def validate(self) -> None:
        """Raise ScoreParamsError if any topic parameter is invalid."""
        if self.topic_weight < 0 or _invalid(self.topic_weight):
            raise ScoreParamsError(
                "invalid topic weight; must be >= 0 and a valid number"
            )
        self._validate_time_in_mesh()
        self._validate_first_message_deliveries()
        self._validate_mesh_message_deliveries()
        self._validate_mesh_failure_penalty()
        self._validate_invalid_message_deliveries()

    def _validate_time_in_mesh(self) -> None:
        if self.skip_atomic_validation and (
            self.time_in_mesh_weight == 0
            and self.time_in_mesh_quantum == _ZERO
            and self.time_in_mesh_cap == 0
        ):
            return
        if self.time_in_mesh_quantum == _ZERO:
            raise ScoreParamsError("invalid TimeInMeshQuantum; must be non zero")
        if self.time_in_mesh_weight < 0 or _invalid(self.time_in_mesh_weight):
            raise ScoreParamsError(
                "invalid TimeInMeshWeight; must be positive (or 0 to disable) "
                "and a valid number"
            )
        if self.time_in_mesh_weight != 0 and self.time_in_mesh_quantum <= _ZERO:
            raise ScoreParamsError("invalid TimeInMeshQuantum; must be positive")
        if self.time_in_mesh_weight != 0 and (
            self.time_in_mesh_cap <= 0 or _invalid(self.time_in_mesh_cap)
        ):
            raise ScoreParamsError(
                "invalid TimeInMeshCap; must be positive and a valid number"
            )

    def _validate_first_message_deliveries(self) -> None:
        weight = self.first_message_deliveries_weight
        decay = self.first_message_deliveries_decay
        cap = self.first_message_deliveries_cap
        if self.skip_atomic_validation and weight == 0 and cap == 0 and decay == 0:
            return
        if weight < 0 or _invalid(weight):
            raise ScoreParamsError(
                "invalid FirstMessageDeliveriesWeight; must be positive "
                "(or 0 to disable) and a valid number"
            )
        if weight != 0 and (decay <= 0 or decay >= 1 or _invalid(decay)):
            raise ScoreParamsError(
                "invalid FirstMessageDeliveriesDecay; must be between 0 and 1"
            )
        if weight != 0 and (cap <= 0 or _invalid(cap)):
            raise ScoreParamsError(
                "invalid FirstMessageDeliveriesCap; must be positive and a valid number"
            )

    def _validate_mesh_message_deliveries(self) -> None:
        weight = self.mesh_message_deliveries_weight
        decay = self.mesh_message_deliveries_decay
        cap = self.mesh_message_deliveries_cap
        threshold = self.mesh_message_deliveries_threshold
        window = self.mesh_message_deliveries_window
        activation = self.mesh_message_deliveries_activation
        if self.skip_atomic_validation and (
            weight == 0
            and cap == 0
            and decay == 0
            and threshold == 0
            and window == _ZERO
            and activation == _ZERO
        ):
            return
        if weight > 0 or _invalid(weight):
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesWeight; must be negative "
                "(or 0 to disable) and a valid number"
            )
        if weight != 0 and (decay <= 0 or decay >= 1 or _invalid(decay)):
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesDecay; must be between 0 and 1"
            )
        if weight != 0 and (cap <= 0 or _invalid(cap)):
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesCap; must be positive and a valid number"
            )
        if weight != 0 and (threshold <= 0 or _invalid(threshold)):
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesThreshold; must be positive "
                "and a valid number"
            )
        if window < _ZERO:
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesWindow; must be non-negative"
            )
        if weight != 0 and activation < _ONE_SECOND:
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesActivation; must be at least 1s"
            )

    def _validate_mesh_failure_penalty(self) -> None:
        weight = self.mesh_failure_penalty_weight
        decay = self.mesh_failure_penalty_decay
        if self.skip_atomic_validation and decay == 0 and weight == 0:
            return
        if weight > 0 or _invalid(weight):
            raise ScoreParamsError(
                "invalid MeshFailurePenaltyWeight; must be negative "
                "(or 0 to disable) and a valid number"
            )
        if weight != 0 and (_invalid(decay) or decay <= 0 or decay >= 1):
            raise ScoreParamsError(
                "invalid MeshFailurePenaltyDecay; must be between 0 and 1"
            )

    def _validate_invalid_message_deliveries(self) -> None:
        weight = self.invalid_message_deliveries_weight
        decay = self.invalid_message_deliveries_decay
        if self.skip_atomic_validation and decay == 0 and weight == 0:
            return
        if weight > 0 or _invalid(weight):
            raise ScoreParamsError(
                "invalid InvalidMessageDeliveriesWeight; must be negative "
                "(or 0 to disable) and a valid number"
            )
        if decay <= 0 or decay >= 1 or _invalid(decay):
            raise ScoreParamsError(
                "invalid InvalidMessageDeliveriesDecay; must be between 0 and 1"
            )


@dataclass
class PeerScoreParams:
    """Global peer score parameters (P5 to P7, decay, retention) and topic parameters."""

    skip_atomic_validation: bool = False
    topics: dict[str, TopicScoreParams] = field(default_factory=dict)
    topic_score_cap: float = 0.0

    # P5: application-specific score
    app_specific_score: Optional[Callable[[str], float]] = None
    app_specific_weight: float = 0.0

    # P6: IP colocation factor
    ip_colocation_factor_weight: float = 0.0
    ip_colocation_factor_threshold: int = 0
    ip_colocation_factor_whitelist: list[IPNetwork] = field(default_factory=list)

    # P7: behavioural penalties
    behaviour_penalty_weight: float = 0.0
    behaviour_penalty_threshold: float = 0.0
    behaviour_penalty_decay: float = 0.0

    decay_interval: timedelta = _ZERO
    decay_to_zero: float = 0.0
    retain_score: timedelta = _ZERO
    seen_msg_ttl: timedelta = _ZERO

    def validate(self) -> None:
        """Raise ScoreParamsError if any parameter is invalid.

        In non-atomic mode a missing application score function is replaced
        by one that always scores zero.
        """
        for topic, params in self.topics.items():
            try:
                params.validate()
            except ScoreParamsError as exc:
                raise ScoreParamsError(
                    f"invalid score parameters for topic {topic}: {exc}"
                ) from exc

        skip = self.skip_atomic_validation

        if not skip or self.topic_score_cap != 0:
            if self.topic_score_cap < 0 or _invalid(self.topic_score_cap):
                raise ScoreParamsError(
                    "invalid topic score cap; must be positive (or 0 for no cap) "
                    "and a valid number"
                )

        if self.app_specific_score is None:
            if skip:
                self.app_specific_score = lambda _peer: 0.0
            else:
                raise ScoreParamsError("missing application specific score function")

        if not skip or self.ip_colocation_factor_weight != 0:
            if self.ip_colocation_factor_weight > 0 or _invalid(
                self.ip_colocation_factor_weight
            ):
                raise ScoreParamsError(
                    "invalid IPColocationFactorWeight; must be negative "
                    "(or 0 to disable) and a valid number"
                )
            if (
                self.ip_colocation_factor_weight != 0
                and self.ip_colocation_factor_threshold < 1
            ):
                raise ScoreParamsError(
                    "invalid IPColocationFactorThreshold; must be at least 1"
                )

        if (
            not skip
            or self.behaviour_penalty_weight != 0
            or self.behaviour_penalty_threshold != 0
        ):
            weight = self.behaviour_penalty_weight
            decay = self.behaviour_penalty_decay
            if weight > 0 or _invalid(weight):
                raise ScoreParamsError(
                    "invalid BehaviourPenaltyWeight; must be negative "
                    "(or 0 to disable) and a valid number"
                )
            if weight != 0 and (decay <= 0 or decay >= 1 or _invalid(decay)):
                raise ScoreParamsError(
                    "invalid BehaviourPenaltyDecay; must be between 0 and 1"
                )
            if self.behaviour_penalty_threshold < 0 or _invalid(
                self.behaviour_penalty_threshold
            ):
                raise ScoreParamsError(
                    "invalid BehaviourPenaltyThreshold; must be >= 0 and a valid number"
                )

        if not skip or self.decay_interval != _ZERO or self.decay_to_zero != 0:
            if self.decay_interval < _ONE_SECOND:
                raise ScoreParamsError("invalid DecayInterval; must be at least 1s")
            if (
                self.decay_to_zero <= 0
                or self.decay_to_zero >= 1
                or _invalid(self.decay_to_zero)
            ):
                raise ScoreParamsError("invalid DecayToZero; must be between 0 and 1")


def score_parameter_decay(decay: timedelta) -> float:
    """Decay factor for a 1s decay interval and a 0.01 decay-to-zero level."""
    return score_parameter_decay_with_base(
        decay, DEFAULT_DECAY_INTERVAL, DEFAULT_DECAY_TO_ZERO
    )


def score_parameter_decay_with_base(
    decay: timedelta, base: timedelta, decay_to_zero: float
) -> float:
    """Decay factor so that a value reaches decay_to_zero after decay, ticking every base."""
    ticks = float(decay // base)
    exponent = math.inf if ticks == 0 else 1 / ticks
    return math.pow(decay_to_zero, exponent)