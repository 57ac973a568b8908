import math
from datetime import timedelta

import pytest

from pubsubkit.scoreparams import (
    PeerScoreParams,
    PeerScoreThresholds,
    ScoreParamsError,
    TopicScoreParams,
    score_parameter_decay,
    score_parameter_decay_with_base,
)

SEC = timedelta(seconds=1)
MS = timedelta(milliseconds=1)
NEG_TICK = timedelta(microseconds=-1)
INF = math.inf
NAN = math.nan


def app_score(_peer):
    return 0.0


def full_topic(**overrides):
    values = dict(
        topic_weight=1,
        time_in_mesh_weight=0.01,
        time_in_mesh_quantum=SEC,
        time_in_mesh_cap=10,
        first_message_deliveries_weight=1,
        first_message_deliveries_decay=0.5,
        first_message_deliveries_cap=10,
        mesh_message_deliveries_weight=-1,
        mesh_message_deliveries_decay=0.5,
        mesh_message_deliveries_cap=10,
        mesh_message_deliveries_threshold=5,
        mesh_message_deliveries_window=MS,
        mesh_message_deliveries_activation=SEC,
        mesh_failure_penalty_weight=-1,
        mesh_failure_penalty_decay=0.5,
        invalid_message_deliveries_weight=-1,
        invalid_message_deliveries_decay=0.5,
    )
    values.update(overrides)
    return TopicScoreParams(**values)


INVALID_THRESHOLDS = [
    dict(gossip_threshold=1),
    dict(publish_threshold=1),
    dict(gossip_threshold=-1, publish_threshold=0),
    dict(gossip_threshold=-1, publish_threshold=-2, graylist_threshold=0),
    dict(accept_px_threshold=-1),
    dict(opportunistic_graft_threshold=-1),
    dict(gossip_threshold=-INF, publish_threshold=-2, graylist_threshold=-3,
         accept_px_threshold=1, opportunistic_graft_threshold=2),
    dict(gossip_threshold=-1, publish_threshold=-INF, graylist_threshold=-3,
         accept_px_threshold=1, opportunistic_graft_threshold=2),
    dict(gossip_threshold=-1, publish_threshold=-2, graylist_threshold=-INF,
         accept_px_threshold=1, opportunistic_graft_threshold=2),
    dict(gossip_threshold=-1, publish_threshold=-2, graylist_threshold=-3,
         accept_px_threshold=NAN, opportunistic_graft_threshold=2),
    dict(gossip_threshold=-1, publish_threshold=-2, graylist_threshold=-3,
         accept_px_threshold=1, opportunistic_graft_threshold=INF),
]


@pytest.mark.parametrize("skip", [False, True])
@pytest.mark.parametrize("kwargs", INVALID_THRESHOLDS)
def test_thresholds_invalid(skip, kwargs):
    with pytest.raises(ScoreParamsError):
        PeerScoreThresholds(skip_atomic_validation=skip, **kwargs).validate()


@pytest.mark.parametrize("skip", [False, True])
def test_thresholds_valid(skip):
    thresholds = PeerScoreThresholds(
        skip_atomic_validation=skip,
        gossip_threshold=-1,
        publish_threshold=-2,
        graylist_threshold=-3,
        accept_px_threshold=1,
        opportunistic_graft_threshold=2,
    )
    assert thresholds.validate() is None
    assert thresholds.graylist_threshold == -3


def test_topic_params_empty_atomic_fails():
    with pytest.raises(ScoreParamsError, match="TimeInMeshQuantum"):
        TopicScoreParams().validate()


def test_topic_params_empty_skip_passes():
    params = TopicScoreParams(skip_atomic_validation=True)
    assert params.validate() is None
    assert params.time_in_mesh_quantum == timedelta(0)


INVALID_TOPIC = [
    dict(topic_weight=-1),
    dict(time_in_mesh_weight=-1, time_in_mesh_quantum=SEC),
    dict(time_in_mesh_weight=1, time_in_mesh_quantum=NEG_TICK),
    dict(time_in_mesh_weight=1, time_in_mesh_quantum=SEC, time_in_mesh_cap=-1),
    dict(time_in_mesh_quantum=SEC, first_message_deliveries_weight=-1),
    dict(time_in_mesh_quantum=SEC, first_message_deliveries_weight=1,
         first_message_deliveries_decay=-1),
    dict(time_in_mesh_quantum=SEC, first_message_deliveries_weight=1,
         first_message_deliveries_decay=2),
    dict(time_in_mesh_quantum=SEC, first_message_deliveries_weight=1,
         first_message_deliveries_decay=0.5, first_message_deliveries_cap=-1),
    dict(time_in_mesh_quantum=SEC, mesh_message_deliveries_weight=1),
    dict(time_in_mesh_quantum=SEC, mesh_message_deliveries_weight=-1,
         mesh_message_deliveries_decay=-1),
    dict(time_in_mesh_quantum=SEC, mesh_message_deliveries_weight=-1,
         mesh_message_deliveries_decay=2),
    dict(time_in_mesh_quantum=SEC, mesh_message_deliveries_weight=-1,
         mesh_message_deliveries_decay=0.5, mesh_message_deliveries_cap=-1),
    dict(time_in_mesh_quantum=SEC, mesh_message_deliveries_weight=-1,
         mesh_message_deliveries_decay=0.5, mesh_message_deliveries_cap=5,
         mesh_message_deliveries_threshold=-3),
    dict(time_in_mesh_quantum=SEC, mesh_message_deliveries_weight=-1,
         mesh_message_deliveries_decay=0.5, mesh_message_deliveries_cap=5,
         mesh_message_deliveries_threshold=3,
         mesh_message_deliveries_window=NEG_TICK),
    dict(time_in_mesh_quantum=SEC, mesh_message_deliveries_weight=-1,
         mesh_message_deliveries_decay=0.5, mesh_message_deliveries_cap=5,
         mesh_message_deliveries_threshold=3,
         mesh_message_deliveries_window=MS,
         mesh_message_deliveries_activation=MS),
    dict(time_in_mesh_quantum=SEC, mesh_failure_penalty_weight=1),
    dict(time_in_mesh_quantum=SEC, mesh_failure_penalty_weight=-1,
         mesh_failure_penalty_decay=-1),
    dict(time_in_mesh_quantum=SEC, mesh_failure_penalty_weight=-1,
         mesh_failure_penalty_decay=2),
    dict(time_in_mesh_quantum=SEC, invalid_message_deliveries_weight=1),
    dict(time_in_mesh_quantum=SEC, invalid_message_deliveries_weight=-1,
         invalid_message_deliveries_decay=-1),
    dict(time_in_mesh_quantum=SEC, invalid_message_deliveries_weight=-1,
         invalid_message_deliveries_decay=2),
]


@pytest.mark.parametrize("skip", [False, True])
@pytest.mark.parametrize("kwargs", INVALID_TOPIC)
def test_topic_params_invalid(skip, kwargs):
    with pytest.raises(ScoreParamsError):
        TopicScoreParams(skip_atomic_validation=skip, **kwargs).validate()


def test_topic_params_valid_atomic():
    params = full_topic()
    assert params.validate() is None
    assert params.mesh_message_deliveries_activation == SEC


def test_topic_params_non_atomic_incremental():
    params = TopicScoreParams()
    steps = [
        dict(skip_atomic_validation=True),
        dict(topic_weight=1),
        dict(time_in_mesh_weight=0.01, time_in_mesh_quantum=SEC, time_in_mesh_cap=10),
        dict(first_message_deliveries_weight=1, first_message_deliveries_decay=0.5,
             first_message_deliveries_cap=10),
        dict(mesh_message_deliveries_weight=-1, mesh_message_deliveries_decay=0.5,
             mesh_message_deliveries_cap=10, mesh_message_deliveries_threshold=5,
             mesh_message_deliveries_window=MS,
             mesh_message_deliveries_activation=SEC),
        dict(mesh_failure_penalty_weight=-1, mesh_failure_penalty_decay=0.5),
        dict(invalid_message_deliveries_weight=-1, invalid_message_deliveries_decay=0.5),
    ]
    for step in steps:
        for name, value in step.items():
            setattr(params, name, value)
        assert params.validate() is None
    assert params.invalid_message_deliveries_decay == 0.5


INVALID_PEER = [
    dict(topic_score_cap=-1, app_specific_score=app_score, decay_interval=SEC,
         decay_to_zero=0.01),
    dict(topic_score_cap=1, app_specific_score=app_score, decay_interval=SEC,
         decay_to_zero=0.01, ip_colocation_factor_weight=1),
    dict(topic_score_cap=1, app_specific_score=app_score, decay_interval=SEC,
         decay_to_zero=0.01, ip_colocation_factor_weight=-1,
         ip_colocation_factor_threshold=-1),
    dict(topic_score_cap=1, app_specific_score=app_score, decay_interval=MS,
         decay_to_zero=0.01, ip_colocation_factor_weight=-1,
         ip_colocation_factor_threshold=1),
    dict(topic_score_cap=1, app_specific_score=app_score, decay_interval=SEC,
         decay_to_zero=-1, ip_colocation_factor_weight=-1,
         ip_colocation_factor_threshold=1),
    dict(topic_score_cap=1, app_specific_score=app_score, decay_interval=SEC,
         decay_to_zero=2, ip_colocation_factor_weight=-1,
         ip_colocation_factor_threshold=1),
    dict(app_specific_score=app_score, decay_interval=SEC, decay_to_zero=0.01,
         behaviour_penalty_weight=1),
    dict(app_specific_score=app_score, decay_interval=SEC, decay_to_zero=0.01,
         behaviour_penalty_weight=-1),
    dict(app_specific_score=app_score, decay_interval=SEC, decay_to_zero=0.01,
         behaviour_penalty_weight=-1, behaviour_penalty_decay=2),
    dict(app_specific_score=app_score, decay_interval=SEC, decay_to_zero=INF,
         ip_colocation_factor_weight=-INF, ip_colocation_factor_threshold=1,
         behaviour_penalty_weight=INF, behaviour_penalty_decay=NAN),
]


@pytest.mark.parametrize("skip", [False, True])
@pytest.mark.parametrize("kwargs", INVALID_PEER)
def test_peer_params_invalid(skip, kwargs):
    with pytest.raises(ScoreParamsError):
        PeerScoreParams(skip_atomic_validation=skip, **kwargs).validate()


@pytest.mark.parametrize("skip", [False, True])
def test_peer_params_invalid_topic_numbers(skip):
    topic = TopicScoreParams(
        topic_weight=INF,
        time_in_mesh_weight=NAN,
        time_in_mesh_quantum=SEC,
        time_in_mesh_cap=10,
        first_message_deliveries_weight=INF,
        first_message_deliveries_decay=0.5,
        first_message_deliveries_cap=10,
        mesh_message_deliveries_weight=-INF,
        mesh_message_deliveries_decay=NAN,
        mesh_message_deliveries_cap=INF,
        mesh_message_deliveries_threshold=5,
        mesh_message_deliveries_window=MS,
        mesh_message_deliveries_activation=SEC,
        mesh_failure_penalty_weight=-1,
        mesh_failure_penalty_decay=NAN,
        invalid_message_deliveries_weight=INF,
        invalid_message_deliveries_decay=NAN,
    )
    params = PeerScoreParams(
        skip_atomic_validation=skip, topic_score_cap=1, app_specific_score=app_score,
        decay_interval=SEC, decay_to_zero=0.01, ip_colocation_factor_weight=-1,
        ip_colocation_factor_threshold=1, topics={"test": topic},
    )
    with pytest.raises(ScoreParamsError, match="topic test"):
        params.validate()


@pytest.mark.parametrize("skip", [False, True])
def test_peer_params_invalid_topic_weight(skip):
    params = PeerScoreParams(
        skip_atomic_validation=skip, topic_score_cap=1, app_specific_score=app_score,
        decay_interval=SEC, decay_to_zero=0.01, ip_colocation_factor_weight=-1,
        ip_colocation_factor_threshold=1, topics={"test": full_topic(topic_weight=-1)},
    )
    with pytest.raises(ScoreParamsError, match="invalid topic weight"):
        params.validate()


def test_peer_params_missing_app_score_atomic():
    params = PeerScoreParams(topic_score_cap=1, decay_interval=SEC, decay_to_zero=0.01)
    with pytest.raises(ScoreParamsError, match="application specific score"):
        params.validate()


def test_peer_params_missing_app_score_skip_fills_default():
    params = PeerScoreParams(
        skip_atomic_validation=True, topic_score_cap=1, decay_interval=SEC,
        decay_to_zero=0.01,
    )
    params.validate()
    assert params.app_specific_score("some-peer") == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(),
        dict(topic_score_cap=1),
        dict(topic_score_cap=1, topics={"test": full_topic()}),
    ],
)
def test_peer_params_valid_atomic(kwargs):
    values = dict(
        app_specific_score=app_score, decay_interval=SEC, decay_to_zero=0.01,
        ip_colocation_factor_weight=-1, ip_colocation_factor_threshold=1,
    )
    if "topics" not in kwargs:
        values.update(behaviour_penalty_weight=-1, behaviour_penalty_decay=0.999)
    values.update(kwargs)
    params = PeerScoreParams(**values)
    assert params.validate() is None
    assert params.decay_to_zero == 0.01


def _apply_and_validate(params, steps):
    for step in steps:
        for name, value in step.items():
            setattr(params, name, value)
        assert params.validate() is None


def test_peer_params_skip_atomic_incremental_from_empty():
    params = PeerScoreParams()
    _apply_and_validate(params, [
        dict(skip_atomic_validation=True),
        dict(app_specific_score=app_score),
        dict(decay_interval=SEC, decay_to_zero=0.01),
        dict(ip_colocation_factor_weight=-1, ip_colocation_factor_threshold=1),
        dict(behaviour_penalty_weight=-1, behaviour_penalty_decay=0.999),
    ])
    assert params.behaviour_penalty_decay == 0.999


def test_peer_params_skip_atomic_incremental_with_topics():
    params = PeerScoreParams(skip_atomic_validation=True, app_specific_score=app_score)
    _apply_and_validate(params, [
        dict(topic_score_cap=1),
        dict(decay_interval=SEC, decay_to_zero=0.01),
        dict(ip_colocation_factor_weight=-1, ip_colocation_factor_threshold=1),
        dict(behaviour_penalty_weight=-1, behaviour_penalty_decay=0.999),
        dict(topics={"test": full_topic()}),
    ])
    assert list(params.topics) == ["test"]


def test_score_parameter_decay_one_hour():
    assert score_parameter_decay(timedelta(hours=1)) == pytest.approx(
        0.9987216039048303, rel=1e-15
    )


def test_decay_with_base_single_tick_reaches_target():
    assert score_parameter_decay_with_base(SEC, SEC, 0.01) == 0.01


def test_decay_with_base_truncates_ticks():
    assert score_parameter_decay_with_base(
        timedelta(milliseconds=1500), SEC, 0.25
    ) == 0.25


def test_decay_compounds_to_target():
    factor = score_parameter_decay_with_base(timedelta(seconds=10), SEC, 0.01)
    assert factor ** 10 == pytest.approx(0.01)