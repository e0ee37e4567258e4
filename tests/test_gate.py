import pytest

from leadctl.gate import (
    ADVANCE, EXHAUST, RETRY, DeepeningPolicy, DeepeningState, QualityGate,
    plan_round, settle_round,
)
from leadctl.models import LOW_QUALITY, Advance, Park, QueueItem, Requeue, Scored


@pytest.mark.parametrize("score,expected", [(7.0, Park), (7.99, Park), (8.0, Advance), (9.5, Advance)])
def test_gate_boundary_is_inclusive(score, expected):
    outcome = QualityGate(8).decide(Scored(score, payload={"p": 1}, fields={"current_quality": score}))
    assert isinstance(outcome, expected)
    if isinstance(outcome, Park):
        assert outcome.status == LOW_QUALITY
        assert outcome.fields == {"current_quality": score}
    else:
        assert outcome.quality == score
        assert outcome.payload == {"p": 1}


def test_gate_retry_mode_requeues():
    outcome = QualityGate(7, on_low="retry").decide(Scored(6))
    assert isinstance(outcome, Requeue)
    assert "below threshold" in outcome.reason


def test_gate_rejects_unknown_mode():
    with pytest.raises(ValueError):
        QualityGate(7, on_low="shrug")


def test_plan_round_cycles_through_strategies():
    names = ["a", "b", "c"]
    state = DeepeningState()
    chosen, state = plan_round(state, names, 2)
    assert chosen == ["a", "b"]
    chosen, state = plan_round(state, names, 2)
    assert chosen == ["c"]
    assert state.sources_tried == ["a", "b", "c"]
    chosen, state = plan_round(state, names, 2)
    assert chosen == ["a", "b"]
    assert state.sources_tried == ["a", "b"]


def test_exhausts_exactly_at_no_data_limit():
    policy = DeepeningPolicy(no_data_limit=3, max_retries=50)
    gate = QualityGate(8)
    state = DeepeningState()
    kinds = []
    for _ in range(3):
        verdict = settle_round(state, policy, gate, found=0, score=None, best_so_far=4)
        kinds.append(verdict.kind)
        state = verdict.state
    assert kinds == [RETRY, RETRY, EXHAUST]
    assert state.no_data_rounds == 3
    assert state.retry_count == 3
    assert verdict.reason
    assert verdict.quality == 4


def test_data_round_resets_no_data_counter():
    policy = DeepeningPolicy(no_data_limit=3)
    gate = QualityGate(8)
    state = DeepeningState(no_data_rounds=2, retry_count=2)
    verdict = settle_round(state, policy, gate, found=2, score=6, best_so_far=5)
    assert verdict.kind == RETRY
    assert verdict.state.no_data_rounds == 0
    assert verdict.quality == 6


def test_best_score_is_kept():
    policy = DeepeningPolicy()
    gate = QualityGate(8)
    worse = settle_round(DeepeningState(), policy, gate, found=1, score=3, best_so_far=7)
    assert worse.kind == RETRY
    assert worse.quality == 7
    better = settle_round(DeepeningState(), policy, gate, found=1, score=9, best_so_far=6)
    assert better.kind == ADVANCE
    assert better.quality == 9


def test_retry_cap_exhausts():
    policy = DeepeningPolicy(no_data_limit=10, max_retries=2)
    gate = QualityGate(8)
    verdict = settle_round(DeepeningState(retry_count=1), policy, gate,
                           found=1, score=5, best_so_far=5)
    assert verdict.kind == EXHAUST
    assert "Retry cap" in verdict.reason


def test_state_from_item():
    item = QueueItem(
        id=1, queue="research_queue", status=LOW_QUALITY,
        row={"sources_tried": '["news_search"]', "no_data_rounds": 1, "retry_count": 4},
    )
    state = DeepeningState.from_item(item)
    assert state == DeepeningState(["news_search"], 1, 4)

    broken = QueueItem(id=2, queue="research_queue", status=LOW_QUALITY,
                       row={"sources_tried": "not json"})
    assert DeepeningState.from_item(broken) == DeepeningState()


def test_policy_from_config():
    policy = DeepeningPolicy.from_config({"deepening.no_data_limit": "4",
                                          "deepening.max_retries": "oops"})
    assert policy.no_data_limit == 4
    assert policy.max_retries == 50
