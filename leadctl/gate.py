"""Quality gate and the deepening retry state machine.

The gate turns a scored result into a routing decision. Items that fall
short are either parked ``low_quality`` for the deepening stage or requeued
for a plain retry, depending on the stage.

Deepening runs in rounds. Each round tries a few strategies that have not
been tried yet, cycling back to the first once every strategy has been used.
Rounds that find nothing new count towards ``no_data_limit``; rounds overall
count towards the hard ``max_retries`` cap. Either limit ends in
``exhausted``.
"""
import json
from dataclasses import dataclass, field, replace
from typing import List, Mapping, Optional, Sequence, Tuple

from .config import cfg_float, cfg_int
from .models import LOW_QUALITY, Advance, Park, QueueItem, Requeue, Scored

ADVANCE = "advance"
RETRY = "retry"
EXHAUST = "exhaust"


@dataclass(frozen=True)
class QualityGate:
    threshold: float
    on_low: str = "deepen"

    def __post_init__(self):
        if self.on_low not in ("deepen", "retry"):
            raise ValueError(f"on_low must be 'deepen' or 'retry', got {self.on_low!r}")

    def passes(self, score: float) -> bool:
        return score >= self.threshold

    def decide(self, scored: Scored):
        if self.passes(scored.score):
            return Advance(payload=scored.payload, fields=scored.fields, quality=scored.score)
        reason = f"quality {scored.score:g} below threshold {self.threshold:g}"
        if self.on_low == "retry":
            return Requeue(reason)
        return Park(LOW_QUALITY, reason, dict(scored.fields))


@dataclass(frozen=True)
class DeepeningPolicy:
    no_data_limit: int = 3
    max_retries: int = 50
    strategy_batch: int = 2

    @classmethod
    def from_config(cls, cfg: Mapping[str, str]) -> "DeepeningPolicy":
        return cls(
            no_data_limit=max(1, cfg_int(cfg, "deepening.no_data_limit")),
            max_retries=max(1, cfg_int(cfg, "deepening.max_retries")),
            strategy_batch=max(1, cfg_int(cfg, "deepening.strategy_batch")),
        )


@dataclass(frozen=True)
class DeepeningState:
    sources_tried: List[str] = field(default_factory=list)
    no_data_rounds: int = 0
    retry_count: int = 0

    @classmethod
    def from_item(cls, item: QueueItem) -> "DeepeningState":
        try:
            tried = json.loads(item.get("sources_tried", "[]"))
        except (TypeError, ValueError):
            tried = []
        return cls(
            sources_tried=[str(s) for s in tried] if isinstance(tried, list) else [],
            no_data_rounds=int(item.get("no_data_rounds", 0)),
            retry_count=int(item.get("retry_count", 0)),
        )


@dataclass(frozen=True)
class Verdict:
    kind: str
    state: DeepeningState
    quality: float
    reason: Optional[str] = None


def plan_round(
    state: DeepeningState, strategies: Sequence[str], batch: int
) -> Tuple[List[str], DeepeningState]:
    """Pick the strategies for the next round and record them as tried."""
    if not strategies:
        return [], state
    tried = list(state.sources_tried)
    remaining = [s for s in strategies if s not in tried]
    if not remaining:
        tried = []
        remaining = list(strategies)
    chosen = remaining[:max(1, batch)]
    return chosen, replace(state, sources_tried=tried + chosen)


def settle_round(
    state: DeepeningState,
    policy: DeepeningPolicy,
    gate: QualityGate,
    *,
    found: int,
    score: Optional[float],
    best_so_far: float,
) -> Verdict:
    state = replace(state, retry_count=state.retry_count + 1)
    best = best_so_far
    if found <= 0:
        state = replace(state, no_data_rounds=state.no_data_rounds + 1)
        if state.no_data_rounds >= policy.no_data_limit:
            return Verdict(
                EXHAUST, state, best,
                f"No new data found for {state.no_data_rounds} consecutive deepening rounds "
                f"(tried: {', '.join(state.sources_tried) or 'none'})",
            )
    else:
        state = replace(state, no_data_rounds=0)
        if score is not None:
            best = max(best, score)
        if gate.passes(best):
            return Verdict(ADVANCE, state, best)
    if state.retry_count >= policy.max_retries:
        return Verdict(
            EXHAUST, state, best,
            f"Retry cap of {policy.max_retries} deepening rounds reached at quality {best:g}",
        )
    return Verdict(
        RETRY, state, best,
        f"quality {best:g} below threshold {gate.threshold:g} after round {state.retry_count}",
    )


def gate_for(cfg: Mapping[str, str], key: str, on_low: str) -> QualityGate:
    return QualityGate(threshold=cfg_float(cfg, key), on_low=on_low)
