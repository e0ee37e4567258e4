"""Deepening stage: re-research low_quality items with alternate strategies.

A strategy is ``strategy(item) -> list`` of new records (empty when it found
nothing). The built-in strategies harvest raw findings that collectors have
attached to the item under ``payload["sources"][<strategy name>]``; real
crawlers and search clients replace them via ``deepening.strategies``.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping

import structlog

from .config import cfg_int, cfg_str
from .gate import (
    ADVANCE, EXHAUST, DeepeningPolicy, DeepeningState, plan_round, settle_round, gate_for,
)
from .handlers import draft_payload, load_object
from .models import EXHAUSTED, LOW_QUALITY, Advance, Park, QueueItem
from .utils import now_iso, to_iso

logger = structlog.get_logger(__name__)

Strategy = Callable[[QueueItem], List[Any]]


def _harvest(name: str) -> Strategy:
    def strategy(item: QueueItem) -> List[Any]:
        sources = item.payload.get("sources") or {}
        records = sources.get(name) or []
        merged = {
            (f.get("source"), f.get("text"))
            for f in item.payload.get("findings") or [] if isinstance(f, dict)
        }
        return [r for r in records if (name, str(r)) not in merged]
    strategy.__name__ = name
    return strategy


DEFAULT_STRATEGIES: Dict[str, Strategy] = {
    name: _harvest(name)
    for name in (
        "website_pages",
        "news_search",
        "press_releases",
        "jobs_and_careers",
        "executives",
        "web_search",
    )
}


class Deepener:
    def __init__(self, strategies: Mapping[str, Strategy], rescore, policy: DeepeningPolicy, gate):
        self.strategies = dict(strategies)
        self.rescore = rescore
        self.policy = policy
        self.gate = gate

    def __call__(self, item: QueueItem):
        state = DeepeningState.from_item(item)
        chosen, state = plan_round(state, list(self.strategies), self.policy.strategy_batch)
        log = logger.bind(item_id=item.id, company=item.company_name, round=state.retry_count + 1)

        new_data: Dict[str, List[Any]] = {}
        for name in chosen:
            try:
                records = self.strategies[name](item)
            except Exception as e:
                # A failing strategy counts as finding nothing.
                log.warning("strategy_failed", strategy=name, error=str(e))
                continue
            if records:
                new_data[name] = list(records)
        found = sum(len(v) for v in new_data.values())
        score = self.rescore(item, new_data) if found else None

        best_so_far = float(item.get("current_quality", 0) or 0)
        verdict = settle_round(
            state, self.policy, self.gate,
            found=found, score=score, best_so_far=best_so_far,
        )
        findings = list(item.payload.get("findings") or [])
        for source, records in new_data.items():
            findings.extend({"source": source, "text": str(r)} for r in records)

        fields = {
            "retry_count": verdict.state.retry_count,
            "sources_tried": verdict.state.sources_tried,
            "no_data_rounds": verdict.state.no_data_rounds,
            "last_retry_at": now_iso(),
            "current_quality": verdict.quality,
            "findings": findings,
        }
        log.info("deepening_round", strategies=chosen, found=found,
                 quality=verdict.quality, verdict=verdict.kind)

        if verdict.kind == ADVANCE:
            research = dict(item.payload)
            research["findings"] = findings
            return Advance(
                payload=draft_payload(item, research, verdict.quality),
                fields=fields,
                quality=verdict.quality,
            )
        if verdict.kind == EXHAUST:
            fields["exhaustion_reason"] = verdict.reason
            return Park(EXHAUSTED, verdict.reason, fields)
        return Park(LOW_QUALITY, verdict.reason, fields)


def make_deepener(cfg: Mapping[str, str]) -> Deepener:
    strategies = load_object(cfg_str(cfg, "deepening.strategies"))
    if callable(strategies):
        strategies = strategies(cfg)
    return Deepener(
        strategies=strategies,
        rescore=load_object(cfg_str(cfg, "deepening.rescore")),
        policy=DeepeningPolicy.from_config(cfg),
        gate=gate_for(cfg, "research.target_quality", "deepen"),
    )


def eligibility(cfg: Mapping[str, str]):
    """Extra acquire filter for the deepening stage: respect the per-item
    cool-down between rounds and never pick up rows already at the cap."""
    policy = DeepeningPolicy.from_config(cfg)
    delay = max(0, cfg_int(cfg, "deepening.retry_delay_seconds"))
    where = ("retry_count < :max_retries"
             " AND (last_retry_at IS NULL OR last_retry_at <= :retry_before)")

    def params(now: datetime) -> Dict[str, Any]:
        return {
            "max_retries": policy.max_retries,
            "retry_before": to_iso(now - timedelta(seconds=delay)),
        }
    return where, params
