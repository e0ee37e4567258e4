import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

DB_ENV_VAR = "LEADCTL_DB"
DEFAULT_DB_FILE = "leadctl.db"


def db_path_from_env() -> str:
    return os.environ.get(DB_ENV_VAR, DEFAULT_DB_FILE)


@dataclass(frozen=True)
class StageSpec:
    """Static shape of one pipeline stage: which queue it drains and where
    its work goes next. Everything tunable lives in the config table."""

    name: str
    queue: str
    next_queue: Optional[str] = None
    ready_status: str = "pending"
    hold_status: Optional[str] = "processing"
    gate_key: Optional[str] = None       # config key holding the gate threshold
    on_low: str = "deepen"               # deepen | retry
    advance_status_key: Optional[str] = None


STAGES: Dict[str, StageSpec] = {
    "discovery": StageSpec(
        name="discovery",
        queue="prospect_queue",
        next_queue="research_queue",
    ),
    "research": StageSpec(
        name="research",
        queue="research_queue",
        next_queue="draft_queue",
        gate_key="research.target_quality",
        on_low="deepen",
    ),
    # Deepening leases low_quality research rows in place; they keep their status
    # while held so a crashed deepening worker never hands them back to research.
    "deepening": StageSpec(
        name="deepening",
        queue="research_queue",
        next_queue="draft_queue",
        ready_status="low_quality",
        hold_status=None,
        gate_key="research.target_quality",
        on_low="deepen",
    ),
    "drafting": StageSpec(
        name="drafting",
        queue="draft_queue",
        next_queue="email_queue",
        gate_key="drafting.min_quality",
        on_low="retry",
        advance_status_key="delivery.require_approval",
    ),
    "delivery": StageSpec(
        name="delivery",
        queue="email_queue",
    ),
    "replies": StageSpec(
        name="replies",
        queue="reply_queue",
    ),
}

QUEUE_TABLES = ("prospect_queue", "research_queue", "draft_queue", "email_queue", "reply_queue")
FORWARD_QUEUES = ("prospect_queue", "research_queue", "draft_queue", "email_queue")

_STAGE_DEFAULTS = {
    #              poll  lease batch attempts order_by
    "discovery": ("30", "300", "5", "3", "priority DESC, created_at ASC"),
    "research":  ("10", "600", "1", "3", "priority DESC, created_at ASC"),
    "deepening": ("30", "900", "1", "3", "current_quality DESC, created_at ASC"),
    "drafting":  ("5", "300", "1", "3", "priority DESC, created_at ASC"),
    "delivery":  ("10", "120", "5", "3", "priority DESC, created_at ASC"),
    "replies":   ("30", "120", "5", "3", "created_at ASC"),
}

DEFAULT_CONFIG = {
    "research.target_quality": "8",
    "drafting.min_quality": "7",
    "delivery.require_approval": "true",
    "delivery.daily_limit": "200",
    "deepening.no_data_limit": "3",
    "deepening.max_retries": "50",
    "deepening.retry_delay_seconds": "60",
    "deepening.strategy_batch": "2",
    "deepening.strategies": "leadctl.deepening:DEFAULT_STRATEGIES",
    "deepening.rescore": "leadctl.handlers:rescore_research",
    "heartbeat.interval_seconds": "30",
    "heartbeat.stale_after_seconds": "60",
    "health.interval_seconds": "60",
    "health.busy_backlog": "50",
    "health.stressed_backlog": "100",
    "supervisor.restart_delay_seconds": "5",
    "supervisor.restart_delay_max_seconds": "300",
    "supervisor.stable_after_seconds": "60",
    "supervisor.max_rapid_restarts": "5",
    "supervisor.shutdown_grace_seconds": "30",
}

for _stage, (_poll, _lease, _batch, _attempts, _order) in _STAGE_DEFAULTS.items():
    DEFAULT_CONFIG[f"{_stage}.poll_seconds"] = _poll
    DEFAULT_CONFIG[f"{_stage}.lease_seconds"] = _lease
    DEFAULT_CONFIG[f"{_stage}.batch_size"] = _batch
    DEFAULT_CONFIG[f"{_stage}.max_attempts"] = _attempts
    DEFAULT_CONFIG[f"{_stage}.order_by"] = _order
    DEFAULT_CONFIG[f"{_stage}.handler"] = f"leadctl.handlers:{_stage}"
    DEFAULT_CONFIG[f"{_stage}.autostart"] = "true"

DEFAULT_CONFIG["deepening.handler"] = "leadctl.deepening:make_deepener"

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

_TRUE = {"1", "true", "yes", "on"}


def as_bool(value) -> bool:
    return str(value).strip().lower() in _TRUE


def _cfg(cfg: Mapping[str, str], key: str) -> str:
    value = cfg.get(key)
    return DEFAULT_CONFIG[key] if value is None else value


def cfg_int(cfg: Mapping[str, str], key: str) -> int:
    try:
        return int(_cfg(cfg, key))
    except ValueError:
        return int(DEFAULT_CONFIG[key])


def cfg_float(cfg: Mapping[str, str], key: str) -> float:
    try:
        return float(_cfg(cfg, key))
    except ValueError:
        return float(DEFAULT_CONFIG[key])


def cfg_bool(cfg: Mapping[str, str], key: str) -> bool:
    return as_bool(_cfg(cfg, key))


def cfg_str(cfg: Mapping[str, str], key: str) -> str:
    return _cfg(cfg, key)


@dataclass(frozen=True)
class StageSettings:
    spec: StageSpec
    poll_seconds: float
    lease_seconds: int
    batch_size: int
    max_attempts: int
    order_by: str
    handler: str
    autostart: bool
    threshold: Optional[float] = None
    advance_status: str = "pending"
    daily_limit: Optional[int] = None    # sends per UTC day; None or 0 means no cap

    @property
    def name(self) -> str:
        return self.spec.name


def stage_settings(cfg: Mapping[str, str], stage: str) -> StageSettings:
    if stage not in STAGES:
        from .models import UnknownStage
        raise UnknownStage(f"Unknown stage '{stage}'. Known: {', '.join(STAGES)}")
    spec = STAGES[stage]
    threshold = cfg_float(cfg, spec.gate_key) if spec.gate_key else None
    daily_limit = None
    if f"{stage}.daily_limit" in DEFAULT_CONFIG:
        daily_limit = max(0, cfg_int(cfg, f"{stage}.daily_limit"))
    advance_status = "pending"
    if spec.advance_status_key and cfg_bool(cfg, spec.advance_status_key):
        advance_status = "awaiting_approval"
    return StageSettings(
        spec=spec,
        poll_seconds=max(0.05, cfg_float(cfg, f"{stage}.poll_seconds")),
        lease_seconds=max(1, cfg_int(cfg, f"{stage}.lease_seconds")),
        batch_size=max(1, cfg_int(cfg, f"{stage}.batch_size")),
        max_attempts=max(1, cfg_int(cfg, f"{stage}.max_attempts")),
        order_by=cfg_str(cfg, f"{stage}.order_by"),
        handler=cfg_str(cfg, f"{stage}.handler"),
        autostart=cfg_bool(cfg, f"{stage}.autostart"),
        threshold=threshold,
        advance_status=advance_status,
        daily_limit=daily_limit,
    )
