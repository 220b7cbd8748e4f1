from __future__ import annotations

import os
from dataclasses import dataclass


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    default_llm_provider: str = os.getenv("DEFAULT_LLM_PROVIDER", "heuristic")
    default_model: str = os.getenv("DEFAULT_MODEL", "gpt-4o-mini")
    anthropic_api_key: str = os.getenv("ANTHROPIC_API_KEY", "")
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    anthropic_base_url: str = os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1")
    llm_timeout_seconds: int = _int("LLM_TIMEOUT_SECONDS", 25)

    redis_url: str = os.getenv("REDIS_URL", "")

    directory_store_path: str = os.getenv("DIRECTORY_STORE_PATH", "./data/professional_directory.json")
    session_store_path: str = os.getenv("SESSION_STORE_PATH", "./data/handoff_sessions.json")
    conversation_store_path: str = os.getenv("CONVERSATION_STORE_PATH", "./data/conversations.json")
    audit_log_path: str = os.getenv("AUDIT_LOG_PATH", "./data/audit.log.jsonl")

    pending_grace_seconds: int = _int("HANDOFF_PENDING_GRACE_SECONDS", 5 * 60)
    inactivity_threshold_seconds: int = _int("HANDOFF_INACTIVITY_SECONDS", 5 * 60)
    timeout_sweep_interval_seconds: float = _float("HANDOFF_TIMEOUT_SWEEP_INTERVAL", 60.0)
    inactivity_sweep_interval_seconds: float = _float("HANDOFF_INACTIVITY_SWEEP_INTERVAL", 60.0)
    quiet_hours_sweep_interval_seconds: float = _float("HANDOFF_QUIET_HOURS_SWEEP_INTERVAL", 300.0)
    timeout_sweep_batch_size: int = _int("HANDOFF_TIMEOUT_SWEEP_BATCH", 50)
    default_max_escalation_attempts: int = _int("HANDOFF_DEFAULT_MAX_ESCALATIONS", 3)
    match_limit: int = _int("HANDOFF_MATCH_LIMIT", 5)

    rate_limit_per_minute: int = _int("RATE_LIMIT_PER_MINUTE", 120)

    debug: bool = _bool("DEBUG", True)


SETTINGS = Settings()
