"""
Pipeline stage configuration.

Single source of truth for the lease, extraction, prompt-size, and retry
tunables.  Loaded once per stage invocation and passed explicitly to every
stage function.
"""
from __future__ import annotations

import os
from dataclasses import dataclass

HANDOFF_MODE_HTTP = "http"
HANDOFF_MODE_INPROCESS = "inprocess"


@dataclass(frozen=True)
class WorkerConfig:
    """Immutable stage configuration."""

    # --- Locking ---
    debounce_seconds: float = 2.0
    lease_timeout_minutes: float = 5.0
    # Covers ai_max_attempts calls at the provider timeout plus the retry pauses.
    summary_lease_timeout_minutes: float = 20.0

    # --- File extraction ---
    max_file_bytes: int = 10 * 1024 * 1024
    signed_url_ttl_seconds: int = 300
    file_ready_timeout_seconds: float = 60.0
    file_poll_interval_seconds: float = 2.0

    # --- Prompt assembly ---
    max_doc_chars: int = 4000
    max_form_chars: int = 8000

    # --- External AI retry ---
    ai_max_attempts: int = 3
    ai_backoff_seconds: float = 1.0
    ai_final_pause_seconds: float = 60.0

    # --- Misc ---
    error_message_max_chars: int = 500
    handoff_timeout_seconds: float = 30.0
    handoff_mode: str = HANDOFF_MODE_HTTP  # http | inprocess

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - [PREVISIT] - %(levelname)s - %(message)s"


def load_worker_config() -> WorkerConfig:
    """Build WorkerConfig from environment variables (with defaults)."""
    def _float(key: str, default: float) -> float:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            return float(raw)
        except (TypeError, ValueError):
            return default

    def _int(key: str, default: int) -> int:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except (TypeError, ValueError):
            return default

    return WorkerConfig(
        debounce_seconds=_float("PIPELINE_DEBOUNCE_SECONDS", 2.0),
        lease_timeout_minutes=_float("PIPELINE_LEASE_TIMEOUT_MINUTES", 5.0),
        summary_lease_timeout_minutes=_float("PIPELINE_SUMMARY_LEASE_TIMEOUT_MINUTES", 20.0),
        max_file_bytes=_int("PIPELINE_MAX_FILE_BYTES", 10 * 1024 * 1024),
        signed_url_ttl_seconds=_int("PIPELINE_SIGNED_URL_TTL", 300),
        file_ready_timeout_seconds=_float("PIPELINE_FILE_READY_TIMEOUT", 60.0),
        file_poll_interval_seconds=_float("PIPELINE_FILE_POLL_INTERVAL", 2.0),
        max_doc_chars=_int("PIPELINE_MAX_DOC_CHARS", 4000),
        max_form_chars=_int("PIPELINE_MAX_FORM_CHARS", 8000),
        ai_max_attempts=max(1, _int("PIPELINE_AI_MAX_ATTEMPTS", 3)),
        ai_backoff_seconds=_float("PIPELINE_AI_BACKOFF_SECONDS", 1.0),
        ai_final_pause_seconds=_float("PIPELINE_AI_FINAL_PAUSE_SECONDS", 60.0),
        error_message_max_chars=_int("PIPELINE_ERROR_MAX_CHARS", 500),
        handoff_timeout_seconds=_float("PIPELINE_HANDOFF_TIMEOUT", 30.0),
        handoff_mode=(os.getenv("PIPELINE_HANDOFF_MODE") or HANDOFF_MODE_HTTP).strip().lower(),
        log_level=os.getenv("PIPELINE_LOG_LEVEL", "INFO"),
        log_format=os.getenv(
            "PIPELINE_LOG_FORMAT",
            "%(asctime)s - [PREVISIT] - %(levelname)s - %(message)s",
        ),
    )
