"""Environment-driven configuration for the WhatsApp session worker."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from waworker.transitions import LifecyclePolicy


DEFAULT_AUTH_DIR = "./auth"
FALLBACK_AUTH_DIR = "/tmp/wa-auth"
DEFAULT_PORT = 9001


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


@lru_cache(maxsize=32)
def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        value = float(cleaned)
    except ValueError:
        return default
    return value if value >= 0 else default


def _resolve_auth_dir(raw: str | None) -> Path:
    candidate = Path(raw or DEFAULT_AUTH_DIR)
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path(FALLBACK_AUTH_DIR)
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


@dataclass(frozen=True, slots=True)
class WhatsAppConfig:
    auth_dir: Path
    provisioning_timeout: float
    reconnect_delay: float
    max_reconnect_attempts: int
    settle_delay: float
    webhook_url: str | None
    webhook_token: str | None
    transport: str
    port: int

    def policy(self) -> "LifecyclePolicy":
        from waworker.transitions import LifecyclePolicy

        return LifecyclePolicy(
            provisioning_timeout=self.provisioning_timeout,
            reconnect_delay=self.reconnect_delay,
            max_reconnect_attempts=self.max_reconnect_attempts,
            settle_delay=self.settle_delay,
        )


def whatsapp_config() -> WhatsAppConfig:
    auth_dir = _resolve_auth_dir(os.getenv("WA_AUTH_DIR"))

    max_attempts = _coerce_int(os.getenv("WA_MAX_RECONNECT_ATTEMPTS"), 3)
    if max_attempts < 0:
        max_attempts = 0

    webhook_url = (os.getenv("WA_WEBHOOK_URL") or "").strip().rstrip("/") or None
    webhook_token = (os.getenv("WEBHOOK_SECRET") or "").strip() or None

    return WhatsAppConfig(
        auth_dir=auth_dir,
        provisioning_timeout=_parse_duration(os.getenv("WA_QR_TIMEOUT"), default=300.0),
        reconnect_delay=_parse_duration(os.getenv("WA_RECONNECT_DELAY"), default=5.0),
        max_reconnect_attempts=max_attempts,
        settle_delay=_parse_duration(os.getenv("WA_SETTLE_DELAY"), default=0.5),
        webhook_url=webhook_url,
        webhook_token=webhook_token,
        transport=(os.getenv("WA_TRANSPORT") or "").strip(),
        port=_coerce_int(os.getenv("WAWORKER_PORT"), DEFAULT_PORT),
    )


__all__ = ["WhatsAppConfig", "whatsapp_config"]
