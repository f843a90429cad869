from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field

from .mqtt_topics import DEFAULT_NAMESPACE
from .push import EXPO_PUSH_URL


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    # Storage
    db_path: str = ":memory:"
    catalog_path: Optional[str] = None

    # MQTT
    mqtt_host: str = "127.0.0.1"
    mqtt_port: int = Field(default=1883, ge=1, le=65535)
    namespace: str = DEFAULT_NAMESPACE

    # Core
    dispatch_workers: int = Field(default=2, ge=1)
    allocation_retries: int = Field(default=3, ge=1)
    code_retries: int = Field(default=5, ge=1)

    # Push
    push_enabled: bool = True
    push_url: str = EXPO_PUSH_URL
    push_timeout_s: float = Field(default=10.0, gt=0)


def load_settings() -> Settings:
    catalog_path = os.getenv("SHOPQUEUE_CATALOG_PATH") or None
    return Settings(
        db_path=_env_str("SHOPQUEUE_DB_PATH", ":memory:"),
        catalog_path=catalog_path,
        mqtt_host=_env_str("SHOPQUEUE_MQTT_HOST", "127.0.0.1"),
        mqtt_port=_env_int("SHOPQUEUE_MQTT_PORT", 1883),
        namespace=_env_str("SHOPQUEUE_NAMESPACE", DEFAULT_NAMESPACE),
        dispatch_workers=_env_int("SHOPQUEUE_DISPATCH_WORKERS", 2),
        allocation_retries=_env_int("SHOPQUEUE_ALLOCATION_RETRIES", 3),
        code_retries=_env_int("SHOPQUEUE_CODE_RETRIES", 5),
        push_enabled=_env_bool("SHOPQUEUE_PUSH_ENABLED", True),
        push_url=_env_str("SHOPQUEUE_PUSH_URL", EXPO_PUSH_URL),
        push_timeout_s=_env_float("SHOPQUEUE_PUSH_TIMEOUT_S", 10.0),
    )
