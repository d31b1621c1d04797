from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class RuntimeEnv:
    server_url: str | None
    auth_token: str | None


@dataclass
class AppConfig:
    server_url: str
    proxy_path: str
    instance_id: str
    request_timeout_seconds: float
    reconnect_max_attempts: int
    reconnect_base_delay_seconds: float
    reconnect_max_delay_seconds: float
    show_reasoning: bool
    default_agent: str
    default_provider_id: str
    default_model_id: str
    catalog_enabled: bool
    catalog_db_path: str
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_app_config(config: dict, env: RuntimeEnv | None = None) -> AppConfig:
    server_url = str(config.get("ServerUrl", "http://127.0.0.1:9898")).strip()
    if env is not None and env.server_url:
        server_url = env.server_url.strip()
    proxy_path = str(config.get("ProxyPath", "")).strip()
    return AppConfig(
        server_url=server_url.rstrip("/"),
        proxy_path=proxy_path,
        instance_id=str(config.get("InstanceId", "")).strip() or "default",
        request_timeout_seconds=float(config.get("RequestTimeoutSeconds", 30.0)),
        reconnect_max_attempts=max(1, int(config.get("ReconnectMaxAttempts", 3))),
        reconnect_base_delay_seconds=max(0.0, float(config.get("ReconnectBaseDelaySeconds", 1.0))),
        reconnect_max_delay_seconds=max(0.0, float(config.get("ReconnectMaxDelaySeconds", 5.0))),
        show_reasoning=_to_bool(config.get("ShowReasoning", False), default=False),
        default_agent=str(config.get("DefaultAgent", "")).strip(),
        default_provider_id=str(config.get("DefaultProviderId", "")).strip(),
        default_model_id=str(config.get("DefaultModelId", "")).strip(),
        catalog_enabled=_to_bool(config.get("CatalogEnabled", True), default=True),
        catalog_db_path=str(config.get("CatalogDbPath", ".session_sync/catalog.db")),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        server_url=os.environ.get("SESSION_SYNC_SERVER_URL"),
        auth_token=os.environ.get("SESSION_SYNC_AUTH_TOKEN"),
    )
