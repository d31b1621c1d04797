from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from session_sync.app_config import AppConfig, RuntimeEnv
from session_sync.catalog import SessionCatalog
from session_sync.logging_config import setup_logging
from session_sync.notifier import RecordingNotifier
from session_sync.registry import Instance, InstanceRegistry
from session_sync.transport import EventTransport


@dataclass
class AppRuntime:
    config: AppConfig
    registry: InstanceRegistry
    instance: Instance
    catalog: SessionCatalog | None
    notifier: RecordingNotifier
    log_descriptions: list[str]

    async def close(self) -> None:
        self.registry.save_catalog(self.instance.id)
        await self.registry.close()
        if self.catalog is not None:
            self.catalog.close()


async def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    catalog: SessionCatalog | None = None
    if app.catalog_enabled:
        db_path = Path(app.catalog_db_path)
        if not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        catalog = SessionCatalog(str(db_path))

    headers: dict[str, str] = {}
    if env.auth_token:
        headers["Authorization"] = f"Bearer {env.auth_token}"

    transport = EventTransport(
        headers=headers,
        max_attempts=app.reconnect_max_attempts,
        base_delay=app.reconnect_base_delay_seconds,
        max_delay=app.reconnect_max_delay_seconds,
    )
    notifier = RecordingNotifier()
    registry = InstanceRegistry(
        transport,
        notifier=notifier,
        catalog=catalog,
        auth_token=env.auth_token,
        request_timeout_seconds=app.request_timeout_seconds,
        default_agent=app.default_agent,
        default_provider_id=app.default_provider_id,
        default_model_id=app.default_model_id,
    )
    instance = registry.create(app.instance_id, app.server_url, app.proxy_path)

    return AppRuntime(
        config=app,
        registry=registry,
        instance=instance,
        catalog=catalog,
        notifier=notifier,
        log_descriptions=log_descriptions,
    )
