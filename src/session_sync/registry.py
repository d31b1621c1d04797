from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from session_sync.actions import ActionDispatcher
from session_sync.api_client import InstanceApiClient
from session_sync.catalog import SessionCatalog
from session_sync.errors import InstanceNotReadyError
from session_sync.events import SyncEvent
from session_sync.notifier import Notifier
from session_sync.permission_manager import PermissionManager
from session_sync.reconciler import EventReconciler
from session_sync.store.changes import ChangeEmitter
from session_sync.store.message_store import InstanceMessageStore
from session_sync.transport import EventTransport

ClientFactory = Callable[[str, str], InstanceApiClient]


@dataclass
class Instance:
    id: str
    base_url: str
    proxy_path: str
    store: InstanceMessageStore
    client: InstanceApiClient
    permissions: PermissionManager
    reconciler: EventReconciler
    actions: ActionDispatcher
    disconnected_reason: str | None = None

    @property
    def event_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.proxy_path.rstrip('/')}/event"


class InstanceRegistry:
    """Owns every live instance and the state scoped to it.

    ``create`` builds the store, client and reconciler for an instance and
    opens its event stream; ``destroy`` releases all of it. An instance whose
    stream is lost stays registered, marked disconnected, until
    ``acknowledge_disconnect`` is called.
    """

    def __init__(
        self,
        transport: EventTransport,
        *,
        emitter: ChangeEmitter | None = None,
        notifier: Notifier | None = None,
        catalog: SessionCatalog | None = None,
        client_factory: ClientFactory | None = None,
        auth_token: str | None = None,
        request_timeout_seconds: float = 30.0,
        clock: Callable[[], int] | None = None,
        default_agent: str = "",
        default_provider_id: str = "",
        default_model_id: str = "",
    ):
        self._transport = transport
        self._emitter = emitter or ChangeEmitter()
        self._notifier = notifier or Notifier()
        self._catalog = catalog
        self._client_factory = client_factory or self._build_client
        self._auth_token = auth_token
        self._request_timeout_seconds = request_timeout_seconds
        self._clock = clock
        self._default_agent = default_agent
        self._default_provider_id = default_provider_id
        self._default_model_id = default_model_id
        self._instances: dict[str, Instance] = {}
        transport.on_event = self._on_event
        transport.on_connection_lost = self._on_connection_lost

    @property
    def emitter(self) -> ChangeEmitter:
        return self._emitter

    @property
    def transport(self) -> EventTransport:
        return self._transport

    def create(self, instance_id: str, base_url: str, proxy_path: str = "", *, connect: bool = True) -> Instance:
        existing = self._instances.get(instance_id)
        if existing is not None:
            return existing

        store = InstanceMessageStore(instance_id, emitter=self._emitter, clock=self._clock)
        client = self._client_factory(base_url, proxy_path)
        permissions = PermissionManager(store, client)
        actions = ActionDispatcher(
            store,
            client,
            default_agent=self._default_agent,
            default_provider_id=self._default_provider_id,
            default_model_id=self._default_model_id,
        )
        reconciler = EventReconciler(
            store,
            permissions,
            notifier=self._notifier,
            reload_session=lambda session_id: actions.load_messages(session_id, force=True),
        )
        instance = Instance(
            id=instance_id,
            base_url=base_url,
            proxy_path=proxy_path,
            store=store,
            client=client,
            permissions=permissions,
            reconciler=reconciler,
            actions=actions,
        )
        self._instances[instance_id] = instance

        if self._catalog is not None:
            self._catalog.save_instance(instance_id, base_url, proxy_path)
            seeded = self._catalog.seed_store(store)
            logger.bind(instance_id=instance_id).info(f"Seeded {seeded} session(s) from catalog")

        if connect:
            self._transport.connect(instance_id, instance.event_url)
        logger.bind(instance_id=instance_id).info(f"Instance created: {instance_id} ({base_url}{proxy_path})")
        return instance

    def get(self, instance_id: str) -> Instance | None:
        return self._instances.get(instance_id)

    def require(self, instance_id: str) -> Instance:
        instance = self._instances.get(instance_id)
        if instance is None or instance.disconnected_reason is not None:
            raise InstanceNotReadyError(instance_id)
        return instance

    def instances(self) -> list[Instance]:
        return list(self._instances.values())

    def disconnected(self) -> list[Instance]:
        return [instance for instance in self._instances.values() if instance.disconnected_reason is not None]

    async def destroy(self, instance_id: str) -> bool:
        instance = self._instances.pop(instance_id, None)
        if instance is None:
            return False
        self._transport.disconnect(instance_id)
        await instance.reconciler.drain()
        instance.permissions.clear()
        instance.store.clear_instance()
        await instance.client.aclose()
        logger.bind(instance_id=instance_id).info(f"Instance destroyed: {instance_id}")
        return True

    async def acknowledge_disconnect(self, instance_id: str) -> bool:
        instance = self._instances.get(instance_id)
        if instance is None or instance.disconnected_reason is None:
            return False
        return await self.destroy(instance_id)

    async def close(self) -> None:
        for instance_id in list(self._instances):
            await self.destroy(instance_id)
        await self._transport.close()

    def save_catalog(self, instance_id: str) -> int:
        instance = self._instances.get(instance_id)
        if self._catalog is None or instance is None:
            return 0
        return self._catalog.save_sessions(instance_id, instance.store.list_sessions())

    def _build_client(self, base_url: str, proxy_path: str) -> InstanceApiClient:
        return InstanceApiClient(
            base_url,
            proxy_path=proxy_path,
            auth_token=self._auth_token,
            timeout=self._request_timeout_seconds,
        )

    def _on_event(self, instance_id: str, event: SyncEvent) -> None:
        instance = self._instances.get(instance_id)
        if instance is None:
            logger.bind(instance_id=instance_id).debug(f"Dropping event for unknown instance {instance_id}")
            return
        instance.reconciler.apply(event)

    def _on_connection_lost(self, instance_id: str, reason: str) -> None:
        instance = self._instances.get(instance_id)
        if instance is None:
            return
        instance.disconnected_reason = reason
        self._notifier.alert(instance_id, f"Instance disconnected: {reason}", title="Connection lost")
