# fitbit_sync/infrastructure/di_container.py
"""Dependency injection container for the sync engine's services."""
from __future__ import annotations

from functools import lru_cache
import inspect
from typing import Any, Callable, Dict, Type

from fitbit_sync.application.orchestrator import SyncOrchestrator
from fitbit_sync.config import settings as app_settings
from fitbit_sync.domain.dedup_ledger import DedupLedger
from fitbit_sync.infrastructure.fitbit_auth import FitbitAuthManager
from fitbit_sync.infrastructure.fitbit_client import FitbitAPIClient
from fitbit_sync.infrastructure.fitbit_oauth_helper import LoopbackAuthorizer
from fitbit_sync.infrastructure.postgres_store import PostgresHealthStore
from fitbit_sync.infrastructure.sync_state_store import JsonFileSyncStateStore
from fitbit_sync.infrastructure.token_storage import JsonFileSecretStore

ServiceType = Type[Any]
Factory = Callable[["Container"], Any]


class Container:
    """Minimal service container supporting factories and instances."""

    def __init__(self) -> None:
        self._factories: Dict[ServiceType, Factory] = {}
        self._instances: Dict[ServiceType, Any] = {}

    def register(
        self,
        service: ServiceType,
        *,
        factory: Factory | None = None,
        instance: Any | None = None,
    ) -> None:
        if instance is not None:
            self._instances[service] = instance
            self._factories.pop(service, None)
            return
        if factory is None:
            raise ValueError("Either factory or instance must be provided.")
        self._factories[service] = factory
        self._instances.pop(service, None)

    def resolve(self, service: ServiceType) -> Any:
        if service in self._instances:
            return self._instances[service]
        try:
            factory = self._factories[service]
        except KeyError as exc:
            raise KeyError(f"No provider registered for {service!r}") from exc
        # One instance per container: the ledger and the run guard must be shared.
        instance = factory(self)
        self._instances[service] = instance
        return instance


def _register_defaults(container: Container) -> None:
    """Register the production service graph with the container."""
    container.register(
        JsonFileSecretStore,
        factory=lambda _c: JsonFileSecretStore(app_settings.token_path),
    )
    container.register(
        JsonFileSyncStateStore,
        factory=lambda _c: JsonFileSyncStateStore(app_settings.state_path),
    )
    container.register(
        FitbitAuthManager,
        factory=lambda c: FitbitAuthManager(
            c.resolve(JsonFileSecretStore),
            authorizer=LoopbackAuthorizer(),
            client_secret=app_settings.FITBIT_CLIENT_SECRET,
        ),
    )
    container.register(
        FitbitAPIClient,
        factory=lambda c: FitbitAPIClient(c.resolve(FitbitAuthManager), app_settings.FITBIT_CLIENT_ID),
    )
    container.register(PostgresHealthStore, factory=lambda _c: PostgresHealthStore())
    container.register(
        DedupLedger,
        factory=lambda c: DedupLedger(
            c.resolve(JsonFileSyncStateStore),
            capacity=app_settings.SYNC_SEEN_CAPACITY,
            trim_to=app_settings.SYNC_SEEN_TRIM_TO,
        ),
    )
    container.register(
        SyncOrchestrator,
        factory=lambda c: SyncOrchestrator(
            source=c.resolve(FitbitAPIClient),
            store=c.resolve(PostgresHealthStore),
            ledger=c.resolve(DedupLedger),
            tz=app_settings.sync_timezone,
            lookback_days=app_settings.SYNC_LOOKBACK_DAYS,
        ),
    )


def _wrap_override(provider: Any) -> Factory:
    if inspect.isfunction(provider) or inspect.ismethod(provider):
        signature = inspect.signature(provider)
        if len(signature.parameters) == 0:
            return lambda _c, fn=provider: fn()
        return lambda c, fn=provider: fn(c)
    if isinstance(provider, type):
        return lambda _c, cls=provider: cls()
    return lambda _c, value=provider: value


def build_container(overrides: Dict[ServiceType, Any] | None = None) -> Container:
    """Create a new container with optional dependency overrides."""
    container = Container()
    _register_defaults(container)

    if overrides:
        for service, provider in overrides.items():
            factory = _wrap_override(provider)
            if isinstance(provider, (type,)) or inspect.isfunction(provider) or inspect.ismethod(provider):
                container.register(service, factory=factory)
            else:
                container.register(service, instance=factory(container))

    return container


@lru_cache(maxsize=1)
def get_container() -> Container:
    """Return a cached container instance for application use."""
    return build_container()


__all__ = ["Container", "build_container", "get_container"]
