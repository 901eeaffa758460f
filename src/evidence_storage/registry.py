"""
Provider registry and factory.

Maps each provider type to a factory that builds an adapter from its
configuration. Adapter modules are imported inside the factories so a process
only loads the SDK of the backend it actually uses. A provider moves through
``REGISTERED -> CONSTRUCTED -> HEALTHY -> ACTIVE`` and a failed health check
stops it before it can serve traffic.
"""

import logging
from collections.abc import Callable
from enum import Enum

from .base import StorageProvider
from .config import AnyStorageConfig, load_storage_config
from .exceptions import StorageConfigurationError, StorageError, StorageProviderUnavailableError
from .models import StorageProviderType

log = logging.getLogger(__name__)

ProviderFactory = Callable[[AnyStorageConfig], StorageProvider]


class ProviderState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    CONSTRUCTED = "constructed"
    HEALTHY = "healthy"
    ACTIVE = "active"


class ProviderRegistry:
    """Factories keyed by provider type, plus the single active provider."""

    def __init__(self):
        self._factories: dict[StorageProviderType, ProviderFactory] = {}
        self._states: dict[StorageProviderType, ProviderState] = {}
        self._active: StorageProvider | None = None

    def register(self, provider_type: StorageProviderType, factory: ProviderFactory) -> None:
        provider_type = StorageProviderType(provider_type)
        self._factories[provider_type] = factory
        self._states[provider_type] = ProviderState.REGISTERED
        log.debug("[ProviderRegistry] Registered factory for %s", provider_type.value)

    def is_registered(self, provider_type: StorageProviderType) -> bool:
        return StorageProviderType(provider_type) in self._factories

    def state_of(self, provider_type: StorageProviderType) -> ProviderState:
        return self._states.get(StorageProviderType(provider_type), ProviderState.UNREGISTERED)

    @property
    def registered_types(self) -> list[StorageProviderType]:
        return list(self._factories)

    @property
    def active(self) -> StorageProvider:
        if self._active is None:
            raise StorageConfigurationError("No storage provider is active. Call activate() first.")
        return self._active

    async def create(self, config: AnyStorageConfig) -> StorageProvider:
        """Construct, initialize and health-check a provider for *config*.

        Raises:
            StorageConfigurationError: If no factory is registered for the
                configured type or initialization fails.
            StorageProviderUnavailableError: If the health check fails.
        """
        provider_type = config.provider_type
        factory = self._factories.get(provider_type)
        if factory is None:
            raise StorageConfigurationError(
                f"No storage provider registered for type {provider_type.value!r}",
                provider=provider_type.value,
            )

        provider = factory(config)
        try:
            await provider.initialize()
        except StorageError:
            await provider.close()
            raise
        except Exception as e:
            await provider.close()
            raise StorageConfigurationError(
                f"Failed to initialize storage provider: {e}", provider=provider.name, cause=e
            ) from e
        self._states[provider_type] = ProviderState.CONSTRUCTED

        if not await provider.health_check():
            await provider.close()
            log.error("[ProviderRegistry] Health check failed for %s", provider.name)
            raise StorageProviderUnavailableError(
                f"{provider.name} failed its health check", provider=provider.name
            )
        self._states[provider_type] = ProviderState.HEALTHY
        return provider

    async def activate(self, config: AnyStorageConfig) -> StorageProvider:
        """Create a provider and make it the process-wide active one."""
        provider = await self.create(config)
        previous = self._active
        if previous is not None:
            self._states[previous.provider_type] = ProviderState.REGISTERED
            await previous.close()

        self._active = provider
        self._states[provider.provider_type] = ProviderState.ACTIVE
        log.info("[ProviderRegistry] Active storage provider: %s", provider.name)
        return provider

    async def shutdown(self) -> None:
        """Close the active provider, if any."""
        provider, self._active = self._active, None
        if provider is not None:
            self._states[provider.provider_type] = ProviderState.REGISTERED
            await provider.close()
            log.info("[ProviderRegistry] Closed storage provider: %s", provider.name)


def _create_local_provider(config: AnyStorageConfig) -> StorageProvider:
    from .providers.local import LocalStorageProvider

    return LocalStorageProvider.from_config(config)


def _create_s3_provider(config: AnyStorageConfig) -> StorageProvider:
    from .providers.s3 import S3StorageProvider

    return S3StorageProvider.from_config(config)


def _create_azure_blob_provider(config: AnyStorageConfig) -> StorageProvider:
    from .providers.azure_blob import AzureBlobStorageProvider

    return AzureBlobStorageProvider.from_config(config)


def _create_gcs_provider(config: AnyStorageConfig) -> StorageProvider:
    from .providers.gcs import GcsStorageProvider

    return GcsStorageProvider.from_config(config)


def _create_replit_provider(config: AnyStorageConfig) -> StorageProvider:
    from .providers.replit import ReplitStorageProvider

    return ReplitStorageProvider.from_config(config)


def default_registry() -> ProviderRegistry:
    """A registry with every built-in adapter registered."""
    registry = ProviderRegistry()
    registry.register(StorageProviderType.LOCAL, _create_local_provider)
    registry.register(StorageProviderType.S3, _create_s3_provider)
    registry.register(StorageProviderType.AZURE_BLOB, _create_azure_blob_provider)
    registry.register(StorageProviderType.GCS, _create_gcs_provider)
    registry.register(StorageProviderType.REPLIT, _create_replit_provider)
    return registry


async def create_storage_provider(
    config: AnyStorageConfig | None = None,
    registry: ProviderRegistry | None = None,
) -> StorageProvider:
    """Build and activate the storage provider for this process.

    Args:
        config: Provider configuration. Read from environment variables if None.
        registry: Registry to activate the provider on. A fresh
            ``default_registry()`` if None.

    Returns:
        The initialized, health-checked provider.
    """
    if config is None:
        config = load_storage_config()
    if registry is None:
        registry = default_registry()
    return await registry.activate(config)
