"""Adapter registry for retailer scrape adapters."""

import logging

from src.scraper.adapters.base import BaseAdapter

logger = logging.getLogger(__name__)


class AdapterNotFoundError(LookupError):
    """Raised when a job references an adapter id with no registered plugin."""

    pass


class RegistryFrozenError(RuntimeError):
    """Raised when registering after startup."""

    pass


class AdapterRegistry:
    """
    Process-wide lookup from adapter id to adapter instance.

    Populated once at startup, then frozen. Lookups after freezing never
    mutate state.
    """

    def __init__(self):
        self._adapters: dict[str, BaseAdapter] = {}
        self._frozen = False

    def register(self, adapter: BaseAdapter) -> None:
        """
        Register an adapter instance.

        Args:
            adapter: Adapter to register

        Raises:
            RegistryFrozenError: If the registry has been frozen
            ValueError: If an adapter with the same id is already registered
        """
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register {adapter.id}: registry is frozen")
        if adapter.id in self._adapters:
            raise ValueError(f"Adapter already registered: {adapter.id}")

        self._adapters[adapter.id] = adapter
        logger.info(f"Registered adapter: {adapter.id} v{adapter.version}")

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, adapter_id: str) -> BaseAdapter:
        """
        Get a registered adapter.

        Raises:
            AdapterNotFoundError: If no adapter is registered under this id
        """
        adapter = self._adapters.get(adapter_id)
        if adapter is None:
            raise AdapterNotFoundError(
                f"Unknown adapter: {adapter_id}. Available: {self.list_ids()}"
            )
        return adapter

    def has(self, adapter_id: str) -> bool:
        return adapter_id in self._adapters

    def list_ids(self) -> list[str]:
        """List all registered adapter ids."""
        return sorted(self._adapters)

    def size(self) -> int:
        return len(self._adapters)


def build_registry() -> AdapterRegistry:
    """Create a registry with every bundled adapter registered and frozen."""
    from src.scraper.adapters import ALL_ADAPTERS

    registry = AdapterRegistry()
    for adapter_class in ALL_ADAPTERS:
        registry.register(adapter_class())
    registry.freeze()
    return registry
