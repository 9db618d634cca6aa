"""
Provider adapter interface.

A Provider groups the ResourceHandlers for one vendor. Each handler
turns abstract actions on one resource type into real API calls:

    create(arguments)    -> (id, outputs)
    read(id)             -> outputs        (NotFoundError if gone)
    update(id, diff)     -> outputs
    delete(id)           -> None
    lookup(arguments)    -> id or None     (find by deterministic name)

Handlers report failures by raising ProviderError (retryable where a
repeat may succeed). Anything else they raise is treated as a
non-retryable failure of that resource.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Tuple, Type

from ..errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSchema:
    """
    Static description of a resource type.

    Attributes:
        immutable: Arguments whose change forces replacement
        computed: Attributes produced by the provider (beyond the arguments)
        required: Arguments that must be present
        create_before_destroy: Default replace ordering for the type
        supports_lookup: Whether lookup() can find objects by deterministic name
        sensitive: Attributes never printed (secrets the provider returns)
    """
    immutable: FrozenSet[str] = frozenset()
    computed: FrozenSet[str] = frozenset()
    required: FrozenSet[str] = frozenset()
    create_before_destroy: bool = False
    supports_lookup: bool = False
    sensitive: FrozenSet[str] = frozenset()

    def has_attribute(self, name: str, arguments: Iterable[str]) -> bool:
        """True if a reference to this attribute can ever resolve."""
        return name == "id" or name in self.computed or name in set(arguments)


class ResourceHandler(ABC):
    """Capability interface for one resource type."""

    type_name: str = ""
    schema: ResourceSchema = ResourceSchema()

    def __init__(self, provider: "Provider"):
        self.provider = provider

    @abstractmethod
    def create(self, arguments: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Create the object and return (id, outputs)."""

    @abstractmethod
    def read(self, resource_id: str) -> Dict[str, Any]:
        """Return current attributes; raise NotFoundError if it no longer exists."""

    @abstractmethod
    def update(self, resource_id: str, diff: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply in-place changes.

        Args:
            resource_id: Provider id from state
            diff: Attribute name -> AttributeDiff (before/after values)
        """

    @abstractmethod
    def delete(self, resource_id: str) -> None:
        """Delete the object; raise NotFoundError if it is already gone."""

    def lookup(self, arguments: Dict[str, Any]) -> Optional[str]:
        """Find an existing object created from these arguments, if any."""
        return None

    @classmethod
    def normalize(cls, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """
        Bring arguments into the canonical form read() reports them in,
        so equal configurations compare equal. May see UNKNOWN values.
        """
        return arguments


class Provider(ABC):
    """
    A configured vendor connection.

    Subclasses list their handlers in resource_types; configuration comes
    from the project's provider block with variables already substituted.
    """

    name: str = ""
    resource_types: Dict[str, Type[ResourceHandler]] = {}

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self._handlers: Dict[str, ResourceHandler] = {}
        self._lock = threading.Lock()

    def handler(self, resource_type: str) -> ResourceHandler:
        with self._lock:
            if resource_type not in self._handlers:
                handler_class = self.resource_types[resource_type]
                self._handlers[resource_type] = handler_class(self)
            return self._handlers[resource_type]


class ProviderRegistry:
    """
    Maps resource types to providers.

    Providers are created lazily, once, the first time one of their
    handlers is needed, so planning without a provider call never builds
    vendor clients.
    """

    def __init__(self):
        self._factories: Dict[str, Callable[[Dict[str, Any]], Provider]] = {}
        self._types: Dict[str, Tuple[str, Type[ResourceHandler]]] = {}
        self._configs: Dict[str, Dict[str, Any]] = {}
        self._instances: Dict[str, Provider] = {}
        self._lock = threading.Lock()

    def register(
        self,
        provider_class: Type[Provider],
        factory: Optional[Callable[[Dict[str, Any]], Provider]] = None,
    ):
        """
        Register a provider class.

        Args:
            provider_class: Provider subclass (supplies name and resource_types)
            factory: Builds the provider from its config (defaults to the class)
        """
        self._factories[provider_class.name] = factory or provider_class
        for type_name, handler_class in provider_class.resource_types.items():
            self._types[type_name] = (provider_class.name, handler_class)

    def configure(self, configs: Dict[str, Dict[str, Any]]):
        """Set provider block configuration (provider name -> arguments)."""
        self._configs = dict(configs)

    def schema(self, resource_type: str) -> ResourceSchema:
        """
        Get the schema of a resource type without configuring its provider.

        Raises:
            ConfigError: For unknown resource types
        """
        if resource_type not in self._types:
            raise ConfigError(f"Unsupported resource type '{resource_type}'")
        return self._types[resource_type][1].schema

    def normalize(self, resource_type: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Canonical form of arguments for a type, without configuring its provider."""
        if resource_type not in self._types:
            raise ConfigError(f"Unsupported resource type '{resource_type}'")
        return self._types[resource_type][1].normalize(arguments)

    def handler(self, resource_type: str) -> ResourceHandler:
        """
        Get the handler for a resource type, configuring its provider on first use.

        Raises:
            ConfigError: For unknown resource types
        """
        if resource_type not in self._types:
            raise ConfigError(f"Unsupported resource type '{resource_type}'")
        provider_name, _ = self._types[resource_type]
        with self._lock:
            if provider_name not in self._instances:
                logger.debug(f"Configuring provider '{provider_name}'")
                factory = self._factories[provider_name]
                self._instances[provider_name] = factory(self._configs.get(provider_name, {}))
            provider = self._instances[provider_name]
        return provider.handler(resource_type)


def default_registry() -> ProviderRegistry:
    """Registry with the bundled aws and local providers."""
    from .aws import AwsProvider
    from .local import LocalProvider

    registry = ProviderRegistry()
    registry.register(AwsProvider)
    registry.register(LocalProvider)
    return registry
