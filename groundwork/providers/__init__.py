"""
Providers: adapters between abstract resource actions and vendor APIs.
"""

from .base import Provider, ProviderRegistry, ResourceHandler, ResourceSchema, default_registry

__all__ = ["Provider", "ProviderRegistry", "ResourceHandler", "ResourceSchema", "default_registry"]
