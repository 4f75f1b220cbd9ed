"""Identity provider API clients."""

from .base import ProviderAPIBase, ProviderAPIError, ProviderAuthenticationError
from .client import IdentityProviderClient

__all__ = [
    'ProviderAPIBase',
    'ProviderAPIError',
    'ProviderAuthenticationError',
    'IdentityProviderClient',
]
