"""Mercado Livre API access."""

from .client import MarketplaceError, MercadoLibreClient, NotFoundError, RateLimitedError
from .tokens import StoreTokenProvider, TokenProvider

__all__ = [
    "MarketplaceError",
    "MercadoLibreClient",
    "NotFoundError",
    "RateLimitedError",
    "StoreTokenProvider",
    "TokenProvider",
]
