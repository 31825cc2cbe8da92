"""
Instrument Data Service

Security reference data: lookup, lazy registration and last-price refresh.
"""

from .security_registry import SecurityRegistry, ResolvedSecurity, normalize_symbol
from .security_repository import SecurityRepository

__all__ = [
    'SecurityRegistry',
    'ResolvedSecurity',
    'SecurityRepository',
    'normalize_symbol',
]
