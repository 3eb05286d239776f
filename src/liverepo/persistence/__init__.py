"""
Persistence - Storage Provider Contract and Providers
"""

from .provider import DataProvider, ProviderMetrics, Row
from .memory import InMemoryDataProvider

__all__ = ["DataProvider", "ProviderMetrics", "Row", "InMemoryDataProvider"]
