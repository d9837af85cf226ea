"""App discovery exports."""

from .loader import ENTRY_POINT_GROUP, AppDiscovery, DiscoveredApp
from .types import AppCompatibilityError, AppContext, AppDescriptor, AppError

__all__ = [
    "AppCompatibilityError",
    "AppContext",
    "AppDescriptor",
    "AppDiscovery",
    "AppError",
    "DiscoveredApp",
    "ENTRY_POINT_GROUP",
]
