"""Error types for the meal logging agent.

Error kinds:
- InterpretationError: interpreter output could not be used
- CatalogError / CatalogWriteError: remote catalog failures
- AuthenticationError: login rejected
- MemoryUnavailableError: alias/preference store down
"""

from meallog.errors.domain import (
    AuthenticationError,
    CatalogError,
    CatalogWriteError,
    DomainError,
    InterpretationError,
    MemoryUnavailableError,
)

__all__ = [
    "DomainError",
    "InterpretationError",
    "CatalogError",
    "CatalogWriteError",
    "AuthenticationError",
    "MemoryUnavailableError",
]
