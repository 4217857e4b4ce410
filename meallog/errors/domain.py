"""Typed domain exceptions for the meal logging agent.

These exceptions let the conversation layer react to specific failure
kinds (bad interpreter output, catalog outage, rejected write) instead
of matching on error strings.

Usage:
    # In service layer
    raise CatalogWriteError("multi_add_serving", "result=fail")

    # In a state processor
    try:
        await orchestrator.commit(conversation, credential)
    except CatalogWriteError:
        return [messages.SAVE_RETRY_ERROR]
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class InterpretationError(DomainError):
    """The text interpreter returned empty, malformed, or error output.

    Recovered locally: the conversation returns to the description
    state with a retry prompt.
    """

    def __init__(self, message: str, raw_output: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.raw_output = raw_output


class CatalogError(DomainError):
    """A call to the remote nutrition catalog failed."""

    def __init__(
        self, operation: str, message: str, status_code: int | None = None
    ) -> None:
        super().__init__(f"Catalog {operation} failed: {message}")
        self.operation = operation
        self.status_code = status_code


class CatalogWriteError(CatalogError):
    """The catalog rejected a batch of servings."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(operation, message)


class AuthenticationError(DomainError):
    """The catalog rejected the supplied login credentials."""

    def __init__(self, email: str) -> None:
        super().__init__(f"Login rejected for '{email}'")
        self.email = email


class MemoryUnavailableError(DomainError):
    """The alias/preference store could not be reached."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
