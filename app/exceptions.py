"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class GatewayError(Exception):
    """Base exception for all generation gateway errors."""

    pass


class InvalidRequestError(GatewayError):
    """Raised when the generation payload is malformed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid request: {message}")


class InvalidModelSelectionError(GatewayError):
    """Raised when the model descriptors do not contain exactly one base model."""

    def __init__(self, base_count: int) -> None:
        self.base_count = base_count
        super().__init__(f"Exactly one base model is required, got {base_count}")


class ProviderError(GatewayError):
    """Raised when the image provider call fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ProviderTimeoutError(ProviderError):
    """Raised when the image provider does not answer within the deadline."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Image provider timed out after {timeout_seconds:g}s")


class EmptyResultError(ProviderError):
    """Raised when the provider succeeds but returns no usable image."""

    def __init__(self) -> None:
        super().__init__("No image generated")


class SettlementWriteError(GatewayError):
    """Raised when a post-generation ledger or audit write fails."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"Settlement write failed during {operation}: {message}")


class UserCreditsNotFoundError(GatewayError):
    """Raised when a credits row is expected but missing."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User credits not found: {user_id}")
