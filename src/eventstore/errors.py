from typing import Optional


class EventStoreError(Exception):
    pass


class ValidationError(EventStoreError, ValueError):
    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class AuthenticationError(EventStoreError):
    def __init__(self) -> None:
        super().__init__("unauthorized")


class DurabilityError(EventStoreError):
    """Storage failed; the caller must treat the outcome as unknown."""


class IngestError(DurabilityError):
    pass


class QueryError(DurabilityError):
    pass
