from __future__ import annotations

from crm_store.crm.schemas import DuplicateSummary


class StoreError(Exception):
    """Base error for cache operations that reach or bypass the backend gateway."""

    def __init__(self, message: str, *, entity_type: str | None = None, operation: str | None = None) -> None:
        super().__init__(message)
        self.entity_type = entity_type
        self.operation = operation


class TransportError(StoreError):
    """Raised when the gateway is unreachable or reports a failure without a recognised reason."""


class DuplicateError(StoreError):
    """Raised when a create is rejected because a conflicting record already exists."""

    def __init__(self, duplicate: DuplicateSummary, *, entity_type: str | None = None, message: str | None = None) -> None:
        label = (entity_type or "record").capitalize()
        text = message or f"{label} already exists in the system."
        super().__init__(f"{text} Duplicate: {duplicate.describe()}", entity_type=entity_type, operation="create")
        self.duplicate = duplicate


class NotFoundError(StoreError):
    def __init__(self, entity_id: str, *, entity_type: str | None = None, operation: str | None = None) -> None:
        super().__init__(f"{entity_type or 'record'} {entity_id} not found", entity_type=entity_type, operation=operation)
        self.entity_id = entity_id


class RowValidationError(StoreError):
    """Raised for an import row that fails local format checks; collected into the import summary."""

    def __init__(self, row_number: int, label: str, messages: list[str], *, entity_type: str | None = None) -> None:
        self.row_number = row_number
        self.label = label
        self.messages = list(messages)
        super().__init__(f"{label}: {', '.join(self.messages)}", entity_type=entity_type, operation="import")
