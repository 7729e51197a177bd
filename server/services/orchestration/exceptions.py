"""Orchestration exception hierarchy.

Only genuine operation failures are raised to callers. Quota exhaustion,
oversized cache payloads and memory pressure are absorbed as delays or
logged no-ops and have no exception type here.
"""


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""


class ProviderFailure(OrchestrationError):
    """An external AI provider call failed."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"[{service}] {message}")


class UnknownOperation(OrchestrationError):
    """Requested operation type is not supported."""

    def __init__(self, operation_type: str):
        self.operation_type = operation_type
        super().__init__(f"Unknown AI operation: {operation_type}")


class OperationNotFound(OrchestrationError):
    """No tracked operation with the given id."""

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Operation not found: {operation_id}")


class OperationCancelled(OrchestrationError):
    """Operation was cancelled locally before it completed."""

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Operation cancelled: {operation_id}")


class InvalidPayload(OrchestrationError):
    """Operation payload is missing a required field."""

    def __init__(self, operation_type: str, field_name: str):
        self.operation_type = operation_type
        self.field_name = field_name
        super().__init__(f"{operation_type} requires '{field_name}' in payload")


class AdmissionClosed(OrchestrationError):
    """The rate limiter stopped before queued work was admitted or finished."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Rate limiter stopped with {service} work pending")
