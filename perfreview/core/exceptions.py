from typing import Any, Dict, Iterable, Optional


class AppException(Exception):
    def __init__(
        self,
        message: str,
        status_code: int = 400,
        error_code: str = "BUSINESS_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class ValidationError(AppException):
    """Malformed command input, rejected before any aggregate is loaded."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=400,
            error_code="VALIDATION_ERROR",
            details=details
        )


class BusinessRuleViolation(AppException):
    def __init__(
        self,
        message: str,
        error_code: str = "BUSINESS_RULE_VIOLATION",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            status_code=400,
            error_code=error_code,
            details=details
        )


class InvalidWorkflowTransitionError(BusinessRuleViolation):
    def __init__(self, current_state: str, target_state: str, valid_targets: Iterable[str] = ()):
        valid = sorted(valid_targets)
        message = f"Cannot transition from {current_state} to {target_state}."
        if valid:
            message += f" Valid targets: {', '.join(valid)}."
        super().__init__(
            message=message,
            error_code="INVALID_WORKFLOW_TRANSITION",
            details={"current_state": current_state, "target_state": target_state, "valid_targets": valid}
        )


class AssignmentLockedError(BusinessRuleViolation):
    def __init__(self, assignment_id: Any):
        super().__init__(
            message="Assignment is finalized and locked; no further changes are allowed.",
            error_code="ASSIGNMENT_LOCKED",
            details={"assignment_id": str(assignment_id)}
        )


class AssignmentWithdrawnError(BusinessRuleViolation):
    def __init__(self, assignment_id: Any):
        super().__init__(
            message="Assignment has been withdrawn; no further changes are allowed.",
            error_code="ASSIGNMENT_WITHDRAWN",
            details={"assignment_id": str(assignment_id)}
        )


class AuthenticationError(AppException):
    def __init__(self, message: str = "Could not validate caller identity"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="AUTH_FAILED"
        )


class AccessDeniedError(AppException):
    """Custom permission error. Named AccessDeniedError to avoid shadowing Python's built-in PermissionError."""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(
            message=message,
            status_code=403,
            error_code="PERMISSION_DENIED"
        )


class NotFoundError(AppException):
    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            message=f"{entity} {entity_id} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details={"entity": entity, "id": str(entity_id)}
        )


class ConcurrencyConflictError(AppException):
    def __init__(self, entity: str, entity_id: Any, expected_version: int, actual_version: Optional[int] = None):
        super().__init__(
            message=(
                f"{entity} {entity_id} was modified concurrently "
                f"(expected version {expected_version}, found {actual_version if actual_version is not None else 'newer'}). "
                "Reload and retry."
            ),
            status_code=409,
            error_code="CONCURRENCY_CONFLICT",
            details={
                "entity": entity,
                "id": str(entity_id),
                "expected_version": expected_version,
                "actual_version": actual_version,
            }
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class StorageUnavailableError(AppException):
    def __init__(self, message: str = "Storage is currently unavailable."):
        super().__init__(
            message=message,
            status_code=500,
            error_code="STORAGE_UNAVAILABLE"
        )
