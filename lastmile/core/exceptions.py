"""
Application errors.

Every error carries a stable code, an HTTP status and a ``kind`` (the class
name without its Error/Exception suffix unless the class names one), and is
rendered by the API as ``{"error": {code, kind, message, details}}``.

Finding no courier and receiving a stale ping are normal outcomes, returned as
DispatchOutcome / IngestOutcome values instead of raised.
"""
from enum import Enum
from typing import Any, ClassVar, Iterable, Optional


class ErrorCode(str, Enum):
    # general 1xxx
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"

    # deliveries 2xxx
    DELIVERY_NOT_FOUND = "ERR_2001"
    ALREADY_ASSIGNED = "ERR_2002"
    CLAIM_CONFLICT = "ERR_2003"
    DELIVERY_NOT_RATEABLE = "ERR_2004"

    # couriers 3xxx
    COURIER_NOT_FOUND = "ERR_3001"

    # orders 4xxx
    ORDER_NOT_FOUND = "ERR_4001"

    # geo 5xxx
    GEO_INPUT_INVALID = "ERR_5001"

    # state machine 6xxx
    INVALID_STATE_TRANSITION = "ERR_6001"


class AppException(Exception):
    """Base error. Subclasses set ``default_code`` and ``default_status``."""

    default_code: ClassVar[ErrorCode] = ErrorCode.INTERNAL_ERROR
    default_status: ClassVar[int] = 500
    kind_name: ClassVar[Optional[str]] = None

    def __init__(
        self,
        message: str,
        error_code: ErrorCode | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.status_code = status_code or self.default_status
        self.details = dict(details or {})

    @property
    def kind(self) -> str:
        if self.kind_name:
            return self.kind_name
        return type(self).__name__.removesuffix("Error").removesuffix("Exception")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.error_code.value,
                "kind": self.kind,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationException(AppException):
    default_code = ErrorCode.VALIDATION_ERROR
    default_status = 400

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details=details)
        if field:
            self.details["field"] = field


class GeoInputInvalidError(ValidationException):
    """Malformed or out-of-range coordinates, distances or speeds."""

    default_code = ErrorCode.GEO_INPUT_INVALID

    def __init__(self, message: str, field: str | None = None, value: Any = None):
        super().__init__(message, field=field, details={"value": value})


class AlreadyExistsException(AppException):
    """Natural key already taken (courier user id, delivery per order, rating)."""

    default_code = ErrorCode.ALREADY_EXISTS
    default_status = 409

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            f"{resource} already exists: {identifier}",
            details={"resource": resource, "identifier": str(identifier)},
        )


class NotFoundException(AppException):
    default_code = ErrorCode.NOT_FOUND
    default_status = 404
    kind_name = "NotFound"
    resource: ClassVar[str] = "Resource"

    def __init__(self, identifier: Any, resource: str | None = None):
        resource = resource or self.resource
        super().__init__(
            f"{resource} not found: {identifier}",
            details={"resource": resource, "identifier": str(identifier)},
        )


class DeliveryNotFoundError(NotFoundException):
    default_code = ErrorCode.DELIVERY_NOT_FOUND
    resource = "Delivery"


class OrderNotFoundError(NotFoundException):
    default_code = ErrorCode.ORDER_NOT_FOUND
    resource = "Order"


class CourierNotFoundError(NotFoundException):
    default_code = ErrorCode.COURIER_NOT_FOUND
    resource = "Courier"


class DeliveryException(AppException):
    """Delivery-scoped error; ``details["delivery_id"]`` is always set."""

    default_status = 400

    def __init__(self, delivery_id: int, message: str, **details: Any):
        super().__init__(message, details={**details, "delivery_id": delivery_id})


class AlreadyAssignedError(DeliveryException):
    """The delivery left ``pending`` before this claim landed."""

    default_code = ErrorCode.ALREADY_ASSIGNED
    default_status = 409

    def __init__(self, delivery_id: int, current_status: str, courier_id: int | None = None):
        super().__init__(
            delivery_id,
            f"Delivery {delivery_id} is no longer pending (status '{current_status}')",
            current_status=current_status,
            current_courier_id=courier_id,
        )


class ClaimConflictError(DeliveryException):
    """The courier was taken concurrently or is not available."""

    default_code = ErrorCode.CLAIM_CONFLICT
    default_status = 409

    def __init__(self, delivery_id: int, courier_id: int, attempts: int = 1):
        super().__init__(
            delivery_id,
            f"Courier {courier_id} could not be claimed for delivery {delivery_id}",
            courier_id=courier_id,
            attempts=attempts,
        )


class DeliveryNotRateableError(DeliveryException):
    default_code = ErrorCode.DELIVERY_NOT_RATEABLE

    def __init__(self, delivery_id: int, current_status: str):
        super().__init__(
            delivery_id,
            f"Delivery {delivery_id} can only be rated once delivered",
            current_status=current_status,
        )


class InvalidTransitionError(AppException):
    """Illegal status change; ``details["allowed"]`` lists the legal next states."""

    default_code = ErrorCode.INVALID_STATE_TRANSITION
    default_status = 400

    def __init__(
        self,
        entity: str,
        entity_id: int | None,
        current_state: str,
        target_state: str,
        allowed: Iterable[str],
    ):
        self.allowed = sorted(allowed)
        super().__init__(
            f"Invalid {entity} transition from '{current_state}' to '{target_state}'",
            details={
                "entity": entity,
                "entity_id": entity_id,
                "current_state": current_state,
                "target_state": target_state,
                "allowed": self.allowed,
            },
        )
