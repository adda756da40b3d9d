"""
Domain errors of the payout engine, rooted in the shared error types
"""
from typing import Any, Dict, Optional

from common.error_handling import BusinessLogicError, ErrorCodes, ServiceError


class ValidationError(BusinessLogicError):
    """Rejected before any record is created; never retried"""


class InvalidAmount(ValidationError):
    def __init__(self, message: str, field: str = "amount", context: Dict[str, Any] = None):
        super().__init__(ErrorCodes.INVALID_AMOUNT, message, field=field, context=context)


class InvalidKeyFormat(ValidationError):
    def __init__(self, message: str, context: Dict[str, Any] = None):
        super().__init__(ErrorCodes.INVALID_KEY, message, field="pix_key", context=context)


class PolicyDenied(BusinessLogicError):
    """One of the four limit policy reasons; the merchant may ask again once conditions change"""

    def __init__(self, reason: str, message: str, context: Dict[str, Any] = None):
        self.reason = reason
        super().__init__(reason, message, context=context)


class IllegalTransition(BusinessLogicError):
    def __init__(self, code: str, message: str, context: Dict[str, Any] = None):
        super().__init__(code, message, context=context)


class NotFoundError(BusinessLogicError):
    def __init__(self, code: str, message: str):
        super().__init__(code, message)


class ConflictError(ServiceError):
    """An optimistic update lost its race; the row changed since it was read"""

    def __init__(self, message: str, entity: str = "", entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(ErrorCodes.CONFLICT, message)


class ReconciliationRequired(ServiceError):
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.RECONCILIATION_REQUIRED, message, original_error)
