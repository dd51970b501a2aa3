"""
Payment Engine Exceptions
========================

Error taxonomy shared by every engine component. Validation and authorization
errors carry no side effects; processor errors say whether a retry can help.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base engine error with context"""

    code = "engine_error"

    def __init__(self, message: str, code: str = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class InvalidTransition(EngineError):
    """Requested status change is not in the allowed transition table"""

    code = "invalid_transition"

    def __init__(self, message: str, from_status: str = None, to_status: str = None, **kwargs):
        super().__init__(message, **kwargs)
        self.from_status = from_status
        self.to_status = to_status


class Unauthorized(EngineError):
    """Actor lacks the role required for the operation"""

    code = "unauthorized"


class NotFound(EngineError):
    """Referenced job, payment, earning or dispute does not exist"""

    code = "not_found"


class ValidationError(EngineError):
    """Request data fails a business rule"""

    code = "validation_error"


class RefundLimitExceeded(ValidationError):
    """Refund would exceed the remaining captured balance"""

    code = "refund_limit_exceeded"


class DuplicateOperation(EngineError):
    """Operation already happened (earning exists, dispute already open)"""

    code = "duplicate_operation"


class ProcessorError(EngineError):
    """Payment processor call failed"""

    code = "processor_error"

    def __init__(self, message: str, retryable: bool = False, processor_code: str = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retryable = retryable
        self.processor_code = processor_code


class RetryableProcessorError(ProcessorError):
    """Transient processor failure: network, rate limit, 5xx"""

    def __init__(self, message: str, processor_code: str = None, **kwargs):
        super().__init__(message, retryable=True, processor_code=processor_code, **kwargs)


class TerminalProcessorError(ProcessorError):
    """Processor rejected the request: card declined, invalid account"""

    def __init__(self, message: str, processor_code: str = None, **kwargs):
        super().__init__(message, retryable=False, processor_code=processor_code, **kwargs)


class RetryBudgetExhausted(EngineError):
    """All retry attempts for an operation failed"""

    code = "retry_budget_exhausted"

    def __init__(self, message: str, attempts: int = 0, last_error: Exception = None, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.last_error = last_error
