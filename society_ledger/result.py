"""Result pattern for consistent return types across the engine.

Every public service operation returns a ``Result`` instead of letting
exceptions cross the engine boundary, so callers can tell "genuinely empty"
apart from "lookup failed".
"""
from dataclasses import dataclass
from typing import Optional, TypeVar, Generic

T = TypeVar('T')


@dataclass
class Result(Generic[T]):
    """Represents the outcome of an operation.

    Attributes:
        success: Whether the operation succeeded.
        data: The payload on success, None on failure.
        error: Short error description on failure, None on success.
        error_type: Category of error (see ``ErrorType``).
        message: Human readable message suitable for display.

    Usage:
        # Success case
        return Result.ok(entry, "DEPOSIT transaction completed successfully")

        # Failure case
        return Result.fail("Loan not found", ErrorType.NOT_FOUND)

        # Checking result
        result = ledger.create_entry(request)
        if result:
            print(result.data['entry']['id'])
        else:
            print(result.error)
    """
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, data: T = None, message: str = None) -> 'Result[T]':
        """Create a successful result."""
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str, error_type: str = None, message: str = None) -> 'Result[T]':
        """Create a failure result.

        Args:
            error: Error message describing what went wrong.
            error_type: Optional error category for programmatic handling.
            message: Optional human readable message.

        Returns:
            A Result with success=False and error details.
        """
        return cls(success=False, error=error, error_type=error_type, message=message)

    @classmethod
    def from_exception(cls, exc: Exception, message: str = None) -> 'Result[T]':
        """Translate an exception caught at an engine boundary into a failure.

        Engine exceptions keep their category and bare message; anything else
        is reported as a database failure.
        """
        error_type = getattr(exc, 'error_type', ErrorType.DATABASE)
        error = getattr(exc, 'message', None) or str(exc) or exc.__class__.__name__
        return cls.fail(error, error_type, message)

    def __bool__(self) -> bool:
        """Allow using Result in boolean context."""
        return self.success

    def unwrap(self) -> T:
        """Get the data, raising an exception if the operation failed.

        Raises:
            ValueError: If the operation failed.
        """
        if not self.success:
            raise ValueError(f"Result unwrap failed: {self.error}")
        return self.data

    def unwrap_or(self, default: T) -> T:
        """Get the data or a default if the operation failed."""
        return self.data if self.success else default

    def to_dict(self) -> dict:
        """Plain mapping for an API layer: ``{success, data, error, message}``."""
        payload: dict = {'success': self.success}
        if self.data is not None:
            payload['data'] = self.data
        if self.error is not None:
            payload['error'] = self.error
        if self.message is not None:
            payload['message'] = self.message
        return payload


# Common error types for consistency
class ErrorType:
    """Standard error type constants."""
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    STATE_CONFLICT = "STATE_CONFLICT"
    DATABASE = "DATABASE"


def rejected(logger, operation: str, exc: Exception, message: str = None) -> Result:
    """Log a failure caught at an engine boundary and translate it.

    Must be called from inside the ``except`` block. Business-rule rejections
    are logged as warnings; anything else keeps its traceback.
    """
    if getattr(exc, 'error_type', ErrorType.DATABASE) != ErrorType.DATABASE:
        logger.warning(f"{operation} rejected: {exc}")
    else:
        logger.exception(f"{operation} failed: {exc}")
    return Result.from_exception(exc, message)
