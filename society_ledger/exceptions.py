"""Custom exceptions for the society ledger engine."""
from society_ledger.result import ErrorType


class SocietyLedgerError(Exception):
    """Base exception for all society ledger errors."""

    error_type = ErrorType.DATABASE

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


# =============================================================================
# PERSISTENCE
# =============================================================================

class DatabaseError(SocietyLedgerError):
    """Raised when a database operation fails."""
    pass


class TransactionError(DatabaseError):
    """Raised when a database transaction fails to complete."""
    pass


# =============================================================================
# NOT FOUND
# =============================================================================

class MemberNotFoundError(SocietyLedgerError):
    """Raised when a member cannot be found."""

    error_type = ErrorType.NOT_FOUND

    def __init__(self, member_id=None):
        details = {'member_id': member_id} if member_id is not None else {}
        super().__init__("Member not found", details)


class LoanNotFoundError(SocietyLedgerError):
    """Raised when a loan cannot be found."""

    error_type = ErrorType.NOT_FOUND

    def __init__(self, loan_id=None, member_id=None):
        details = {}
        if loan_id is not None:
            details['loan_id'] = loan_id
        if member_id is not None:
            details['member_id'] = member_id

        message = "Loan not found"
        if loan_id is not None:
            message = f"Loan {loan_id} not found"

        super().__init__(message, details)


class EntryNotFoundError(SocietyLedgerError):
    """Raised when a ledger entry cannot be found (or belongs to another member)."""

    error_type = ErrorType.NOT_FOUND

    def __init__(self, entry_id=None, member_id=None):
        details = {}
        if entry_id is not None:
            details['entry_id'] = entry_id
        if member_id is not None:
            details['member_id'] = member_id
        super().__init__("Transaction entry not found", details)


class MaturityRecordNotFoundError(SocietyLedgerError):
    """Raised when a maturity record cannot be found."""

    error_type = ErrorType.NOT_FOUND

    def __init__(self, record_id=None):
        details = {'record_id': record_id} if record_id is not None else {}
        super().__init__("Maturity record not found", details)


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationError(SocietyLedgerError):
    """Raised when a request carries invalid values."""

    error_type = ErrorType.VALIDATION


class AmountOutOfRangeError(ValidationError):
    """Raised when an amount falls outside the allowed range."""

    def __init__(self, field: str, amount, minimum=None, maximum=None):
        details = {'field': field, 'amount': amount}
        if minimum is not None:
            details['minimum'] = minimum
        if maximum is not None:
            details['maximum'] = maximum
        super().__init__(f"Invalid {field}: {amount}", details)


class NoActiveLoanError(ValidationError):
    """Raised when an installment is recorded for a member without an active loan."""

    def __init__(self, member_id=None, message: str = "No active loan found for this member"):
        details = {'member_id': member_id} if member_id is not None else {}
        super().__init__(message, details)


class ActiveLoanExistsError(ValidationError):
    """Raised when a member who already holds an active loan requests another."""

    def __init__(self, member_id=None):
        details = {'member_id': member_id} if member_id is not None else {}
        super().__init__("Member already has an active loan", details)


# =============================================================================
# STATE CONFLICT
# =============================================================================

class LoanInactiveError(SocietyLedgerError):
    """Raised when an operation requires an active loan but the loan is closed."""

    error_type = ErrorType.STATE_CONFLICT

    def __init__(self, loan_id, status: str):
        details = {
            'loan_id': loan_id,
            'status': status
        }
        message = f"Loan {loan_id} is not active (status: {status})"
        super().__init__(message, details)


class ClosedLoanEntryError(SocietyLedgerError):
    """Raised when changing an entry that belongs to a closed loan's history."""

    error_type = ErrorType.STATE_CONFLICT

    def __init__(self, entry_id, loan_id,
                 message: str = "Cannot delete transaction linked to a closed loan"):
        super().__init__(message, {'entry_id': entry_id, 'loan_id': loan_id})


class InsufficientPaymentError(SocietyLedgerError):
    """Raised when a payment does not cover the interest due."""

    error_type = ErrorType.STATE_CONFLICT

    def __init__(self, payment: float, interest: float, loan_id=None):
        details = {
            'payment': payment,
            'interest': interest
        }
        if loan_id is not None:
            details['loan_id'] = loan_id

        message = "Payment amount insufficient to cover interest"
        super().__init__(message, details)


class MaturityStateError(SocietyLedgerError):
    """Raised when a maturity record is not in the status an operation requires."""

    error_type = ErrorType.STATE_CONFLICT

    def __init__(self, message: str, record_id=None, status: str = None):
        details = {}
        if record_id is not None:
            details['record_id'] = record_id
        if status:
            details['status'] = status
        super().__init__(message, details)


class ConcurrentUpdateError(SocietyLedgerError):
    """Raised when a guarded update finds the row changed by another writer."""

    error_type = ErrorType.STATE_CONFLICT

    def __init__(self, table: str, row_id):
        super().__init__(
            f"Concurrent update detected on {table} {row_id}",
            {'table': table, 'id': row_id}
        )
