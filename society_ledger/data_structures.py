from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Any, Optional


class EntryType:
    """Kinds of ledger entry accepted by ``LedgerService.create_entry``."""
    DEPOSIT = "DEPOSIT"
    INSTALLMENT = "INSTALLMENT"
    FINE = "FINE"
    EXPENSE = "EXPENSE"
    OTHER = "OTHER"
    MIXED = "MIXED"

    ALL = (DEPOSIT, INSTALLMENT, FINE, EXPENSE, OTHER, MIXED)


class LoanStatus:
    ACTIVE = "active"
    CLOSED = "closed"


class MaturityStatus:
    ACTIVE = "active"
    MATURED = "matured"
    CLAIMED = "claimed"


class MemberStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class CreateEntryRequest:
    """Input for recording one cash event in a member's passbook.

    ``amount`` drives every kind except MIXED, which reads the split fields
    instead. ``loan_id`` pins an installment to a specific active loan;
    otherwise the member's newest active loan is used.
    """
    member_id: int
    type: str
    amount: float = 0.0
    description: Optional[str] = None
    mode: Optional[str] = None
    loan_id: Optional[int] = None
    transaction_date: Optional[datetime] = None
    # MIXED only
    deposit_amount: Optional[float] = None
    installment_amount: Optional[float] = None
    interest_amount: Optional[float] = None
    fine_amount: Optional[float] = None


@dataclass
class UpdateEntryRequest:
    """New values for an existing entry. ``None`` keeps the stored value."""
    entry_id: int
    member_id: int
    deposit: Optional[float] = None
    installment: Optional[float] = None
    interest: Optional[float] = None
    fine: Optional[float] = None
    mode: Optional[str] = None
    description: Optional[str] = None
    transaction_date: Optional[datetime] = None


@dataclass
class LoanRequest:
    member_id: int
    loan_amount: float
    description: Optional[str] = None
    override_enabled: bool = False
    next_due_date: Optional[datetime] = None


@dataclass
class LoanValidation:
    """Underwriting decision; the ceiling is reported even on rejection."""
    approved: bool
    max_loan_amount: float
    current_deposits: float
    existing_loans: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None
    message: Optional[str] = None

    def __bool__(self) -> bool:
        return self.approved


@dataclass
class MaturityCalculation:
    member_id: int
    total_deposit: float
    total_interest: float
    pending_loan: float
    net_payable: float
    months_completed: int
    remaining_months: int
    start_date: datetime
    maturity_date: datetime
    monthly_interest_rate: float
    status: str
