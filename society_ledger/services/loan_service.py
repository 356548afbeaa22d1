"""Loan lifecycle service for the society ledger engine.

This service handles all loan-related operations including:
- Underwriting against the loan-to-deposit ceiling (80% rule)
- Loan creation
- The standalone interest-netting payment path (``update_loan_balance``)
- Administrative close
- Loan listings and per-member statistics

Installments recorded through the passbook are applied by ``LedgerService``,
which deducts the full nominal amount. ``update_loan_balance`` keeps its own,
different rule (interest first, then principal) for callers outside the
passbook flow.
"""
import logging
import math
from datetime import datetime, timedelta

from society_ledger.config import (
    DEFAULT_LOAN_INTEREST_RATE,
    LOAN_DUE_DAYS,
    LOAN_TO_DEPOSIT_RATIO,
    MIN_LOAN_AMOUNT,
    SETTING_LOAN_TO_DEPOSIT_RATIO,
    SETTING_MIN_LOAN_AMOUNT,
)
from society_ledger.data_structures import LoanStatus, LoanValidation
from society_ledger.exceptions import (
    ActiveLoanExistsError,
    AmountOutOfRangeError,
    InsufficientPaymentError,
    LoanInactiveError,
    LoanNotFoundError,
    MemberNotFoundError,
)
from society_ledger.result import ErrorType, Result, rejected

logger = logging.getLogger(__name__)


class LoanService:
    """Handles loan underwriting and lifecycle operations.

    Deposit totals come from the ledger; this class never reads or writes
    passbook amounts itself.
    """

    def __init__(self, db_manager, ledger_service=None):
        """Initialize LoanService.

        Args:
            db_manager: DatabaseManager instance for data persistence.
            ledger_service: Optional LedgerService instance.
        """
        self.db = db_manager
        self._ledger_service = ledger_service

    @property
    def ledger_service(self):
        """Lazy-load ledger service to avoid circular imports."""
        if self._ledger_service is None:
            from .ledger_service import LedgerService
            self._ledger_service = LedgerService(self.db)
        return self._ledger_service

    def _rule(self, key, default):
        """Business rule from the settings table, falling back to config."""
        value = self.db.get_setting(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Ignoring invalid setting {key}={value!r}, using {default}")
            return default

    # ------------------------------------------------------------------
    # Underwriting
    # ------------------------------------------------------------------

    def validate_loan_request(self, member_id, amount, override=False):
        """Validate a loan request against the underwriting rules.

        Rejections, in order, unless ``override`` is set:
            1. amount above the ceiling (deposits x ratio)
            2. member already holds an active loan
            3. amount below the minimum

        Args:
            member_id: ID of the requesting member.
            amount: Requested principal.
            override: Bypass the three checks above.

        Returns:
            LoanValidation carrying the ceiling, current deposits and existing
            active loans whether or not the request is approved.
        """
        try:
            member = self.db.get_member(member_id)
            if not member:
                return LoanValidation(
                    approved=False, max_loan_amount=0.0, current_deposits=0.0,
                    error="Member not found", error_type=ErrorType.NOT_FOUND,
                )

            total_deposits = self.ledger_service.get_total_deposits(member_id).unwrap()
            ratio = self._rule(SETTING_LOAN_TO_DEPOSIT_RATIO, LOAN_TO_DEPOSIT_RATIO)
            min_amount = self._rule(SETTING_MIN_LOAN_AMOUNT, MIN_LOAN_AMOUNT)
            max_loan_amount = round(total_deposits * ratio, 2)
            existing_loans = self.db.get_active_loans(member_id)

            def decision(approved, error=None, message=None, error_type=ErrorType.VALIDATION):
                return LoanValidation(
                    approved=approved,
                    max_loan_amount=max_loan_amount,
                    current_deposits=total_deposits,
                    existing_loans=existing_loans,
                    error=error,
                    error_type=error_type if error else None,
                    message=message,
                )

            try:
                amount = float(amount)
            except (TypeError, ValueError):
                return decision(False, "Invalid loan amount", f"Loan amount must be a number, got {amount!r}")
            if not math.isfinite(amount) or amount <= 0:
                return decision(False, "Invalid loan amount", "Loan amount must be greater than zero")

            if not override and amount > max_loan_amount:
                logger.warning(
                    f"Loan request rejected: Member={member_id}, Amount={amount}, Max={max_loan_amount}"
                )
                return decision(
                    False,
                    "Loan amount exceeds maximum allowed",
                    f"Maximum loan amount is {max_loan_amount:,.2f} "
                    f"({ratio * 100:.0f}% of total deposits {total_deposits:,.2f})",
                )

            if existing_loans and not override:
                conflict = ActiveLoanExistsError(member_id)
                return decision(
                    False,
                    conflict.message,
                    "Please clear existing loans before applying for a new one",
                    conflict.error_type,
                )

            if amount < min_amount and not override:
                return decision(
                    False,
                    "Loan amount below minimum",
                    f"Minimum loan amount is {min_amount:,.2f}",
                )

            if override:
                message = f"Loan approved with override. Amount: {amount:,.2f}"
            else:
                message = f"Loan approved. Amount: {amount:,.2f} (Max: {max_loan_amount:,.2f})"
            return decision(True, message=message)

        except Exception as e:
            logger.exception(f"validate_loan_request failed for member {member_id}")
            return LoanValidation(
                approved=False, max_loan_amount=0.0, current_deposits=0.0,
                error=str(e) or "Validation failed", error_type=ErrorType.DATABASE,
            )

    def create_loan(self, request):
        """Create a new loan after re-validating the request.

        Validation runs inside the same write transaction as the insert, so
        two concurrent requests for one member cannot both pass the
        active-loan check.

        Args:
            request: LoanRequest.

        Returns:
            Result with the created loan row.
        """
        try:
            with self.db.transaction():
                validation = self.validate_loan_request(
                    request.member_id, request.loan_amount, request.override_enabled
                )
                if not validation.approved:
                    return Result.fail(validation.error, validation.error_type, validation.message)

                amount = float(request.loan_amount)
                loan_id = self.db.add_loan(
                    request.member_id,
                    amount,
                    DEFAULT_LOAN_INTEREST_RATE,
                    request.next_due_date or self.calculate_next_due_date(),
                    override_enabled=request.override_enabled,
                    description=request.description or f"Loan of {amount:,.2f}",
                    loan_date=datetime.now(),
                )
                loan = self.db.get_loan(loan_id)
        except Exception as e:
            return rejected(logger, "create_loan", e, "Loan creation failed")

        logger.info(
            f"Loan {loan['id']} created: Member={request.member_id}, Amount={loan['loan_amount']}, "
            f"Override={bool(request.override_enabled)}"
        )
        return Result.ok(loan, f"Loan of {loan['loan_amount']:,.2f} created successfully")

    @staticmethod
    def calculate_next_due_date(from_date=None):
        """Next installment due date, LOAN_DUE_DAYS after ``from_date`` (default now)."""
        return (from_date or datetime.now()) + timedelta(days=LOAN_DUE_DAYS)

    # ------------------------------------------------------------------
    # Balance changes outside the passbook flow
    # ------------------------------------------------------------------

    def update_loan_balance(self, loan_id, payment_amount):
        """Apply a payment by netting out interest before principal.

        interest = remaining_balance x rate, principal = payment - interest.
        A payment that does not cover the interest is rejected. This is not
        the passbook installment rule; see ``LedgerService.create_entry``.

        Returns:
            Result (truthy on success) with the updated loan and the split.
        """
        try:
            with self.db.transaction():
                loan = self.db.get_loan(loan_id)
                if not loan:
                    raise LoanNotFoundError(loan_id)
                if loan['status'] != LoanStatus.ACTIVE:
                    raise LoanInactiveError(loan_id, loan['status'])

                try:
                    payment = float(payment_amount)
                except (TypeError, ValueError):
                    raise AmountOutOfRangeError('payment_amount', payment_amount)
                if not math.isfinite(payment) or payment <= 0:
                    raise AmountOutOfRangeError('payment_amount', payment_amount, minimum=0)

                balance = loan['remaining_balance']
                interest_amount = balance * (loan['interest_rate'] / 100)
                principal_amount = payment - interest_amount
                if principal_amount < 0:
                    raise InsufficientPaymentError(payment, interest_amount, loan_id)

                new_balance = balance - principal_amount
                closed = new_balance <= 0
                now = datetime.now()
                self.db.update_loan_balance(
                    loan_id,
                    balance,
                    max(0.0, new_balance),
                    LoanStatus.CLOSED if closed else LoanStatus.ACTIVE,
                    next_due_date=now if closed else self.calculate_next_due_date(now),
                )
                loan = self.db.get_loan(loan_id)
        except Exception as e:
            return rejected(logger, "update_loan_balance", e)

        logger.info(
            f"Loan {loan_id} payment applied: Interest={interest_amount:.2f}, "
            f"Principal={principal_amount:.2f}, Remaining={loan['remaining_balance']:.2f}"
        )
        return Result.ok({
            'loan': loan,
            'interest_amount': interest_amount,
            'principal_amount': principal_amount,
        })

    def close_loan(self, loan_id, reason=None):
        """Force-close a loan regardless of repayment (admin function)."""
        try:
            with self.db.transaction():
                loan = self.db.get_loan(loan_id)
                if not loan:
                    raise LoanNotFoundError(loan_id)
                if loan['status'] != LoanStatus.ACTIVE:
                    raise LoanInactiveError(loan_id, loan['status'])

                self.db.close_loan(loan_id, reason or "Loan closed manually", datetime.now())
                loan = self.db.get_loan(loan_id)
        except Exception as e:
            return rejected(logger, "close_loan", e)

        logger.info(f"Loan {loan_id} closed manually: {loan['closed_reason']}")
        return Result.ok(loan, "Loan closed successfully")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_member_loans(self, member_id, include_closed=False):
        """Member loans newest first, each with its passbook entries."""
        try:
            if not self.db.get_member(member_id):
                raise MemberNotFoundError(member_id)
            loans = self.db.get_loans(member_id, include_closed=include_closed)
            for loan in loans:
                loan['entries'] = self.db.get_loan_entries(loan['id'])
            return Result.ok(loans)
        except Exception as e:
            return rejected(logger, "get_member_loans", e)

    def get_loan_by_id(self, loan_id):
        try:
            loan = self.db.get_loan(loan_id)
            if not loan:
                raise LoanNotFoundError(loan_id)
            member = self.db.get_member(loan['member_id'])
            loan['member'] = {
                'id': member['id'],
                'name': member['name'],
                'phone': member['phone'],
                'address': member['address'],
            } if member else None
            loan['entries'] = self.db.get_loan_entries(loan_id)
            return Result.ok(loan)
        except Exception as e:
            return rejected(logger, "get_loan_by_id", e)

    def get_active_loans(self):
        """All active loans, soonest due first (admin dashboard)."""
        try:
            return Result.ok(self.db.get_all_active_loans())
        except Exception as e:
            return rejected(logger, "get_active_loans", e)

    def get_overdue_loans(self):
        try:
            return Result.ok(self.db.get_overdue_loans(datetime.now()))
        except Exception as e:
            return rejected(logger, "get_overdue_loans", e)

    def get_member_loan_stats(self, member_id):
        """Loan counts and totals for a member.

        ``total_paid`` sums the installment field of every entry linked to the
        member's loans.
        """
        try:
            if not self.db.get_member(member_id):
                raise MemberNotFoundError(member_id)

            loans = self.db.get_loans(member_id)
            payments = self.db.get_member_loan_payments(member_id)
            paid_by_loan = {
                int(loan_id): float(paid)
                for loan_id, paid in zip(payments['loan_id'], payments['total_paid'])
            }
            for loan in loans:
                loan['total_paid'] = paid_by_loan.get(loan['id'], 0.0)

            active = [loan for loan in loans if loan['status'] == LoanStatus.ACTIVE]
            return Result.ok({
                'total_loans': len(loans),
                'active_loans': len(active),
                'closed_loans': sum(1 for loan in loans if loan['status'] == LoanStatus.CLOSED),
                'total_loan_amount': float(sum(loan['loan_amount'] for loan in loans)),
                'total_remaining_balance': float(sum(loan['remaining_balance'] for loan in active)),
                'total_paid': float(payments['total_paid'].sum()) if not payments.empty else 0.0,
                'loans': loans,
            })
        except Exception as e:
            return rejected(logger, "get_member_loan_stats", e)
