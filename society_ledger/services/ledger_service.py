"""Ledger service for the society ledger engine.

This service records every member cash movement as a passbook entry:
- Deposits, expenses, fines and other income
- Loan installments (the only writer of installment-driven loan balance changes)
- Mixed entries carrying a deposit and an installment in one row
- Corrections with ledger reversal, and deletion

Deposit totals and balances are never stored; they are aggregated from the
entries on every read.
"""
import logging
import math
from datetime import datetime

from society_ledger.config import (
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_PAYMENT_MODE,
    LEDGER_MONTHLY_INTEREST_RATE,
    MAX_HISTORY_LIMIT,
    PAYMENT_MODES,
)
from society_ledger.data_structures import EntryType, LoanStatus
from society_ledger.exceptions import (
    AmountOutOfRangeError,
    ClosedLoanEntryError,
    EntryNotFoundError,
    LoanInactiveError,
    LoanNotFoundError,
    MemberNotFoundError,
    NoActiveLoanError,
    ValidationError,
)
from society_ledger.result import Result, rejected

logger = logging.getLogger(__name__)


class LedgerService:
    """Handles passbook entries and the loan balance effects of installments.

    Every mutating operation runs inside one ``db.transaction()``: the entry
    and the loan update are committed together or not at all.
    """

    def __init__(self, db_manager):
        """Initialize LedgerService.

        Args:
            db_manager: DatabaseManager instance for data persistence.
        """
        self.db = db_manager

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_entry(self, request):
        """Create a passbook entry and apply its business effects atomically.

        Args:
            request: CreateEntryRequest describing the cash event.

        Returns:
            Result whose data holds the created ``entry``, ``loan_updated``,
            ``deposit_updated`` and the applied amounts.
        """
        try:
            with self.db.transaction():
                data = self._create_entry(request)
        except Exception as e:
            return rejected(logger, "create_entry", e, "Failed to create transaction entry")

        logger.info(
            f"Entry {data['entry']['id']} created: Member={request.member_id}, "
            f"Type={data['transaction_type']}, Deposit={data['deposit_amount']}, "
            f"Installment={data['installment_amount']}"
        )
        return Result.ok(data, f"{data['transaction_type']} transaction completed successfully")

    def _create_entry(self, request):
        entry_type = str(request.type or "").upper()
        if entry_type not in EntryType.ALL:
            raise ValidationError(f"Unknown entry type: {request.type}")
        mode = self._normalize_mode(request.mode)

        member = self.db.get_member(request.member_id)
        if not member:
            raise MemberNotFoundError(request.member_id)

        deposit = 0.0
        installment = 0.0
        interest = 0.0
        fine = 0.0
        loan_id = None

        if entry_type == EntryType.MIXED:
            deposit = self._non_negative('deposit_amount', request.deposit_amount)
            installment = self._non_negative('installment_amount', request.installment_amount)
            interest = self._non_negative('interest_amount', request.interest_amount)
            fine = self._non_negative('fine_amount', request.fine_amount)
            if deposit <= 0 and installment <= 0:
                raise ValidationError("Mixed transaction needs a deposit or an installment amount")
        else:
            amount = self._positive('amount', request.amount)
            if entry_type in (EntryType.DEPOSIT, EntryType.OTHER):
                deposit = amount
            elif entry_type == EntryType.EXPENSE:
                deposit = -amount
            elif entry_type == EntryType.INSTALLMENT:
                installment = amount
            elif entry_type == EntryType.FINE:
                fine = amount
                if request.loan_id is not None:
                    loan_id = self._member_loan(request.member_id, request.loan_id)['id']

        loan = None
        if installment > 0:
            no_loan_message = (
                "No active loan found for installment portion of mixed transaction"
                if entry_type == EntryType.MIXED else
                "No active loan found for this member"
            )
            loan = self._active_loan_for(request.member_id, request.loan_id, no_loan_message)
            interest = loan['remaining_balance'] * LEDGER_MONTHLY_INTEREST_RATE
            loan_id = loan['id']

        entry_id = self.db.add_entry(
            request.member_id,
            request.transaction_date or datetime.now(),
            entry_type,
            deposit_amount=deposit,
            loan_installment=installment,
            interest_auto=interest,
            fine_auto=fine,
            mode=mode,
            loan_id=loan_id,
            description=request.description or f"{entry_type} transaction",
        )

        if loan is not None:
            loan = self._apply_installment(loan, installment)

        return {
            'entry': self.db.get_entry(entry_id),
            'loan_updated': loan is not None,
            'deposit_updated': deposit > 0,
            'transaction_type': entry_type,
            'mixed_transaction': entry_type == EntryType.MIXED,
            'deposit_amount': deposit,
            'installment_amount': installment,
            'total_deposits_added': max(0.0, deposit),
            'loan': loan,
        }

    def update_entry(self, request):
        """Update an entry's amounts with ledger reversal.

        A changed installment first reverses the old amount on the loan it was
        applied to, then applies the new amount, before the entry itself is
        rewritten. Both happen in one transaction.

        Args:
            request: UpdateEntryRequest; fields left as None keep their value.

        Returns:
            Result with ``updated_entry``, ``loan_updated``,
            ``old_installment_amount``, ``new_installment_amount`` and
            ``ledger_reversal_applied``.
        """
        try:
            with self.db.transaction():
                data = self._update_entry(request)
        except Exception as e:
            return rejected(logger, "update_entry", e, "Entry update failed")

        logger.info(
            f"Entry {request.entry_id} updated: Installment "
            f"{data['old_installment_amount']} -> {data['new_installment_amount']}"
        )
        return Result.ok(data, "Entry updated successfully with proper ledger reversal")

    def _update_entry(self, request):
        entry = self.db.get_entry(request.entry_id)
        if not entry:
            raise EntryNotFoundError(request.entry_id)
        if not self.db.get_member(request.member_id):
            raise MemberNotFoundError(request.member_id)
        if entry['member_id'] != request.member_id:
            raise EntryNotFoundError(request.entry_id, request.member_id)

        fields = {}
        if request.deposit is not None:
            fields['deposit_amount'] = self._finite('deposit', request.deposit)
        if request.interest is not None:
            fields['interest_auto'] = self._non_negative('interest', request.interest)
        if request.fine is not None:
            fields['fine_auto'] = self._non_negative('fine', request.fine)
        if request.mode is not None:
            fields['mode'] = self._normalize_mode(request.mode)
        if request.description is not None:
            fields['description'] = request.description
        if request.transaction_date is not None:
            fields['transaction_date'] = request.transaction_date

        old_installment = float(entry['loan_installment'] or 0)
        new_installment = old_installment
        if request.installment is not None:
            new_installment = self._non_negative('installment', request.installment)

        loan = None
        if new_installment != old_installment:
            if old_installment > 0 and entry['loan_id']:
                loan = self.db.get_loan(entry['loan_id'])
                if not loan:
                    raise LoanNotFoundError(entry['loan_id'], request.member_id)
                # A manual close is final; only repayment-closed loans reopen
                if loan['status'] == LoanStatus.CLOSED and loan['closed_reason']:
                    raise ClosedLoanEntryError(
                        request.entry_id, loan['id'],
                        "Cannot change the installment of a transaction linked to a manually closed loan",
                    )
                loan = self._rebalance_loan(loan, old_installment, new_installment)
            elif new_installment > 0:
                loan = self._active_loan_for(request.member_id)
                if request.interest is None:
                    fields['interest_auto'] = loan['remaining_balance'] * LEDGER_MONTHLY_INTEREST_RATE
                loan = self._rebalance_loan(loan, 0.0, new_installment)
                fields['loan_id'] = loan['id']
            fields['loan_installment'] = new_installment

        self.db.update_entry(request.entry_id, **fields)

        return {
            'updated_entry': self.db.get_entry(request.entry_id),
            'loan_updated': loan is not None,
            'old_installment_amount': old_installment,
            'new_installment_amount': new_installment,
            'ledger_reversal_applied': old_installment != new_installment,
            'deposit_changed': (
                'deposit_amount' in fields
                and fields['deposit_amount'] != float(entry['deposit_amount'] or 0)
            ),
            'loan': loan,
        }

    def delete_entry(self, entry_id, member_id):
        """Delete an entry that belongs to the member.

        Entries linked to a closed loan are protected. An installment on a
        still-active loan is reversed onto the loan balance in the same
        transaction, mirroring ``update_entry``.
        """
        try:
            with self.db.transaction():
                entry = self.db.get_member_entry(entry_id, member_id)
                if not entry:
                    raise EntryNotFoundError(entry_id, member_id)

                loan = None
                loan_reversed = False
                if entry['loan_id']:
                    loan = self.db.get_loan(entry['loan_id'])
                    if loan and loan['status'] == LoanStatus.CLOSED:
                        raise ClosedLoanEntryError(entry_id, loan['id'])

                installment = float(entry['loan_installment'] or 0)
                if loan and installment > 0:
                    loan = self._rebalance_loan(loan, installment, 0.0)
                    loan_reversed = True

                self.db.delete_entry(entry_id)
        except Exception as e:
            return rejected(logger, "delete_entry", e, "Failed to delete transaction entry")

        logger.info(f"Entry {entry_id} deleted for member {member_id} (loan reversed: {loan_reversed})")
        return Result.ok(
            {'entry_id': entry_id, 'loan_reversed': loan_reversed, 'loan': loan},
            "Transaction entry deleted successfully"
        )

    # ------------------------------------------------------------------
    # Loan balance effects
    # ------------------------------------------------------------------

    def _apply_installment(self, loan, amount):
        """Deduct the full nominal installment from the loan; close it at zero."""
        new_balance = loan['remaining_balance'] - amount
        closed = new_balance <= 0
        self.db.update_loan_balance(
            loan['id'],
            loan['remaining_balance'],
            max(0.0, new_balance),
            LoanStatus.CLOSED if closed else LoanStatus.ACTIVE,
            next_due_date=datetime.now() if closed else None,
        )
        if closed:
            logger.info(f"Loan {loan['id']} closed by installment")
        return self.db.get_loan(loan['id'])

    def _rebalance_loan(self, loan, reversed_amount, applied_amount):
        """Add back ``reversed_amount`` then deduct ``applied_amount``, clamped at zero."""
        reversed_balance = loan['remaining_balance'] + reversed_amount
        final_balance = max(0.0, reversed_balance - applied_amount)
        closed = final_balance <= 0
        closing_now = closed and loan['status'] != LoanStatus.CLOSED
        self.db.update_loan_balance(
            loan['id'],
            loan['remaining_balance'],
            final_balance,
            LoanStatus.CLOSED if closed else LoanStatus.ACTIVE,
            next_due_date=datetime.now() if closing_now else None,
        )
        logger.debug(
            f"Loan {loan['id']} rebalanced: {loan['remaining_balance']} "
            f"+{reversed_amount} -{applied_amount} = {final_balance}"
        )
        return self.db.get_loan(loan['id'])

    def _active_loan_for(self, member_id, loan_id=None, message="No active loan found for this member"):
        if loan_id is not None:
            loan = self._member_loan(member_id, loan_id)
            if loan['status'] != LoanStatus.ACTIVE:
                raise LoanInactiveError(loan_id, loan['status'])
            return loan

        loan = self.db.get_latest_active_loan(member_id)
        if not loan:
            raise NoActiveLoanError(member_id, message)
        return loan

    def _member_loan(self, member_id, loan_id):
        loan = self.db.get_loan(loan_id)
        if not loan or loan['member_id'] != member_id:
            raise LoanNotFoundError(loan_id, member_id)
        return loan

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _finite(field, value):
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise AmountOutOfRangeError(field, value)
        if not math.isfinite(number):
            raise AmountOutOfRangeError(field, value)
        return number

    def _positive(self, field, value):
        number = self._finite(field, value)
        if number <= 0:
            raise AmountOutOfRangeError(field, value, minimum=0)
        return number

    def _non_negative(self, field, value):
        if value is None:
            return 0.0
        number = self._finite(field, value)
        if number < 0:
            raise AmountOutOfRangeError(field, value, minimum=0)
        return number

    @staticmethod
    def _normalize_mode(mode):
        if mode is None:
            return DEFAULT_PAYMENT_MODE
        normalized = str(mode).strip().upper()
        if normalized not in PAYMENT_MODES:
            raise ValidationError(f"Unsupported payment mode: {mode}", {'allowed': list(PAYMENT_MODES)})
        return normalized

    # ------------------------------------------------------------------
    # Aggregates (computed on every read)
    # ------------------------------------------------------------------

    def get_total_deposits(self, member_id):
        """Sum of positive deposit amounts for a member."""
        return self._aggregate(member_id, 'deposit_amount', "get_total_deposits")

    def get_total_installments(self, member_id):
        """Sum of loan installments paid by a member."""
        return self._aggregate(member_id, 'loan_installment', "get_total_installments")

    def _aggregate(self, member_id, column, operation):
        try:
            if not self.db.get_member(member_id):
                raise MemberNotFoundError(member_id)
            return Result.ok(self.db.sum_positive(member_id, column))
        except Exception as e:
            return rejected(logger, operation, e)

    def get_current_balance(self, member_id):
        """Total deposits minus total installments."""
        deposits = self.get_total_deposits(member_id)
        if not deposits:
            return deposits
        installments = self.get_total_installments(member_id)
        if not installments:
            return installments
        return Result.ok(deposits.data - installments.data)

    def get_transaction_history(self, member_id, limit=DEFAULT_HISTORY_LIMIT):
        """Entries newest first (transaction date, then creation time).

        Each linked entry carries a ``loan`` summary with id, amount,
        remaining balance and status.
        """
        try:
            if limit is None or int(limit) <= 0:
                raise ValidationError(f"Invalid history limit: {limit}")
            limit = min(int(limit), MAX_HISTORY_LIMIT)

            if not self.db.get_member(member_id):
                raise MemberNotFoundError(member_id)

            loans = {loan['id']: loan for loan in self.db.get_loans(member_id)}
            history = []
            for entry in self.db.get_entries(member_id, limit):
                loan = loans.get(entry['loan_id'])
                entry['loan'] = {
                    'id': loan['id'],
                    'loan_amount': loan['loan_amount'],
                    'remaining_balance': loan['remaining_balance'],
                    'status': loan['status'],
                } if loan else None
                history.append(entry)
            return Result.ok(history)
        except Exception as e:
            return rejected(logger, "get_transaction_history", e)

    def get_entry(self, entry_id):
        try:
            entry = self.db.get_entry(entry_id)
            if not entry:
                raise EntryNotFoundError(entry_id)
            return Result.ok(entry)
        except Exception as e:
            return rejected(logger, "get_entry", e)

    def get_member_summary(self, member_id):
        """Passbook totals for a member in one pass over the ledger frame."""
        try:
            if not self.db.get_member(member_id):
                raise MemberNotFoundError(member_id)

            df = self.db.get_ledger(member_id)
            if df.empty:
                return Result.ok({
                    'total_deposits': 0.0, 'total_expenses': 0.0,
                    'total_installments': 0.0, 'total_fines': 0.0,
                    'total_interest': 0.0, 'current_balance': 0.0,
                    'entry_count': 0, 'last_transaction_date': None,
                })

            deposits = float(df.loc[df['deposit_amount'] > 0, 'deposit_amount'].sum())
            expenses = float(-df.loc[df['deposit_amount'] < 0, 'deposit_amount'].sum())
            installments = float(df.loc[df['loan_installment'] > 0, 'loan_installment'].sum())

            return Result.ok({
                'total_deposits': deposits,
                'total_expenses': expenses,
                'total_installments': installments,
                'total_fines': float(df['fine_auto'].sum()),
                'total_interest': float(df['interest_auto'].sum()),
                'current_balance': deposits - installments,
                'entry_count': int(len(df)),
                'last_transaction_date': str(df['transaction_date'].iloc[-1]),
            })
        except Exception as e:
            return rejected(logger, "get_member_summary", e)
