"""Business logic engine for the society ledger.

This module provides the SocietyEngine class which acts as a facade over
the focused service classes in society_ledger/services/.

Service Classes:
    - LedgerService: Member passbook entries and derived totals
    - LoanService: Loan underwriting, servicing and closure
    - MaturityService: Deposit maturity projection, records and claims
"""
from society_ledger.services import LedgerService, LoanService, MaturityService


class SocietyEngine:
    """Handles business logic, interfacing with DatabaseManager.

    All three services share one LedgerService, so a loan or maturity
    operation that writes to the passbook goes through the same code path as
    a direct entry.

    Attributes:
        db: DatabaseManager instance for data persistence.
        ledger_service: LedgerService instance (lazy-loaded).
        loan_service: LoanService instance (lazy-loaded).
        maturity_service: MaturityService instance (lazy-loaded).
    """

    def __init__(self, db_manager):
        self.db = db_manager
        self._ledger_service = None
        self._loan_service = None
        self._maturity_service = None

    @property
    def ledger_service(self):
        """Lazy-load LedgerService instance."""
        if self._ledger_service is None:
            self._ledger_service = LedgerService(self.db)
        return self._ledger_service

    @property
    def loan_service(self):
        """Lazy-load LoanService instance."""
        if self._loan_service is None:
            self._loan_service = LoanService(self.db, self.ledger_service)
        return self._loan_service

    @property
    def maturity_service(self):
        """Lazy-load MaturityService instance."""
        if self._maturity_service is None:
            self._maturity_service = MaturityService(self.db, self.ledger_service)
        return self._maturity_service

    # Ledger

    def create_entry(self, request):
        """Record one cash event. Delegates to LedgerService."""
        return self.ledger_service.create_entry(request)

    def update_entry(self, request):
        """Edit an entry, reversing and re-applying its installment.

        Delegates to LedgerService.
        """
        return self.ledger_service.update_entry(request)

    def delete_entry(self, entry_id, member_id):
        return self.ledger_service.delete_entry(entry_id, member_id)

    def get_entry(self, entry_id):
        return self.ledger_service.get_entry(entry_id)

    def get_total_deposits(self, member_id):
        return self.ledger_service.get_total_deposits(member_id)

    def get_total_installments(self, member_id):
        return self.ledger_service.get_total_installments(member_id)

    def get_current_balance(self, member_id):
        return self.ledger_service.get_current_balance(member_id)

    def get_transaction_history(self, member_id, limit=None):
        if limit is None:
            return self.ledger_service.get_transaction_history(member_id)
        return self.ledger_service.get_transaction_history(member_id, limit)

    def get_member_summary(self, member_id):
        return self.ledger_service.get_member_summary(member_id)

    # Loans

    def validate_loan_request(self, member_id, amount, override=False):
        """Underwrite a loan request without writing anything.

        Delegates to LoanService.
        """
        return self.loan_service.validate_loan_request(member_id, amount, override)

    def create_loan(self, request):
        return self.loan_service.create_loan(request)

    def update_loan_balance(self, loan_id, payment_amount):
        """Apply a repayment with interest netted first. Delegates to LoanService."""
        return self.loan_service.update_loan_balance(loan_id, payment_amount)

    def close_loan(self, loan_id, reason=None):
        return self.loan_service.close_loan(loan_id, reason)

    def get_member_loans(self, member_id, include_closed=False):
        return self.loan_service.get_member_loans(member_id, include_closed)

    def get_loan_by_id(self, loan_id):
        return self.loan_service.get_loan_by_id(loan_id)

    def get_active_loans(self):
        return self.loan_service.get_active_loans()

    def get_overdue_loans(self):
        return self.loan_service.get_overdue_loans()

    def get_member_loan_stats(self, member_id):
        return self.loan_service.get_member_loan_stats(member_id)

    # Maturity

    def calculate_maturity(self, member_id):
        return self.maturity_service.calculate_maturity(member_id)

    def create_or_update_maturity_record(self, member_id, manual_override=False):
        return self.maturity_service.create_or_update_maturity_record(member_id, manual_override)

    def claim_maturity(self, record_id):
        """Claim a matured record and pay it out to the member's passbook.

        Delegates to MaturityService.
        """
        return self.maturity_service.claim_maturity(record_id)

    def update_all_maturity_records(self):
        return self.maturity_service.update_all_maturity_records()

    def adjust_maturity_interest(self, record_id, adjusted_interest, reason=None):
        return self.maturity_service.adjust_maturity_interest(record_id, adjusted_interest, reason)

    def get_maturity_record(self, member_id):
        return self.maturity_service.get_maturity_record(member_id)

    def get_matured_records(self):
        return self.maturity_service.get_matured_records()

    def get_members_approaching_maturity(self):
        return self.maturity_service.get_members_approaching_maturity()

    def get_member_maturity_stats(self, member_id):
        return self.maturity_service.get_member_maturity_stats(member_id)

    def get_maturity_summary(self):
        return self.maturity_service.get_maturity_summary()
