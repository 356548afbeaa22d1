"""Services package for the society ledger engine.

This package contains the focused service classes behind the
SocietyEngine facade: the member passbook, loan underwriting and servicing,
and deposit maturity.
"""

from .ledger_service import LedgerService
from .loan_service import LoanService
from .maturity_service import MaturityService

__all__ = ['LedgerService', 'LoanService', 'MaturityService']
