"""Centralized configuration for the society ledger engine.

This module contains the business rule constants, default values and storage
formats used by the ledger, loan and maturity services. Some rules can be
overridden per database through the ``settings`` table (see
``DatabaseManager.get_setting``).
"""

# =============================================================================
# LEDGER
# =============================================================================

# Informational monthly interest recorded on installment entries (1%)
LEDGER_MONTHLY_INTEREST_RATE = 0.01

# Payment modes accepted on ledger entries
PAYMENT_MODES = ("CASH", "BANK", "BANK_TRANSFER", "UPI", "CHEQUE")
DEFAULT_PAYMENT_MODE = "CASH"

# Default and largest page size for transaction history
DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 500

# =============================================================================
# LOAN UNDERWRITING
# =============================================================================

# Maximum loan principal as a fraction of cumulative deposits (80% rule)
LOAN_TO_DEPOSIT_RATIO = 0.80

# Minimum loan amount allowed
MIN_LOAN_AMOUNT = 1000

# Interest rate stored on new loans, in percent per month
DEFAULT_LOAN_INTEREST_RATE = 1.0

# Days until the next installment is due
LOAN_DUE_DAYS = 30

# =============================================================================
# MATURITY
# =============================================================================

# Tenure after joining at which deposits mature
MATURITY_TENURE_MONTHS = 36

# Simple (non-compounding) monthly accrual on deposits
MATURITY_MONTHLY_INTEREST_RATE = 0.002778

# Length of a "completed month" when counting tenure
MATURITY_MONTH_DAYS = 30

# Look-ahead window for members approaching maturity
APPROACHING_MATURITY_MONTHS = 3

# =============================================================================
# STORAGE
# =============================================================================

# Date format for storage (ISO 8601)
DATE_FORMAT_STORAGE = "%Y-%m-%d"

# Timestamp format for storage
DATETIME_FORMAT_STORAGE = "%Y-%m-%d %H:%M:%S"

# Seconds sqlite waits on a locked database before failing
DB_BUSY_TIMEOUT_SECONDS = 30

# Keys in the settings table that override the constants above
SETTING_LOAN_TO_DEPOSIT_RATIO = "loan_to_deposit_ratio"
SETTING_MIN_LOAN_AMOUNT = "min_loan_amount"
SETTING_MATURITY_MONTHLY_RATE = "maturity_monthly_interest_rate"
