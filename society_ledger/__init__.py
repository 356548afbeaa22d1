"""Ledger, loan and maturity engine for a member-based savings society."""
import logging

from society_ledger.database import DatabaseManager
from society_ledger.engine import SocietyEngine
from society_ledger.result import ErrorType, Result

__version__ = "1.0.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = ['DatabaseManager', 'SocietyEngine', 'Result', 'ErrorType', '__version__']
