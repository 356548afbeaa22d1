"""Tests for passbook entries and their loan balance effects."""
import os
import random
import sys
import tempfile
import threading
import unittest
from datetime import datetime, timedelta
from unittest import mock

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from society_ledger.data_structures import CreateEntryRequest, EntryType, UpdateEntryRequest
from society_ledger.database import DatabaseManager
from society_ledger.result import ErrorType
from society_ledger.services import LedgerService


class LedgerTestCase(unittest.TestCase):

    def setUp(self):
        self.db = DatabaseManager(":memory:")
        self.ledger = LedgerService(self.db)
        self.member_id = self.db.add_member("Asha Rao", "98450", "asha@example.com")

    def tearDown(self):
        self.db.close()

    def entry(self, entry_type, amount=0.0, **kwargs):
        return self.ledger.create_entry(
            CreateEntryRequest(member_id=kwargs.pop('member_id', self.member_id),
                               type=entry_type, amount=amount, **kwargs)
        )

    def add_loan(self, amount, member_id=None):
        return self.db.add_loan(member_id or self.member_id, amount, 1.0, datetime.now() + timedelta(days=30))


class TestCreateEntry(LedgerTestCase):

    def test_deposit_increases_deposits(self):
        result = self.entry(EntryType.DEPOSIT, 1500)

        self.assertTrue(result)
        self.assertTrue(result.data['deposit_updated'])
        self.assertFalse(result.data['loan_updated'])
        self.assertEqual(result.data['entry']['deposit_amount'], 1500)
        self.assertEqual(result.data['entry']['mode'], "CASH")
        self.assertEqual(result.data['entry']['description'], "DEPOSIT transaction")
        self.assertEqual(self.ledger.get_total_deposits(self.member_id).data, 1500)

    def test_expense_is_stored_negative_and_excluded_from_deposits(self):
        self.entry(EntryType.DEPOSIT, 1000)
        result = self.entry(EntryType.EXPENSE, 200)

        self.assertTrue(result)
        self.assertEqual(result.data['entry']['deposit_amount'], -200)
        self.assertFalse(result.data['deposit_updated'])
        self.assertEqual(self.ledger.get_total_deposits(self.member_id).data, 1000)

    def test_other_counts_as_deposit(self):
        self.entry(EntryType.OTHER, 75, mode="upi")
        self.assertEqual(self.ledger.get_total_deposits(self.member_id).data, 75)
        self.assertEqual(self.db.get_entries(self.member_id)[0]['mode'], "UPI")

    def test_fine_only_touches_fine_column(self):
        result = self.entry(EntryType.FINE, 50)

        entry = result.data['entry']
        self.assertEqual(entry['fine_auto'], 50)
        self.assertEqual(entry['deposit_amount'], 0)
        self.assertEqual(entry['loan_installment'], 0)
        self.assertEqual(self.ledger.get_total_deposits(self.member_id).data, 0)

    def test_installment_reduces_newest_active_loan(self):
        self.add_loan(3000)
        newest = self.add_loan(5000)

        result = self.entry(EntryType.INSTALLMENT, 1000)

        self.assertTrue(result)
        self.assertTrue(result.data['loan_updated'])
        self.assertEqual(result.data['entry']['loan_id'], newest)
        # Informational interest is 1% of the balance before the installment
        self.assertAlmostEqual(result.data['entry']['interest_auto'], 50.0)
        self.assertEqual(self.db.get_loan(newest)['remaining_balance'], 4000)

    def test_installment_with_explicit_loan(self):
        older = self.add_loan(3000)
        self.add_loan(5000)

        result = self.entry(EntryType.INSTALLMENT, 500, loan_id=older)

        self.assertTrue(result)
        self.assertEqual(self.db.get_loan(older)['remaining_balance'], 2500)

    def test_installment_closes_loan_at_zero_and_clamps(self):
        loan_id = self.add_loan(800)

        result = self.entry(EntryType.INSTALLMENT, 1000)

        loan = self.db.get_loan(loan_id)
        self.assertTrue(result)
        self.assertEqual(loan['remaining_balance'], 0)
        self.assertEqual(loan['status'], 'closed')

    def test_installment_without_loan_fails_and_writes_nothing(self):
        result = self.entry(EntryType.INSTALLMENT, 1000)

        self.assertFalse(result)
        self.assertEqual(result.error_type, ErrorType.VALIDATION)
        self.assertEqual(result.error, "No active loan found for this member")
        self.assertEqual(self.db.get_entries(self.member_id), [])

    def test_installment_on_closed_loan_rejected(self):
        loan_id = self.add_loan(1000)
        self.db.close_loan(loan_id, "settled", datetime.now())

        result = self.entry(EntryType.INSTALLMENT, 100, loan_id=loan_id)

        self.assertFalse(result)
        self.assertEqual(result.error_type, ErrorType.STATE_CONFLICT)

    def test_installment_against_another_members_loan_rejected(self):
        other = self.db.add_member("Other")
        loan_id = self.add_loan(1000, member_id=other)

        result = self.entry(EntryType.INSTALLMENT, 100, loan_id=loan_id)

        self.assertFalse(result)
        self.assertEqual(result.error_type, ErrorType.NOT_FOUND)
        self.assertEqual(self.db.get_loan(loan_id)['remaining_balance'], 1000)

    def test_mixed_single_row(self):
        loan_id = self.add_loan(5000)

        result = self.entry(EntryType.MIXED, deposit_amount=2000, installment_amount=1000)

        self.assertTrue(result)
        self.assertTrue(result.data['mixed_transaction'])
        self.assertTrue(result.data['loan_updated'])
        self.assertTrue(result.data['deposit_updated'])
        self.assertEqual(result.data['total_deposits_added'], 2000)
        self.assertEqual(len(self.db.get_entries(self.member_id)), 1)

        entry = result.data['entry']
        self.assertEqual(entry['deposit_amount'], 2000)
        self.assertEqual(entry['loan_installment'], 1000)
        self.assertAlmostEqual(entry['interest_auto'], 50.0)
        self.assertEqual(self.db.get_loan(loan_id)['remaining_balance'], 4000)

    def test_mixed_without_loan_rolls_back_deposit(self):
        result = self.entry(EntryType.MIXED, deposit_amount=2000, installment_amount=1000)

        self.assertFalse(result)
        self.assertEqual(
            result.error, "No active loan found for installment portion of mixed transaction"
        )
        self.assertEqual(self.db.get_entries(self.member_id), [])
        self.assertEqual(self.ledger.get_total_deposits(self.member_id).data, 0)

    def test_mixed_deposit_only_needs_no_loan(self):
        result = self.entry(EntryType.MIXED, deposit_amount=300, fine_amount=20)

        self.assertTrue(result)
        self.assertFalse(result.data['loan_updated'])
        self.assertEqual(result.data['entry']['fine_auto'], 20)

    def test_validation_failures(self):
        cases = [
            (EntryType.DEPOSIT, {'amount': 0}),
            (EntryType.DEPOSIT, {'amount': -5}),
            (EntryType.DEPOSIT, {'amount': float('nan')}),
            (EntryType.DEPOSIT, {'amount': 10, 'mode': 'BARTER'}),
            ("TRANSFER", {'amount': 10}),
            (EntryType.MIXED, {'deposit_amount': 0, 'installment_amount': 0}),
            (EntryType.MIXED, {'deposit_amount': -1, 'installment_amount': 0}),
        ]
        for entry_type, kwargs in cases:
            with self.subTest(entry_type=entry_type, **{k: str(v) for k, v in kwargs.items()}):
                result = self.entry(entry_type, **kwargs)
                self.assertFalse(result)
                self.assertEqual(result.error_type, ErrorType.VALIDATION)
        self.assertEqual(self.db.get_entries(self.member_id), [])

    def test_unknown_member(self):
        result = self.entry(EntryType.DEPOSIT, 100, member_id=999)
        self.assertFalse(result)
        self.assertEqual(result.error_type, ErrorType.NOT_FOUND)

    def test_failure_after_insert_rolls_back_entry(self):
        loan_id = self.add_loan(5000)

        with mock.patch.object(self.db, 'update_loan_balance', side_effect=RuntimeError("disk full")):
            result = self.entry(EntryType.INSTALLMENT, 1000)

        self.assertFalse(result)
        self.assertEqual(result.error_type, ErrorType.DATABASE)
        self.assertEqual(self.db.get_entries(self.member_id), [])
        self.assertEqual(self.db.get_loan(loan_id)['remaining_balance'], 5000)


class TestBalances(LedgerTestCase):

    def test_balance_is_deposits_minus_installments(self):
        self.add_loan(100000)
        rng = random.Random(7)
        for _ in range(40):
            kind = rng.choice([EntryType.DEPOSIT, EntryType.EXPENSE, EntryType.INSTALLMENT,
                               EntryType.FINE, EntryType.MIXED])
            if kind == EntryType.MIXED:
                self.entry(kind, deposit_amount=rng.randint(0, 500), installment_amount=rng.randint(1, 200))
            else:
                self.entry(kind, rng.randint(1, 500))

        deposits = self.ledger.get_total_deposits(self.member_id).data
        installments = self.ledger.get_total_installments(self.member_id).data
        balance = self.ledger.get_current_balance(self.member_id).data

        entries = self.db.get_entries(self.member_id)
        self.assertAlmostEqual(deposits, sum(e['deposit_amount'] for e in entries if e['deposit_amount'] > 0))
        self.assertAlmostEqual(installments, sum(e['loan_installment'] for e in entries))
        self.assertAlmostEqual(balance, deposits - installments)

    def test_aggregates_for_unknown_member_fail(self):
        for result in (self.ledger.get_total_deposits(404),
                       self.ledger.get_total_installments(404),
                       self.ledger.get_current_balance(404)):
            self.assertFalse(result)
            self.assertEqual(result.error_type, ErrorType.NOT_FOUND)

    def test_member_summary(self):
        self.add_loan(5000)
        self.entry(EntryType.DEPOSIT, 1000)
        self.entry(EntryType.EXPENSE, 100)
        self.entry(EntryType.FINE, 25)
        self.entry(EntryType.INSTALLMENT, 400)

        summary = self.ledger.get_member_summary(self.member_id).data

        self.assertEqual(summary['total_deposits'], 1000)
        self.assertEqual(summary['total_expenses'], 100)
        self.assertEqual(summary['total_installments'], 400)
        self.assertEqual(summary['total_fines'], 25)
        self.assertEqual(summary['current_balance'], 600)
        self.assertEqual(summary['entry_count'], 4)

    def test_member_summary_empty(self):
        summary = self.ledger.get_member_summary(self.member_id).data
        self.assertEqual(summary['entry_count'], 0)
        self.assertIsNone(summary['last_transaction_date'])


class TestUpdateEntry(LedgerTestCase):

    def update(self, entry_id, **kwargs):
        return self.ledger.update_entry(
            UpdateEntryRequest(entry_id=entry_id, member_id=self.member_id, **kwargs)
        )

    def test_reversal_property(self):
        """Final balance equals B + old - new (clamped) for random triples."""
        rng = random.Random(42)
        for _ in range(25):
            balance = rng.randint(1, 10000)
            old = rng.randint(1, balance)
            new = rng.randint(0, 12000)
            with self.subTest(balance=balance, old=old, new=new):
                loan_id = self.add_loan(balance + old)
                entry_id = self.entry(EntryType.INSTALLMENT, old, loan_id=loan_id).data['entry']['id']
                self.assertEqual(self.db.get_loan(loan_id)['remaining_balance'], balance)

                result = self.update(entry_id, installment=new)

                self.assertTrue(result)
                loan = self.db.get_loan(loan_id)
                expected = max(0, balance + old - new)
                self.assertAlmostEqual(loan['remaining_balance'], expected)
                self.assertEqual(loan['status'], 'closed' if expected == 0 else 'active')
                self.assertEqual(self.db.get_entry(entry_id)['loan_installment'], new)
                self.assertEqual(result.data['ledger_reversal_applied'], old != new)

    def test_untouched_fields_are_kept(self):
        entry_id = self.entry(EntryType.DEPOSIT, 500, description="Monthly", mode="UPI").data['entry']['id']

        result = self.update(entry_id, deposit=700)

        entry = result.data['updated_entry']
        self.assertEqual(entry['deposit_amount'], 700)
        self.assertEqual(entry['description'], "Monthly")
        self.assertEqual(entry['mode'], "UPI")
        self.assertTrue(result.data['deposit_changed'])
        self.assertFalse(result.data['loan_updated'])

    def test_adding_installment_links_active_loan(self):
        loan_id = self.add_loan(2000)
        entry_id = self.entry(EntryType.DEPOSIT, 500).data['entry']['id']

        result = self.update(entry_id, installment=300)

        self.assertTrue(result)
        entry = result.data['updated_entry']
        self.assertEqual(entry['loan_id'], loan_id)
        self.assertAlmostEqual(entry['interest_auto'], 20.0)
        self.assertEqual(self.db.get_loan(loan_id)['remaining_balance'], 1700)

    def test_installment_edit_on_manually_closed_loan_rejected(self):
        loan_id = self.add_loan(5000)
        entry_id = self.entry(EntryType.INSTALLMENT, 1000).data['entry']['id']
        self.db.close_loan(loan_id, "Waived by committee", datetime.now())

        result = self.update(entry_id, installment=400)

        self.assertFalse(result)
        self.assertEqual(result.error_type, ErrorType.STATE_CONFLICT)
        loan = self.db.get_loan(loan_id)
        self.assertEqual(loan['status'], 'closed')
        self.assertEqual(loan['remaining_balance'], 0)
        self.assertEqual(self.db.get_entry(entry_id)['loan_installment'], 1000)

        # Edits that leave the installment alone are still allowed
        self.assertTrue(self.update(entry_id, description="Late posting"))

    def test_lower_installment_reopens_repayment_closed_loan(self):
        loan_id = self.add_loan(1000)
        entry_id = self.entry(EntryType.INSTALLMENT, 1000).data['entry']['id']
        self.assertEqual(self.db.get_loan(loan_id)['status'], 'closed')

        result = self.update(entry_id, installment=400)

        self.assertTrue(result)
        loan = self.db.get_loan(loan_id)
        self.assertEqual(loan['status'], 'active')
        self.assertEqual(loan['remaining_balance'], 600)

    def test_other_members_entry_rejected(self):
        other = self.db.add_member("Other")
        entry_id = self.entry(EntryType.DEPOSIT, 500, member_id=other).data['entry']['id']

        result = self.update(entry_id, deposit=1)

        self.assertFalse(result)
        self.assertEqual(result.error_type, ErrorType.NOT_FOUND)
        self.assertEqual(self.db.get_entry(entry_id)['deposit_amount'], 500)

    def test_failure_leaves_loan_and_entry_untouched(self):
        loan_id = self.add_loan(5000)
        entry_id = self.entry(EntryType.INSTALLMENT, 1000).data['entry']['id']

        with mock.patch.object(self.db, 'update_entry', side_effect=RuntimeError("write failed")):
            result = self.update(entry_id, installment=3000)

        self.assertFalse(result)
        self.assertEqual(self.db.get_loan(loan_id)['remaining_balance'], 4000)
        self.assertEqual(self.db.get_entry(entry_id)['loan_installment'], 1000)


class TestDeleteEntry(LedgerTestCase):

    def test_delete_reverses_installment_on_active_loan(self):
        loan_id = self.add_loan(5000)
        entry_id = self.entry(EntryType.INSTALLMENT, 1000).data['entry']['id']

        result = self.ledger.delete_entry(entry_id, self.member_id)

        self.assertTrue(result)
        self.assertTrue(result.data['loan_reversed'])
        self.assertIsNone(self.db.get_entry(entry_id))
        self.assertEqual(self.db.get_loan(loan_id)['remaining_balance'], 5000)

    def test_delete_linked_to_closed_loan_rejected(self):
        self.add_loan(1000)
        entry_id = self.entry(EntryType.INSTALLMENT, 1000).data['entry']['id']

        result = self.ledger.delete_entry(entry_id, self.member_id)

        self.assertFalse(result)
        self.assertEqual(result.error_type, ErrorType.STATE_CONFLICT)
        self.assertIsNotNone(self.db.get_entry(entry_id))

    def test_delete_other_members_entry_rejected(self):
        other = self.db.add_member("Other")
        entry_id = self.entry(EntryType.DEPOSIT, 100, member_id=other).data['entry']['id']

        result = self.ledger.delete_entry(entry_id, self.member_id)

        self.assertFalse(result)
        self.assertEqual(result.error_type, ErrorType.NOT_FOUND)
        self.assertIsNotNone(self.db.get_entry(entry_id))

    def test_delete_deposit(self):
        entry_id = self.entry(EntryType.DEPOSIT, 100).data['entry']['id']
        self.assertTrue(self.ledger.delete_entry(entry_id, self.member_id))
        self.assertEqual(self.ledger.get_total_deposits(self.member_id).data, 0)


class TestConcurrentInstallments(unittest.TestCase):
    """Several connections posting installments against one loan."""

    THREADS = 4
    PER_THREAD = 20
    LOAN_AMOUNT = 100000

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "society.db")
        with DatabaseManager(self.path) as db:
            self.member_id = db.add_member("Shared Borrower")
            self.loan_id = db.add_loan(self.member_id, self.LOAN_AMOUNT, 1.0,
                                       datetime.now() + timedelta(days=30))

    def tearDown(self):
        self.tmp.cleanup()

    def test_installments_from_parallel_writers_are_serialized(self):
        results = []
        errors = []

        def post_installments():
            try:
                with DatabaseManager(self.path) as db:
                    ledger = LedgerService(db)
                    for _ in range(self.PER_THREAD):
                        results.append(ledger.create_entry(CreateEntryRequest(
                            member_id=self.member_id, type=EntryType.INSTALLMENT,
                            amount=100, loan_id=self.loan_id,
                        )))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=post_installments) for _ in range(self.THREADS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual([r.error for r in results if not r], [])

        with DatabaseManager(self.path) as db:
            entries = db.get_entries(self.member_id)
            loan = db.get_loan(self.loan_id)
        self.assertEqual(len(entries), self.THREADS * self.PER_THREAD)
        self.assertEqual(loan['remaining_balance'], self.LOAN_AMOUNT - 100 * len(entries))


class TestHistory(LedgerTestCase):

    def test_newest_first_with_loan_summary(self):
        loan_id = self.add_loan(5000)
        base = datetime(2024, 3, 1, 10, 0, 0)
        self.entry(EntryType.DEPOSIT, 100, transaction_date=base)
        self.entry(EntryType.INSTALLMENT, 200, transaction_date=base + timedelta(days=2))
        self.entry(EntryType.DEPOSIT, 300, transaction_date=base + timedelta(days=1))

        history = self.ledger.get_transaction_history(self.member_id).data

        self.assertEqual([e['deposit_amount'] for e in history], [0, 300, 100])
        self.assertEqual(history[0]['loan']['id'], loan_id)
        self.assertEqual(history[0]['loan']['remaining_balance'], 4800)
        self.assertIsNone(history[1]['loan'])

    def test_limit(self):
        for amount in range(1, 6):
            self.entry(EntryType.DEPOSIT, amount)
        self.assertEqual(len(self.ledger.get_transaction_history(self.member_id, limit=3).data), 3)
        self.assertFalse(self.ledger.get_transaction_history(self.member_id, limit=0))

    def test_empty_history_is_success(self):
        result = self.ledger.get_transaction_history(self.member_id)
        self.assertTrue(result)
        self.assertEqual(result.data, [])

    def test_unknown_member_is_failure(self):
        result = self.ledger.get_transaction_history(404)
        self.assertFalse(result)
        self.assertEqual(result.error_type, ErrorType.NOT_FOUND)


if __name__ == '__main__':
    unittest.main()
