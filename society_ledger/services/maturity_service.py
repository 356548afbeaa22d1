"""Maturity service for the society ledger engine.

Projects each member's payout at the end of the fixed tenure and keeps one
maturity record per member:
- Pure projection from current deposits, pending loans and tenure
- Idempotent record refresh (single member and batch)
- Terminal claim, which pays out through the ledger as a deposit entry
- Administrative interest adjustment and reporting
"""
import logging
import math
from datetime import datetime

from dateutil.relativedelta import relativedelta

from society_ledger.config import (
    APPROACHING_MATURITY_MONTHS,
    MATURITY_MONTH_DAYS,
    MATURITY_MONTHLY_INTEREST_RATE,
    MATURITY_TENURE_MONTHS,
    SETTING_MATURITY_MONTHLY_RATE,
)
from society_ledger.data_structures import (
    CreateEntryRequest,
    EntryType,
    MaturityCalculation,
    MaturityStatus,
    MemberStatus,
)
from society_ledger.database import parse_timestamp
from society_ledger.exceptions import (
    AmountOutOfRangeError,
    DatabaseError,
    MaturityRecordNotFoundError,
    MaturityStateError,
    MemberNotFoundError,
)
from society_ledger.result import Result, rejected

logger = logging.getLogger(__name__)

PAYOUT_MODE = "BANK_TRANSFER"


class MaturityService:
    """Handles maturity projections and the maturity record lifecycle.

    Record status only moves forward: active -> matured -> claimed. Claimed
    records are frozen.
    """

    def __init__(self, db_manager, ledger_service=None):
        """Initialize MaturityService.

        Args:
            db_manager: DatabaseManager instance for data persistence.
            ledger_service: Optional LedgerService used for deposit totals and payouts.
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

    def _monthly_rate(self):
        value = self.db.get_setting(SETTING_MATURITY_MONTHLY_RATE)
        if value is None:
            return MATURITY_MONTHLY_INTEREST_RATE
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Ignoring invalid setting {SETTING_MATURITY_MONTHLY_RATE}={value!r}")
            return MATURITY_MONTHLY_INTEREST_RATE

    @staticmethod
    def net_payable(record):
        """Payout for a stored record: deposit + interest - pending loan.

        An administrative ``adjusted_interest`` replaces the computed interest.
        """
        interest = record['adjusted_interest']
        if interest is None:
            interest = record['full_interest'] or 0.0
        return (record['total_deposit'] or 0.0) + interest - (record['loan_adjustment'] or 0.0)

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def calculate_maturity(self, member_id):
        """Project a member's maturity from current state. No writes.

        Returns:
            Result with a MaturityCalculation.
        """
        try:
            calculation = self._calculate(member_id)
        except Exception as e:
            return rejected(logger, "calculate_maturity", e, "Failed to calculate maturity")
        return Result.ok(calculation, f"Maturity calculated successfully. Status: {calculation.status}")

    def _calculate(self, member_id, now=None):
        member = self.db.get_member(member_id)
        if not member:
            raise MemberNotFoundError(member_id)

        now = now or datetime.now()
        total_deposit = self.ledger_service.get_total_deposits(member_id).unwrap()
        pending_loan = sum(loan['remaining_balance'] for loan in self.db.get_active_loans(member_id))

        joining_date = parse_timestamp(member['joining_date'] or member['created_at'])
        months_completed = max(0, (now - joining_date).days // MATURITY_MONTH_DAYS)

        rate = self._monthly_rate()
        total_interest = total_deposit * rate * months_completed
        maturity_date = joining_date + relativedelta(months=MATURITY_TENURE_MONTHS)

        return MaturityCalculation(
            member_id=member_id,
            total_deposit=total_deposit,
            total_interest=total_interest,
            pending_loan=pending_loan,
            net_payable=total_deposit + total_interest - pending_loan,
            months_completed=months_completed,
            remaining_months=max(0, MATURITY_TENURE_MONTHS - months_completed),
            start_date=joining_date,
            maturity_date=maturity_date,
            monthly_interest_rate=rate,
            status=MaturityStatus.MATURED if now >= maturity_date else MaturityStatus.ACTIVE,
        )

    # ------------------------------------------------------------------
    # Record lifecycle
    # ------------------------------------------------------------------

    def create_or_update_maturity_record(self, member_id, manual_override=False):
        """Upsert the member's maturity record from a fresh projection.

        The start date is fixed on creation and kept on every refresh. A
        matured record never returns to active, an existing manual override
        stays set, and claimed records are returned untouched.
        """
        try:
            with self.db.transaction():
                existing = self.db.get_maturity_record_by_member(member_id)
                if existing and existing['status'] == MaturityStatus.CLAIMED:
                    return Result.ok(existing, "Maturity already claimed; record not refreshed")

                calculation = self._calculate(member_id)
                status = calculation.status
                if existing and existing['status'] == MaturityStatus.MATURED:
                    status = MaturityStatus.MATURED

                fields = {
                    'total_deposit': calculation.total_deposit,
                    'maturity_date': calculation.maturity_date,
                    'months_completed': calculation.months_completed,
                    'remaining_months': calculation.remaining_months,
                    'monthly_interest_rate': calculation.monthly_interest_rate,
                    'current_interest': calculation.total_interest,
                    'full_interest': calculation.total_interest,
                    'loan_adjustment': calculation.pending_loan,
                    'status': status,
                }

                if existing:
                    fields['manual_override'] = 1 if (manual_override or existing['manual_override']) else 0
                    self.db.update_maturity_record(existing['id'], **fields)
                    record_id = existing['id']
                else:
                    fields['manual_override'] = 1 if manual_override else 0
                    record_id = self.db.add_maturity_record(
                        member_id, start_date=calculation.start_date, **fields
                    )
                record = self.db.get_maturity_record(record_id)
        except Exception as e:
            return rejected(logger, "create_or_update_maturity_record", e,
                            "Failed to create/update maturity record")

        logger.info(
            f"Maturity record {record['id']} refreshed: Member={member_id}, "
            f"Status={record['status']}, Months={record['months_completed']}"
        )
        return Result.ok(record, "Maturity record updated successfully")

    def claim_maturity(self, record_id):
        """Claim a matured record and pay it out as a ledger deposit.

        The matured -> claimed flip is committed first, then the payout entry
        is written. A retried claim therefore finds the record claimed and is
        rejected before any second payout.

        Returns:
            Result with the claimed ``record``, ``net_payable`` and the
            ``payout_entry`` (None when nothing is payable).
        """
        try:
            with self.db.transaction():
                record = self.db.get_maturity_record(record_id)
                if not record:
                    raise MaturityRecordNotFoundError(record_id)
                if record['status'] == MaturityStatus.CLAIMED:
                    raise MaturityStateError("Maturity already claimed", record_id, record['status'])
                if record['status'] != MaturityStatus.MATURED:
                    raise MaturityStateError("Maturity not yet matured", record_id, record['status'])

                net_payable = self.net_payable(record)
                if not self.db.mark_maturity_claimed(record_id, datetime.now()):
                    raise MaturityStateError("Maturity already claimed", record_id)
        except Exception as e:
            return rejected(logger, "claim_maturity", e, "Failed to claim maturity")

        logger.info(f"Maturity record {record_id} claimed: NetPayable={net_payable:.2f}")

        payout_entry = None
        if net_payable > 0:
            member = self.db.get_member(record['member_id'])
            request = CreateEntryRequest(
                member_id=record['member_id'],
                type=EntryType.DEPOSIT,
                amount=net_payable,
                description=f"Maturity claim - {member['name']}",
                mode=PAYOUT_MODE,
            )
            try:
                with self.db.transaction():
                    payout = self.ledger_service.create_entry(request)
                    if not payout:
                        raise DatabaseError(payout.error or "Payout entry failed")
                    payout_entry = payout.data['entry']
                    self.db.update_maturity_record(record_id, payout_entry_id=payout_entry['id'])
            except Exception as e:
                return rejected(
                    logger, "claim_maturity payout", e,
                    f"Maturity record {record_id} is claimed but its payout entry was not "
                    f"recorded; reconcile manually",
                )

        return Result.ok(
            {
                'record': self.db.get_maturity_record(record_id),
                'net_payable': net_payable,
                'payout_entry': payout_entry,
            },
            f"Maturity claim of {net_payable:,.2f} processed successfully",
        )

    def adjust_maturity_interest(self, record_id, adjusted_interest, reason=None):
        """Manually set the interest used for the payout (admin function)."""
        try:
            with self.db.transaction():
                record = self.db.get_maturity_record(record_id)
                if not record:
                    raise MaturityRecordNotFoundError(record_id)
                if record['status'] == MaturityStatus.CLAIMED:
                    raise MaturityStateError(
                        "Cannot adjust a claimed maturity record", record_id, record['status']
                    )
                try:
                    amount = float(adjusted_interest)
                except (TypeError, ValueError):
                    raise AmountOutOfRangeError('adjusted_interest', adjusted_interest)
                if not math.isfinite(amount) or amount < 0:
                    raise AmountOutOfRangeError('adjusted_interest', adjusted_interest, minimum=0)

                self.db.update_maturity_record(
                    record_id,
                    adjusted_interest=amount,
                    adjustment_reason=reason,
                    manual_override=1,
                )
                record = self.db.get_maturity_record(record_id)
        except Exception as e:
            return rejected(logger, "adjust_maturity_interest", e)

        logger.info(f"Maturity record {record_id} interest adjusted to {amount:.2f}: {reason or '-'}")
        return Result.ok(record, "Maturity interest adjusted")

    def update_all_maturity_records(self):
        """Refresh every active member's record, one transaction per member.

        A failing member is tallied and skipped; the batch itself never raises.
        """
        try:
            members = self.db.get_members(status=MemberStatus.ACTIVE)
        except Exception as e:
            return rejected(logger, "update_all_maturity_records", e)

        updated = 0
        skipped = 0
        failures = []
        for member in members:
            result = self.create_or_update_maturity_record(member['id'])
            if not result:
                failures.append({'member_id': member['id'], 'error': result.error})
            elif result.data['status'] == MaturityStatus.CLAIMED:
                skipped += 1
            else:
                updated += 1

        logger.info(
            f"Maturity batch finished: Updated={updated}, Skipped={skipped}, Errors={len(failures)}"
        )
        return Result.ok({
            'updated': updated,
            'skipped': skipped,
            'errors': len(failures),
            'failures': failures,
        })

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_maturity_record(self, member_id):
        """The member's record, or ``data=None`` when none has been created yet."""
        try:
            if not self.db.get_member(member_id):
                raise MemberNotFoundError(member_id)
            return Result.ok(self.db.get_maturity_record_by_member(member_id))
        except Exception as e:
            return rejected(logger, "get_maturity_record", e)

    def get_matured_records(self):
        """Records awaiting a claim, earliest maturity first."""
        try:
            return Result.ok(self.db.get_maturity_records(status=MaturityStatus.MATURED))
        except Exception as e:
            return rejected(logger, "get_matured_records", e)

    def get_members_approaching_maturity(self):
        try:
            horizon = datetime.now() + relativedelta(months=APPROACHING_MATURITY_MONTHS)
            return Result.ok(
                self.db.get_maturity_records(status=MaturityStatus.ACTIVE, maturity_before=horizon)
            )
        except Exception as e:
            return rejected(logger, "get_members_approaching_maturity", e)

    def get_member_maturity_stats(self, member_id):
        calculation = self.calculate_maturity(member_id)
        if not calculation:
            return calculation
        try:
            record = self.db.get_maturity_record_by_member(member_id)
        except Exception as e:
            return rejected(logger, "get_member_maturity_stats", e)

        return Result.ok({
            'calculation': calculation.data,
            'record': record,
            'is_matured': calculation.data.status == MaturityStatus.MATURED,
            'can_claim': record is not None and record['status'] == MaturityStatus.MATURED,
        })

    def get_maturity_summary(self):
        """Dashboard totals across all maturity records."""
        try:
            df = self.db.get_maturity_records_df()
            if df.empty:
                return Result.ok({
                    'total_records': 0, 'matured_records': 0,
                    'claimed_records': 0, 'active_records': 0,
                    'total_deposit_value': 0.0, 'total_interest_value': 0.0,
                    'total_loan_adjustments': 0.0, 'total_net_payable': 0.0,
                })

            counts = df['status'].value_counts()
            interest = df['adjusted_interest'].fillna(df['full_interest']).fillna(0.0)
            deposits = float(df['total_deposit'].fillna(0.0).sum())
            interest_total = float(interest.sum())
            adjustments = float(df['loan_adjustment'].fillna(0.0).sum())

            return Result.ok({
                'total_records': int(len(df)),
                'matured_records': int(counts.get(MaturityStatus.MATURED, 0)),
                'claimed_records': int(counts.get(MaturityStatus.CLAIMED, 0)),
                'active_records': int(counts.get(MaturityStatus.ACTIVE, 0)),
                'total_deposit_value': deposits,
                'total_interest_value': interest_total,
                'total_loan_adjustments': adjustments,
                'total_net_payable': deposits + interest_total - adjustments,
            })
        except Exception as e:
            return rejected(logger, "get_maturity_summary", e)
