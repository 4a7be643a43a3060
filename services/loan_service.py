"""
Loan Underwriting & Repayment Engine.

Advances are underwritten against a heuristic 0-1000 risk score and a
prediction of the next seven days of earnings, disbursed through an
`advance` transaction, and repaid by deducting a fixed share of every
confirmed payout until the balance reaches zero. The share is withheld
when the payout is broadcast, so the worker only ever receives the net
amount and the repayment is funded from the operations wallet.
"""
import logging
from datetime import timedelta
from decimal import Decimal

from core.errors import ConflictError, ValidationError
from core.ledger import snapshot, to_usdc
from models import (
    Loan, LoanStatus, ReputationEventType, TxStatus, TxType, WorkerStatus,
    OPEN_LOAN_STATUSES, IN_FLIGHT_LOAN_STATUSES,
)

logger = logging.getLogger('gigledger.loans')

# (minimum risk score, fee percentage)
FEE_TIERS = (
    (800, Decimal('2.0')),
    (700, Decimal('3.5')),
    (600, Decimal('5.0')),
)

_AUDIT_FIELDS = ['status', 'approved_amount_usdc', 'fee_usdc', 'total_owed_usdc',
                 'remaining_balance_usdc', 'due_date', 'repaid_at', 'defaulted_at', 'tasks_repaid']


def fee_rate(risk_score: int):
    """Fee percentage for a risk score, or None when below every tier."""
    for floor, pct in FEE_TIERS:
        if risk_score >= floor:
            return pct
    return None


class LoanService:
    def __init__(self, ctx):
        self.ctx = ctx

    @property
    def ledger(self):
        return self.ctx.ledger

    @property
    def config(self):
        return self.ctx.config

    # --- Underwriting ---

    def risk_score(self, worker_id, now=None) -> dict:
        """Heuristic risk score with its factor breakdown.

        reputation 300, maturity 150, task history 250, performance 200,
        disputes 100, loan history +/-50; total clamped to 0-1000.
        """
        now = self.ctx.now(now)
        worker = self.ledger.require_worker(worker_id)
        factors = {}

        factors['reputation'] = worker.reputation_score / 1000 * 300

        age_days = max(0, (now - worker.created_at).days) if worker.created_at else 0
        factors['maturity'] = min(age_days / 90, 1) * 150

        completed_total = worker.total_tasks_completed or 0
        factors['task_history'] = min(completed_total / 50, 1) * 250

        completion_rate = self.completion_rate(worker_id, now) or 0
        events = self.ledger.reputation_events(worker_id)
        late = sum(1 for e in events if e.event_type == ReputationEventType.TASK_LATE)
        disputes = sum(1 for e in events if e.event_type == ReputationEventType.DISPUTE_FILED)
        on_time = 1 - late / completed_total if completed_total else 1
        ratings = self.ctx.reputation.ratings(worker_id)
        avg_rating = sum(ratings) / len(ratings) if ratings else 0
        factors['performance'] = (
            float(completion_rate) * 0.4 + max(0, on_time) * 0.4 + (avg_rating / 5) * 0.2
        ) * 200

        factors['disputes'] = 100 - min(disputes * 20, 100)

        history = [loan for loan in self.ledger.loans_for_worker(worker_id)
                   if loan.status not in (LoanStatus.CANCELLED, LoanStatus.PENDING)]
        on_time_repaid = sum(
            1 for loan in history
            if loan.status == LoanStatus.REPAID and loan.repaid_at and loan.due_date
            and loan.repaid_at <= loan.due_date
        )
        repayment_ratio = on_time_repaid / len(history) if history else 1
        if history and repayment_ratio == 1:
            factors['loan_history'] = 50
        elif repayment_ratio < 0.8:
            factors['loan_history'] = -50
        else:
            factors['loan_history'] = 0

        score = max(0, min(1000, round(sum(factors.values()))))
        return {"score": score, "factors": {k: round(v, 2) for k, v in factors.items()}}

    def predicted_earnings(self, worker_id, now=None) -> Decimal:
        """Weighted blend of the last 7 days and the 30-day weekly average."""
        now = self.ctx.now(now)
        e7 = self.ledger.completed_task_earnings(worker_id, since=now - timedelta(days=7))
        e30 = self.ledger.completed_task_earnings(worker_id, since=now - timedelta(days=30))
        predicted = (self.config.PREDICTION_WEIGHT_7D * e7
                     + self.config.PREDICTION_WEIGHT_30D * (e30 * 7 / 30))
        return to_usdc(predicted)

    def completion_rate(self, worker_id, now=None):
        """Share of finished tasks in the last 30 days that completed; None without history."""
        now = self.ctx.now(now)
        completed, finished = self.ledger.task_counts(worker_id, since=now - timedelta(days=30))
        if not finished:
            return None
        return Decimal(completed) / Decimal(finished)

    def check_eligibility(self, worker_id, amount_usdc, now=None) -> dict:
        """Evaluate every advance criterion. Read-only."""
        now = self.ctx.now(now)
        amount = to_usdc(amount_usdc)
        if amount <= 0:
            raise ValidationError("Advance amount must be positive", amount=str(amount_usdc))
        worker = self.ledger.require_worker(worker_id)

        risk = self.risk_score(worker_id, now)
        predicted = self.predicted_earnings(worker_id, now)
        completion = self.completion_rate(worker_id, now)
        age_days = (now - worker.created_at).days if worker.created_at else 0
        open_loan = self.ledger.open_loan(worker_id, include_in_flight=True)
        required = to_usdc(amount * self.config.LOAN_EARNINGS_MULTIPLE)

        checks = {
            "worker_active": worker.status == WorkerStatus.ACTIVE,
            "risk_score": risk["score"] >= self.config.LOAN_MIN_RISK_SCORE,
            "predicted_earnings": predicted >= required,
            "no_open_loan": open_loan is None,
            "account_age": age_days >= self.config.LOAN_MIN_ACCOUNT_AGE_DAYS,
            "completion_rate": completion is not None and completion >= self.config.LOAN_MIN_COMPLETION_RATE,
            "max_amount": amount <= self.config.LOAN_MAX_AMOUNT_USDC,
        }
        reasons = [name for name, passed in checks.items() if not passed]
        fee_pct = fee_rate(risk["score"])
        return {
            "worker_id": worker_id,
            "eligible": not reasons,
            "reasons": reasons,
            "checks": checks,
            "amount_usdc": str(amount),
            "risk_score": risk["score"],
            "risk_factors": risk["factors"],
            "predicted_earnings_7d": str(predicted),
            "required_earnings_7d": str(required),
            "completion_rate": str(completion) if completion is not None else None,
            "account_age_days": age_days,
            "fee_percentage": str(fee_pct) if fee_pct is not None else None,
            "open_loan_id": open_loan.id if open_loan else None,
        }

    # --- Advance lifecycle ---

    def request_advance(self, worker_id, amount_usdc, fee_percentage=None, actor_id=None,
                        now=None, submit=False):
        """Underwrite and approve an advance, then queue its disbursement.

        `fee_percentage` is an operator override of the tiered fee.
        """
        now = self.ctx.now(now)
        amount = to_usdc(amount_usdc)
        with self.ledger.worker_scope(worker_id) as worker:
            result = self.check_eligibility(worker_id, amount, now)
            if not result["eligible"]:
                raise ConflictError("Worker is not eligible for an advance",
                                    worker_id=worker_id, reasons=result["reasons"])

            if fee_percentage is not None:
                fee_pct = Decimal(str(fee_percentage))
                if fee_pct < 0 or fee_pct > 100:
                    raise ValidationError("fee_percentage must be between 0 and 100")
            else:
                fee_pct = Decimal(result["fee_percentage"])
            fee = to_usdc(amount * fee_pct / 100)

            loan = Loan(
                worker_id=worker.id,
                requested_amount_usdc=amount,
                risk_score=result["risk_score"],
                predicted_earnings_7d=Decimal(result["predicted_earnings_7d"]),
                fee_percentage=fee_pct,
                status=LoanStatus.PENDING,
                requested_at=now,
            )
            self.ledger.add(loan)
            self.ledger.flush()
            self.ledger.audit('loan.requested', resource=loan, after=snapshot(loan),
                              actor_type='operator' if actor_id else 'worker', actor_id=actor_id)

            before = snapshot(loan, _AUDIT_FIELDS)
            loan.status = LoanStatus.APPROVED
            loan.approved_amount_usdc = amount
            loan.approved_at = now
            loan.fee_usdc = fee
            loan.total_owed_usdc = amount + fee
            self.ledger.audit('loan.approved', resource=loan, before=before,
                              after=snapshot(loan, _AUDIT_FIELDS))

            tx, _ = self.ctx.transactions.create_intent(
                f"loan:{loan.id}:advance", TxType.ADVANCE, amount,
                from_wallet=self.ctx.treasury_wallet, to_wallet=worker.wallet_address,
                worker_id=worker.id, loan_id=loan.id,
            )
        logger.info("Advance %s approved for %s: %s USDC at %s%% (owed %s)",
                    loan.id, worker_id, amount, fee_pct, amount + fee)
        if submit:
            self.ctx.transactions.submit(tx.id, now=now)
        return loan, tx

    def _loan_for(self, tx, statuses):
        loan = self.ledger.lock_loan(tx.loan_id)
        if loan is None or loan.status not in statuses:
            return None
        return loan

    def on_advance_submitted(self, tx, now):
        loan = self._loan_for(tx, (LoanStatus.APPROVED,))
        if loan is None:
            return
        before = snapshot(loan, _AUDIT_FIELDS)
        loan.status = LoanStatus.DISBURSED
        loan.disbursed_at = now
        loan.remaining_balance_usdc = loan.total_owed_usdc
        self.ledger.audit('loan.disbursed', resource=loan, before=before,
                          after=snapshot(loan, _AUDIT_FIELDS))

    def on_advance_confirmed(self, tx, now):
        loan = self._loan_for(tx, (LoanStatus.APPROVED, LoanStatus.DISBURSED))
        if loan is None:
            logger.error("Confirmed advance %s has no disbursing loan", tx.id)
            return
        before = snapshot(loan, _AUDIT_FIELDS)
        if loan.status == LoanStatus.APPROVED:
            loan.disbursed_at = now
            loan.remaining_balance_usdc = loan.total_owed_usdc
        loan.status = LoanStatus.ACTIVE
        loan.due_date = loan.disbursed_at + timedelta(days=self.config.LOAN_TERM_DAYS)
        self.ledger.audit('loan.active', resource=loan, before=before,
                          after=snapshot(loan, _AUDIT_FIELDS))
        logger.info("Loan %s active, due %s", loan.id, loan.due_date.isoformat())

    def on_advance_failed(self, tx, now):
        loan = self._loan_for(tx, IN_FLIGHT_LOAN_STATUSES)
        if loan is None:
            return
        before = snapshot(loan, _AUDIT_FIELDS)
        loan.status = LoanStatus.CANCELLED
        loan.rejection_reason = tx.error_message or "Advance transfer did not complete"
        if loan.remaining_balance_usdc is not None:
            loan.remaining_balance_usdc = Decimal(0)
        self.ledger.audit('loan.cancelled', resource=loan, before=before,
                          after=snapshot(loan, _AUDIT_FIELDS))
        logger.warning("Loan %s cancelled: advance %s failed", loan.id, tx.id)

    # --- Repayment ---

    def reserve_repayment(self, payout_tx) -> Decimal:
        """Withhold the loan share of a payout before its first broadcast.

        Runs inside the worker scope of the broadcast. The withheld amount is
        stored on the payout and reused by every retry; shares already
        withheld by other unconfirmed payouts count against the balance.
        """
        extra = payout_tx.extra or {}
        if 'repayment_withheld' in extra:
            return Decimal(extra['repayment_withheld'])

        withheld, loan_id = Decimal(0), None
        loan = self.ledger.open_loan(payout_tx.worker_id)
        if loan is not None:
            outstanding = Decimal(str(loan.remaining_balance_usdc or 0)) - self._withheld_in_flight(
                payout_tx.worker_id, loan.id, exclude=payout_tx.id)
            share = to_usdc(Decimal(str(payout_tx.amount_usdc)) * self.config.AUTO_REPAY_PERCENTAGE / 100)
            withheld = max(Decimal(0), min(share, outstanding))
            if withheld > 0:
                loan_id = loan.id
        withheld = to_usdc(withheld)
        payout_tx.extra = {**extra, 'repayment_withheld': str(withheld), 'repayment_loan_id': loan_id}
        return withheld

    def _withheld_in_flight(self, worker_id, loan_id, exclude=None) -> Decimal:
        unconfirmed = self.ledger.transactions(worker_id=worker_id, tx_type=TxType.PAYOUT,
                                               status=[TxStatus.PENDING, TxStatus.SUBMITTED])
        return sum(
            (Decimal((t.extra or {}).get('repayment_withheld', '0')) for t in unconfirmed
             if t.id != exclude and (t.extra or {}).get('repayment_loan_id') == loan_id),
            Decimal(0),
        )

    def apply_auto_repayment(self, worker, payout_tx, now) -> Decimal:
        """Settle the share withheld from a confirmed payout against its loan.

        Runs inside the worker scope that confirms the payout. The repayment
        moves the withheld funds from the operations wallet to the treasury.
        Any part the loan no longer needs is refunded to the worker. Returns
        the deduction.
        """
        extra = payout_tx.extra or {}
        withheld = Decimal(extra.get('repayment_withheld', '0'))
        if withheld <= 0:
            return Decimal(0)
        loan = self.ledger.lock_loan(extra['repayment_loan_id']) if extra.get('repayment_loan_id') else None
        remaining = Decimal(0)
        if loan is not None and loan.status in OPEN_LOAN_STATUSES:
            remaining = Decimal(str(loan.remaining_balance_usdc or 0))
        deduction = to_usdc(min(withheld, remaining))

        shortfall = withheld - deduction
        if shortfall > 0:
            self.ctx.transactions.create_intent(
                f"{payout_tx.id}:withheld-refund", TxType.REFUND, shortfall,
                to_wallet=worker.wallet_address, worker_id=worker.id,
                extra={'payout_transaction_id': payout_tx.id},
            )
            logger.warning("Refunding %s USDC withheld from payout %s", shortfall, payout_tx.id)
        if deduction <= 0:
            return Decimal(0)

        self.ctx.transactions.create_intent(
            f"{payout_tx.id}:repayment", TxType.REPAYMENT, deduction,
            to_wallet=self.ctx.treasury_wallet, worker_id=worker.id, loan_id=loan.id,
            extra={'payout_transaction_id': payout_tx.id},
        )
        before = snapshot(loan, _AUDIT_FIELDS)
        loan.remaining_balance_usdc = remaining - deduction
        loan.tasks_repaid = (loan.tasks_repaid or 0) + 1
        if loan.remaining_balance_usdc == 0:
            loan.status = LoanStatus.REPAID
            loan.repaid_at = now
        else:
            loan.status = LoanStatus.REPAYING
        self.ledger.audit('loan.repayment', resource=loan, before=before,
                          after=snapshot(loan, _AUDIT_FIELDS))
        logger.info("Loan %s: deducted %s from payout %s, %s remaining",
                    loan.id, deduction, payout_tx.id, loan.remaining_balance_usdc)
        return deduction

    def on_repayment_confirmed(self, tx, now):
        self.ledger.audit('loan.repayment_settled', resource=tx,
                          after={'loan_id': tx.loan_id, 'amount_usdc': str(tx.amount_usdc)})

    def sweep_defaults(self, now=None):
        """Mark overdue loans with an outstanding balance as defaulted."""
        now = self.ctx.now(now)
        defaulted = []
        for loan_id, worker_id in [(l.id, l.worker_id) for l in self.ledger.overdue_loans(now)]:
            with self.ledger.worker_scope(worker_id) as worker:
                loan = self.ledger.lock_loan(loan_id)
                if (loan.status not in OPEN_LOAN_STATUSES or not loan.due_date or loan.due_date >= now
                        or Decimal(str(loan.remaining_balance_usdc or 0)) <= 0):
                    continue
                before = snapshot(loan, _AUDIT_FIELDS)
                loan.status = LoanStatus.DEFAULTED
                loan.defaulted_at = now
                self.ctx.reputation.record(
                    worker, ReputationEventType.LOAN_DEFAULTED,
                    points_delta=self.config.LOAN_DEFAULT_PENALTY,
                    description=f"Loan {loan.id} defaulted with {loan.remaining_balance_usdc} USDC outstanding",
                    now=now,
                )
                self.ledger.audit('loan.defaulted', resource=loan, before=before,
                                  after=snapshot(loan, _AUDIT_FIELDS))
            defaulted.append(loan_id)
            logger.warning("Loan %s for worker %s defaulted", loan_id, worker_id)
        return defaulted

    # --- Projections ---

    def loan_status(self, worker_id) -> dict:
        self.ledger.require_worker(worker_id)
        loans = self.ledger.loans_for_worker(worker_id)
        current = next((l for l in loans if l.status in OPEN_LOAN_STATUSES + IN_FLIGHT_LOAN_STATUSES), None)
        return {
            "worker_id": worker_id,
            "current": to_dict(current) if current else None,
            "history": [to_dict(l) for l in loans if l is not current],
        }


def to_dict(loan: Loan) -> dict:
    def money(value):
        return str(to_usdc(value)) if value is not None else None

    def ts(value):
        return value.isoformat() if value else None

    return {
        "loan_id": loan.id,
        "status": loan.status.value,
        "requested_amount_usdc": money(loan.requested_amount_usdc),
        "approved_amount_usdc": money(loan.approved_amount_usdc),
        "fee_percentage": str(loan.fee_percentage) if loan.fee_percentage is not None else None,
        "fee_usdc": money(loan.fee_usdc),
        "total_owed_usdc": money(loan.total_owed_usdc),
        "remaining_balance_usdc": money(loan.remaining_balance_usdc),
        "risk_score": loan.risk_score,
        "tasks_repaid": loan.tasks_repaid,
        "requested_at": ts(loan.requested_at),
        "disbursed_at": ts(loan.disbursed_at),
        "due_date": ts(loan.due_date),
        "repaid_at": ts(loan.repaid_at),
        "defaulted_at": ts(loan.defaulted_at),
        "rejection_reason": loan.rejection_reason,
    }
