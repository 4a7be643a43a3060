"""
Task-completion intake and payout confirmation.

`on_task_completed` is the entry point from the task/worker API. It is
idempotent per task id: the first delivery marks the task completed,
records the payout intent and the reputation events in one unit of work;
re-deliveries return the original outcome without writing anything.
"""
import logging
from decimal import Decimal

from core.errors import ConflictError, ValidationError
from core.ledger import snapshot, to_usdc
from models import Stream, StreamStatus, Task, TaskStatus, TaskType, TxStatus, TxType

logger = logging.getLogger('gigledger.payouts')

_TERMINAL_TASK_STATUSES = (TaskStatus.CANCELLED, TaskStatus.DISPUTED)


def _parse_task_type(task_type):
    if isinstance(task_type, TaskType):
        return task_type
    try:
        return TaskType(task_type)
    except ValueError:
        raise ValidationError("Unknown task type", task_type=task_type)


def _parse_ratings(ratings):
    if not ratings:
        return None
    if not isinstance(ratings, dict):
        raise ValidationError("ratings must be an object like {\"stars\": 5}")
    stars = ratings.get('stars')
    if stars is None:
        return None
    if not isinstance(stars, int) or isinstance(stars, bool) or not 1 <= stars <= 5:
        raise ValidationError("Rating stars must be an integer 1-5", stars=stars)
    return {'stars': stars}


class PayoutService:
    def __init__(self, ctx):
        self.ctx = ctx

    @property
    def ledger(self):
        return self.ctx.ledger

    def on_task_completed(self, task_id, worker_id, platform_id, amount_usdc, task_type,
                          ratings=None, now=None, submit=False):
        """Record a task completion. Safe to call any number of times per task."""
        now = self.ctx.now(now)
        task_type = _parse_task_type(task_type)
        ratings = _parse_ratings(ratings)
        amount = to_usdc(amount_usdc)
        if amount <= 0:
            raise ValidationError("Payout amount must be positive", amount=str(amount_usdc))

        with self.ledger.worker_scope(worker_id) as worker:
            task = self.ledger.lock_task(task_id)
            if task is None:
                raise ValidationError("Task not found", task_id=task_id)
            if task.platform_id != platform_id:
                raise ValidationError("Task belongs to a different platform", task_id=task_id)
            if task.worker_id and task.worker_id != worker_id:
                raise ValidationError("Task is assigned to a different worker", task_id=task_id)
            if task.type != task_type:
                raise ValidationError("Task type mismatch", task_id=task_id,
                                      expected=task.type.value, got=task_type.value)

            stream = Stream.query.filter_by(task_id=task.id).first()
            payout_key = f"{task.id}:payout"

            if task.status == TaskStatus.COMPLETED:
                existing = self.ledger.transaction_by_key(payout_key)
                logger.info("Duplicate completion for task %s ignored", task.id)
                return self._result(task, existing, stream, duplicate=True)
            if task.status in _TERMINAL_TASK_STATUSES:
                raise ConflictError("Task cannot be completed", task_id=task.id, status=task.status.value)

            outstanding = Decimal(str(task.payment_amount_usdc)) - Decimal(str(task.paid_amount_usdc or 0))
            if stream is None and amount > outstanding:
                raise ValidationError("Amount exceeds unpaid task balance", task_id=task.id,
                                      amount=str(amount), outstanding=str(outstanding))

            before = snapshot(task, ['status', 'worker_id', 'completed_at', 'worker_rating'])
            first_for_platform = not Task.query.filter(
                Task.worker_id == worker.id,
                Task.platform_id == platform_id,
                Task.status == TaskStatus.COMPLETED,
            ).count()
            task.status = TaskStatus.COMPLETED
            task.completed_at = now
            task.worker_id = worker.id
            if ratings:
                task.worker_rating = ratings['stars']
            worker.total_tasks_completed = (worker.total_tasks_completed or 0) + 1
            if first_for_platform:
                task.platform.total_workers = (task.platform.total_workers or 0) + 1

            tx = None
            if stream is None:
                # Direct payout path; streamed tasks are paid by the release scheduler
                tx, _ = self.ctx.transactions.create_intent(
                    payout_key, TxType.PAYOUT, amount,
                    to_wallet=worker.wallet_address, worker_id=worker.id,
                    platform_id=platform_id, task_id=task.id,
                )

            self.ctx.reputation.record_task_completion(worker, task, ratings, now)
            self.ledger.audit('task.completed', resource=task, before=before,
                              after=snapshot(task, ['status', 'worker_id', 'completed_at', 'worker_rating']),
                              actor_type='platform', actor_id=platform_id)

        logger.info("Task %s completed by worker %s (payout=%s)", task_id, worker_id, tx.id if tx else None)
        if submit and tx is not None:
            self.ctx.transactions.submit(tx.id, now=now)
        return self._result(task, tx, stream, duplicate=False)

    @staticmethod
    def _result(task, tx, stream, duplicate):
        return {
            "task_id": task.id,
            "status": task.status.value,
            "transaction_id": tx.id if tx else None,
            "stream_id": stream.id if stream else None,
            "duplicate": duplicate,
        }

    def on_payout_confirmed(self, tx, now):
        """Apply a confirmed payout. Runs inside the worker scope of the confirmation.

        Loan auto-repayment is deducted before the net amount is credited.
        """
        worker = self.ledger.require_worker(tx.worker_id)
        amount = Decimal(str(tx.amount_usdc))

        if tx.stream_id:
            self.ctx.streams.apply_release(tx, now)
        elif tx.task_id:
            task = self.ledger.get_task(tx.task_id)
            if task is not None:
                task.paid_amount_usdc = to_usdc(Decimal(str(task.paid_amount_usdc or 0)) + amount)

        deduction = self.ctx.loans.apply_auto_repayment(worker, tx, now)
        net = to_usdc(amount - deduction)
        worker.total_earnings_usdc = to_usdc(Decimal(str(worker.total_earnings_usdc or 0)) + net)

        if tx.platform_id:
            platform = self.ledger.get_platform(tx.platform_id)
            if platform is not None:
                platform.total_payments_usdc = to_usdc(
                    Decimal(str(platform.total_payments_usdc or 0)) + amount)

        tx.extra = {**(tx.extra or {}), 'repayment_deducted': str(deduction), 'net_credited': str(net)}
        self.ledger.audit('worker.credited', resource=worker,
                          after={'transaction_id': tx.id, 'gross': str(amount),
                                 'deducted': str(deduction), 'net': str(net)})

    def balance(self, worker_id) -> dict:
        """Read-only balance projection for a worker."""
        worker = self.ledger.require_worker(worker_id)
        pending = sum(
            (Decimal(str(t.amount_usdc)) for t in self.ledger.transactions(
                worker_id=worker_id, tx_type=TxType.PAYOUT,
                status=[TxStatus.PENDING, TxStatus.SUBMITTED])),
            Decimal(0),
        )
        streams = [s for s in worker.streams if s.status != StreamStatus.CANCELLED or s.released_amount_usdc]
        unclaimed = sum(
            (Decimal(str(s.released_amount_usdc)) - Decimal(str(s.claimed_amount_usdc)) for s in streams),
            Decimal(0),
        )
        loan = self.ledger.open_loan(worker_id)
        return {
            "worker_id": worker.id,
            "total_earnings_usdc": str(to_usdc(worker.total_earnings_usdc)),
            "pending_payouts_usdc": str(to_usdc(pending)),
            "unclaimed_stream_usdc": str(to_usdc(unclaimed)),
            "outstanding_loan_usdc": str(to_usdc(loan.remaining_balance_usdc)) if loan else "0.000000",
            "total_tasks_completed": worker.total_tasks_completed,
        }
