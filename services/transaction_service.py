"""
Transaction state machine for every USDC movement.

    pending -> submitted -> confirmed | failed
    failed  -> pending            (automatic retry while retry_count < max)
    pending -> failed             (adapter rejected the transfer outright; terminal)
    pending -> cancelled          (always)
    submitted -> cancelled        (only before broadcast, i.e. no tx_hash yet)

Confirmed rows are never rewritten. Every transition writes an audit row.
Adapter calls happen outside any ledger lock; results are applied in a
fresh unit of work afterwards.

A payout to a worker with an open loan is broadcast net of the loan share,
which is withheld (and recorded on the row) before the first broadcast.
"""
import logging
from datetime import timedelta
from decimal import Decimal

from core.errors import (
    ConflictError, ExternalUnavailable, LedgerError, TerminalFailure, TransferReverted, ValidationError,
)
from core.ledger import snapshot, to_usdc
from models import Transaction, TxStatus, TxType, TaskStatus

logger = logging.getLogger('gigledger.transactions')

TRANSITIONS = {
    TxStatus.PENDING: {TxStatus.SUBMITTED, TxStatus.CANCELLED, TxStatus.FAILED},
    TxStatus.SUBMITTED: {TxStatus.CONFIRMED, TxStatus.FAILED, TxStatus.CANCELLED},
    TxStatus.FAILED: {TxStatus.PENDING},
    TxStatus.CONFIRMED: set(),
    TxStatus.CANCELLED: set(),
}

_AUDIT_FIELDS = ['status', 'tx_hash', 'confirmations', 'retry_count', 'next_attempt_at', 'error_message']


def backoff_seconds(attempt: int, base: int = 2, cap: int = 60) -> int:
    """Exponential backoff for retry `attempt` (1-based): base, 2*base, ... capped."""
    return min(base * (2 ** max(0, attempt - 1)), cap)


class TransactionService:
    def __init__(self, ctx):
        self.ctx = ctx

    @property
    def ledger(self):
        return self.ctx.ledger

    @property
    def config(self):
        return self.ctx.config

    # --- Transitions ---

    def _transition(self, tx: Transaction, new_status: TxStatus, actor_type='system', actor_id=None):
        if new_status not in TRANSITIONS[tx.status]:
            raise ConflictError(
                f"Illegal transaction transition {tx.status.value} -> {new_status.value}",
                transaction_id=tx.id,
            )
        before = snapshot(tx, _AUDIT_FIELDS)
        tx.status = new_status
        self.ledger.audit(f'transaction.{new_status.value}', resource=tx, before=before,
                          after=snapshot(tx, _AUDIT_FIELDS), actor_type=actor_type, actor_id=actor_id)

    # --- Intents ---

    def create_intent(self, idempotency_key, tx_type, amount_usdc, to_wallet, from_wallet=None,
                      worker_id=None, platform_id=None, task_id=None, stream_id=None,
                      loan_id=None, extra=None):
        """Create a pending transaction, or return the existing one for the key.

        Returns (transaction, created).
        """
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")
        if not isinstance(tx_type, TxType):
            raise ValidationError("Unknown transaction type", type=str(tx_type))
        amount = to_usdc(amount_usdc)
        if amount <= 0:
            raise ValidationError("Transaction amount must be positive", amount=str(amount_usdc))

        with self.ledger.transaction():
            existing = self.ledger.transaction_by_key(idempotency_key)
            if existing is not None:
                return existing, False
            tx = Transaction(
                idempotency_key=idempotency_key,
                type=tx_type,
                status=TxStatus.PENDING,
                amount_usdc=amount,
                from_wallet=(from_wallet or self.ctx.ops_wallet or None),
                to_wallet=to_wallet,
                worker_id=worker_id,
                platform_id=platform_id,
                task_id=task_id,
                stream_id=stream_id,
                loan_id=loan_id,
                retry_count=0,
                extra=dict(extra or {}),
            )
            self.ledger.add(tx)
            self.ledger.flush()
            self.ledger.audit('transaction.created', resource=tx, after=snapshot(tx))
        logger.info("Created %s intent %s (%s USDC, key=%s)", tx_type.value, tx.id, amount, idempotency_key)
        return tx, True

    # --- Submission ---

    def submit(self, transaction_id, now=None):
        """pending -> submitted. No-op unless the transaction is pending and due.

        Raises TerminalFailure when the adapter refuses the transfer for a
        reason retrying cannot fix (e.g. no signing key for the source).
        """
        now = self.ctx.now(now)
        pending = self.ledger.require_transaction(transaction_id)
        withholds = pending.type == TxType.PAYOUT and pending.worker_id
        scope = self.ledger.worker_scope(pending.worker_id) if withholds else self.ledger.transaction()
        with scope:
            tx = self.ledger.lock_transaction(transaction_id)
            if tx.status != TxStatus.PENDING:
                return tx
            if tx.next_attempt_at and tx.next_attempt_at > now:
                return tx
            amount = Decimal(str(tx.amount_usdc))
            if withholds:
                amount -= self.ctx.loans.reserve_repayment(tx)
            from_wallet, to_wallet = tx.from_wallet, tx.to_wallet
            # Each retry is a fresh broadcast; the adapter dedupes per attempt
            adapter_key = f"{tx.idempotency_key}#{tx.retry_count}"

        try:
            tx_hash = self.ctx.chain.submit_transfer(from_wallet, to_wallet, amount, adapter_key)
        except ExternalUnavailable as e:
            return self._defer_broadcast(transaction_id, e, now)
        except LedgerError as e:
            self._reject_broadcast(transaction_id, e, now)
            raise TerminalFailure("Adapter rejected the transfer", transaction_id=transaction_id,
                                  reason=e.message) from e

        with self.ledger.transaction():
            tx = self.ledger.lock_transaction(transaction_id)
            if tx.status != TxStatus.PENDING:
                # Cancelled while the adapter call was in flight; funds may move anyway
                self.ledger.audit('transaction.broadcast_after_cancel', resource=tx,
                                  after={'tx_hash': tx_hash}, success=False,
                                  error="Broadcast completed after cancellation")
                logger.error("Transaction %s broadcast after leaving pending (%s): %s",
                             tx.id, tx.status.value, tx_hash)
                return tx
            tx.tx_hash = tx_hash
            tx.submitted_at = now
            tx.error_message = None
            self._transition(tx, TxStatus.SUBMITTED)
            self._on_submitted(tx, now)
        return tx

    def _defer_broadcast(self, transaction_id, error, now):
        with self.ledger.transaction():
            tx = self.ledger.lock_transaction(transaction_id)
            attempts = int((tx.extra or {}).get('broadcast_attempts', 0)) + 1
            tx.extra = {**(tx.extra or {}), 'broadcast_attempts': attempts}
            tx.error_message = str(error)
            tx.next_attempt_at = now + timedelta(seconds=backoff_seconds(
                attempts, self.config.TX_BACKOFF_BASE_SECONDS, self.config.TX_BACKOFF_CAP_SECONDS))
        logger.warning("Adapter unavailable for %s (attempt %d): %s", transaction_id, attempts, error)
        return tx

    def _reject_broadcast(self, transaction_id, error, now):
        with self.ledger.transaction():
            tx = self.ledger.lock_transaction(transaction_id)
            if tx.status != TxStatus.PENDING:
                return tx
            tx.error_message = str(error)
            tx.next_attempt_at = None
            self._transition(tx, TxStatus.FAILED)
            self._on_terminal_failure(tx, now)
        self.ledger.alert('transaction.terminal_failure', tx, str(error),
                          retry_count=tx.retry_count, type=tx.type.value, task_id=tx.task_id,
                          rejected=True)
        return tx

    # --- Confirmation ---

    def poll_confirmation(self, transaction_id, now=None):
        """Observe confirmations for a submitted transaction and apply the result."""
        now = self.ctx.now(now)
        tx = self.ledger.require_transaction(transaction_id)
        if tx.status != TxStatus.SUBMITTED:
            return tx
        tx_hash, submitted_at = tx.tx_hash, tx.submitted_at

        try:
            count = self.ctx.chain.get_confirmations(tx_hash)
        except TransferReverted as e:
            return self.record_failure(transaction_id, str(e), tx_hash=tx_hash, now=now)
        except ExternalUnavailable as e:
            logger.warning("Confirmation poll for %s failed: %s", transaction_id, e)
            count = None

        if count is not None and count >= self.config.CONFIRMATION_THRESHOLD:
            return self.confirm(transaction_id, count, tx_hash=tx_hash, now=now)

        timeout = timedelta(seconds=self.config.TX_SUBMITTED_TIMEOUT_SECONDS)
        if submitted_at and now - submitted_at > timeout:
            return self.record_failure(
                transaction_id, f"Confirmation timeout after {timeout.total_seconds():.0f}s",
                tx_hash=tx_hash, now=now,
            )

        if count is not None:
            with self.ledger.transaction():
                tx = self.ledger.lock_transaction(transaction_id)
                if tx.status == TxStatus.SUBMITTED and tx.tx_hash == tx_hash:
                    tx.confirmations = count
        return tx

    def confirm(self, transaction_id, confirmations, tx_hash=None, now=None):
        """submitted -> confirmed, then apply downstream effects in the same unit of work."""
        now = self.ctx.now(now)
        worker_id = self.ledger.require_transaction(transaction_id).worker_id
        scope = self.ledger.worker_scope(worker_id) if worker_id else self.ledger.transaction()
        with scope:
            tx = self.ledger.lock_transaction(transaction_id)
            if tx.status == TxStatus.CONFIRMED:
                return tx
            if tx.status != TxStatus.SUBMITTED or (tx_hash and tx.tx_hash != tx_hash):
                logger.info("Ignoring stale confirmation for %s (%s)", tx.id, tx.status.value)
                return tx
            tx.confirmations = confirmations
            tx.confirmed_at = now
            tx.next_attempt_at = None
            # Effects first: once flushed as confirmed the row is frozen
            self._on_confirmed(tx, now)
            self._transition(tx, TxStatus.CONFIRMED)
        logger.info("Transaction %s confirmed (%d confirmations)", tx.id, confirmations)
        self._notify_confirmed(tx)
        return tx

    # --- Failure & retry ---

    def record_failure(self, transaction_id, reason, tx_hash=None, now=None):
        """submitted -> failed; re-enter pending with backoff until retries run out."""
        now = self.ctx.now(now)
        terminal = False
        with self.ledger.transaction():
            tx = self.ledger.lock_transaction(transaction_id)
            if tx is None:
                raise ValidationError("Transaction not found", id=transaction_id)
            if tx.status != TxStatus.SUBMITTED or (tx_hash and tx.tx_hash != tx_hash):
                # Duplicate or stale report from an at-least-once source
                return tx
            attempts = list((tx.extra or {}).get('attempts', []))
            attempts.append({'tx_hash': tx.tx_hash, 'error': reason, 'at': now.isoformat()})
            tx.extra = {**(tx.extra or {}), 'attempts': attempts}
            tx.error_message = reason
            tx.retry_count = (tx.retry_count or 0) + 1
            self._transition(tx, TxStatus.FAILED)

            if tx.retry_count < self.config.TX_MAX_RETRIES:
                delay = backoff_seconds(tx.retry_count, self.config.TX_BACKOFF_BASE_SECONDS,
                                        self.config.TX_BACKOFF_CAP_SECONDS)
                tx.tx_hash = None
                tx.confirmations = 0
                tx.submitted_at = None
                tx.next_attempt_at = now + timedelta(seconds=delay)
                self._transition(tx, TxStatus.PENDING)
                logger.warning("Transaction %s failed (%s); retry %d/%d in %ds",
                               tx.id, reason, tx.retry_count, self.config.TX_MAX_RETRIES, delay)
            else:
                terminal = True
                tx.next_attempt_at = None
                self._on_terminal_failure(tx, now)

        if terminal:
            self.ledger.alert('transaction.terminal_failure', tx, reason,
                              retry_count=tx.retry_count, type=tx.type.value, task_id=tx.task_id)
        return tx

    def cancel(self, transaction_id, actor_type='system', actor_id=None, now=None):
        now = self.ctx.now(now)
        with self.ledger.transaction():
            tx = self.ledger.lock_transaction(transaction_id)
            if tx is None:
                raise ValidationError("Transaction not found", id=transaction_id)
            if tx.status == TxStatus.SUBMITTED and tx.tx_hash:
                raise ConflictError("Transaction already broadcast; cannot cancel", transaction_id=tx.id)
            self._transition(tx, TxStatus.CANCELLED, actor_type=actor_type, actor_id=actor_id)
            self._on_cancelled(tx, now)
        return tx

    # --- Batch drivers (background workers) ---

    def pump(self, now=None):
        """Submit every pending transaction whose backoff has elapsed."""
        now = self.ctx.now(now)
        submitted = 0
        for tx_id in [t.id for t in self.ledger.retry_ready_transactions(now)]:
            try:
                tx = self.submit(tx_id, now=now)
                if tx.status == TxStatus.SUBMITTED:
                    submitted += 1
            except LedgerError as e:
                logger.error("Submit of %s failed: %s", tx_id, e)
        return submitted

    def poll_submitted(self, now=None):
        now = self.ctx.now(now)
        settled = 0
        for tx_id in [t.id for t in self.ledger.submitted_transactions()]:
            try:
                tx = self.poll_confirmation(tx_id, now=now)
                if tx.status != TxStatus.SUBMITTED:
                    settled += 1
            except LedgerError as e:
                logger.error("Confirmation of %s failed: %s", tx_id, e)
        return settled

    def process(self, now=None):
        """One full cycle: broadcast due intents, then poll outstanding ones."""
        now = self.ctx.now(now)
        return {"submitted": self.pump(now), "settled": self.poll_submitted(now)}

    # --- Operator actions ---

    def retry_payout_for_task(self, task_id, actor_id=None, now=None):
        """Create a fresh payout from the originating task after a terminal failure."""
        with self.ledger.transaction():
            task = self.ledger.lock_task(task_id)
            if task is None:
                raise ValidationError("Task not found", id=task_id)
            if task.status != TaskStatus.COMPLETED:
                raise ConflictError("Task is not completed", task_id=task_id, status=task.status.value)
            payouts = [t for t in self.ledger.transactions(task_id=task_id, tx_type=TxType.PAYOUT)
                       if t.stream_id is None]
            if any(t.status in (TxStatus.PENDING, TxStatus.SUBMITTED, TxStatus.CONFIRMED) for t in payouts):
                raise ConflictError("Task already has a live or confirmed payout", task_id=task_id)
            failed = [t for t in payouts if t.status in (TxStatus.FAILED, TxStatus.CANCELLED)]
            if not failed:
                raise ConflictError("Task has no failed payout to retry", task_id=task_id)
            amount = Decimal(str(task.payment_amount_usdc)) - Decimal(str(task.paid_amount_usdc or 0))
            if amount <= 0:
                raise ConflictError("Task is fully paid", task_id=task_id)
            worker = self.ledger.require_worker(task.worker_id)
            tx, _ = self.create_intent(
                f"{task.id}:payout:retry-{len(failed)}", TxType.PAYOUT, amount,
                to_wallet=worker.wallet_address, worker_id=worker.id,
                platform_id=task.platform_id, task_id=task.id,
                extra={'retry_of': failed[-1].id},
            )
            self.ledger.audit('task.payout_retry', resource=task, actor_type='operator', actor_id=actor_id,
                              after={'transaction_id': tx.id, 'amount_usdc': str(amount)})
        logger.info("Operator %s re-created payout %s for task %s", actor_id, tx.id, task_id)
        return tx

    # --- Hooks ---

    def _on_submitted(self, tx, now):
        if tx.type == TxType.ADVANCE and tx.loan_id:
            self.ctx.loans.on_advance_submitted(tx, now)

    def _on_confirmed(self, tx, now):
        if tx.type == TxType.PAYOUT:
            self.ctx.payouts.on_payout_confirmed(tx, now)
        elif tx.type == TxType.ADVANCE and tx.loan_id:
            self.ctx.loans.on_advance_confirmed(tx, now)
        elif tx.type == TxType.REPAYMENT and tx.loan_id:
            self.ctx.loans.on_repayment_confirmed(tx, now)

    def _on_terminal_failure(self, tx, now):
        if tx.type == TxType.ADVANCE and tx.loan_id:
            self.ctx.loans.on_advance_failed(tx, now)

    def _on_cancelled(self, tx, now):
        if tx.type == TxType.ADVANCE and tx.loan_id:
            self.ctx.loans.on_advance_failed(tx, now)

    def _notify_confirmed(self, tx):
        notifier = self.ctx.notifier
        if notifier is None or not tx.platform_id:
            return
        platform = self.ledger.get_platform(tx.platform_id)
        if not platform or not platform.webhook_url:
            return
        notifier.transaction_confirmed(platform.webhook_url, platform.webhook_secret, {
            "task_id": tx.task_id,
            "transaction_id": tx.id,
            "amount_usdc": str(tx.amount_usdc),
            "tx_hash": tx.tx_hash,
            "status": tx.status.value,
        })


def to_dict(tx: Transaction) -> dict:
    return {
        "transaction_id": tx.id,
        "type": tx.type.value,
        "status": tx.status.value,
        "amount_usdc": str(tx.amount_usdc),
        "fee_usdc": str(tx.fee_usdc or 0),
        "task_id": tx.task_id,
        "stream_id": tx.stream_id,
        "loan_id": tx.loan_id,
        "worker_id": tx.worker_id,
        "from_wallet": tx.from_wallet,
        "to_wallet": tx.to_wallet,
        "tx_hash": tx.tx_hash,
        "confirmations": tx.confirmations,
        "retry_count": tx.retry_count,
        "error_message": tx.error_message,
        "next_attempt_at": tx.next_attempt_at.isoformat() if tx.next_attempt_at else None,
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
        "confirmed_at": tx.confirmed_at.isoformat() if tx.confirmed_at else None,
    }
