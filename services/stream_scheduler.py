"""
Stream Release Scheduler: time-sliced partial releases for active streams.

A tick computes how much of each due stream should have been released by
now, creates one payout intent for the difference, and leaves the ledger
update to the confirmation of that payout. Re-running a tick with nothing
new due is a no-op.
"""
import logging
from datetime import timedelta
from decimal import Decimal, ROUND_DOWN

from core.errors import (
    ConflictError, ExternalUnavailable, LedgerError, ReconciliationMismatch, ValidationError,
)
from core.ledger import USDC_QUANT, snapshot, to_usdc
from models import Stream, StreamStatus, TxStatus, TxType, normalize_wallet

logger = logging.getLogger('gigledger.streams')

_MICRO = timedelta(microseconds=1)
_AUDIT_FIELDS = ['status', 'released_amount_usdc', 'claimed_amount_usdc', 'next_release_at',
                 'paused_at', 'completed_at', 'cancelled_at']


def expected_released(stream: Stream, now) -> Decimal:
    """Amount that should be released by `now`, linear over [start, end], rounded down."""
    total = Decimal(str(stream.total_amount_usdc))
    if now <= stream.start_time:
        return Decimal(0).quantize(USDC_QUANT)
    if now >= stream.end_time:
        return to_usdc(total)
    elapsed = (now - stream.start_time) // _MICRO
    window = (stream.end_time - stream.start_time) // _MICRO
    expected = (total * elapsed / window).quantize(USDC_QUANT, rounding=ROUND_DOWN)
    return max(Decimal(0), min(expected, total))


def next_release_after(stream: Stream, now):
    """First release boundary strictly after `now`, stepping in whole intervals."""
    interval = timedelta(seconds=stream.release_interval)
    nxt = stream.next_release_at or (stream.start_time + interval)
    if nxt <= now:
        nxt += interval * ((now - nxt) // interval + 1)
    return nxt


class StreamScheduler:
    def __init__(self, ctx):
        self.ctx = ctx

    @property
    def ledger(self):
        return self.ctx.ledger

    def create_stream(self, worker_id, platform_id, total_amount_usdc, start_time, end_time,
                      release_interval, contract_stream_id, contract_address=None, task_id=None):
        total = to_usdc(total_amount_usdc)
        if total <= 0:
            raise ValidationError("Stream total must be positive", total=str(total_amount_usdc))
        if end_time <= start_time:
            raise ValidationError("Stream end_time must be after start_time")
        try:
            interval = int(release_interval)
        except (TypeError, ValueError):
            raise ValidationError("release_interval must be an integer number of seconds")
        if interval <= 0:
            raise ValidationError("release_interval must be positive", release_interval=interval)
        contract = normalize_wallet(contract_address or self.ctx.config.STREAMING_CONTRACT_ADDRESS)

        with self.ledger.worker_scope(worker_id) as worker:
            self.ledger.require_platform(platform_id)
            if task_id:
                task = self.ledger.lock_task(task_id)
                if task is None or task.platform_id != platform_id:
                    raise ValidationError("Task not found for platform", task_id=task_id)
                if task.worker_id and task.worker_id != worker.id:
                    raise ValidationError("Task is assigned to a different worker", task_id=task_id)
                if Stream.query.filter_by(task_id=task_id).first():
                    raise ConflictError("Task already has a stream", task_id=task_id)
                task.worker_id = worker.id
            stream = Stream(
                worker_id=worker.id,
                platform_id=platform_id,
                task_id=task_id,
                contract_address=contract,
                contract_stream_id=int(contract_stream_id),
                total_amount_usdc=total,
                released_amount_usdc=Decimal(0),
                claimed_amount_usdc=Decimal(0),
                start_time=start_time,
                end_time=end_time,
                release_interval=interval,
                next_release_at=start_time + timedelta(seconds=interval),
                status=StreamStatus.ACTIVE,
            )
            self.ledger.add(stream)
            self.ledger.flush()
            self.ledger.audit('stream.created', resource=stream, after=snapshot(stream),
                              actor_type='platform', actor_id=platform_id)
        logger.info("Stream %s created: %s USDC over %s for worker %s",
                    stream.id, total, end_time - start_time, worker_id)
        return stream

    # --- Releases ---

    def tick(self, now=None):
        """Create release intents for every due active stream. Returns the intents created."""
        now = self.ctx.now(now)
        created = []
        for stream_id in [s.id for s in self.ledger.due_streams(now)]:
            try:
                tx = self.release_due(stream_id, now)
            except LedgerError as e:
                logger.error("Release for stream %s failed: %s", stream_id, e)
                continue
            if tx is not None:
                created.append(tx)
        if created:
            logger.info("Stream tick created %d release(s)", len(created))
        return created

    def release_due(self, stream_id, now=None):
        now = self.ctx.now(now)
        worker_id = self.ledger.require_stream(stream_id).worker_id
        with self.ledger.worker_scope(worker_id) as worker:
            stream = self.ledger.lock_stream(stream_id)
            if stream.status != StreamStatus.ACTIVE:
                return None
            if stream.next_release_at and stream.next_release_at > now:
                return None
            if self.ledger.in_flight_release(stream.id) is not None:
                return None

            released = Decimal(str(stream.released_amount_usdc))
            expected = expected_released(stream, now)
            delta = expected - released
            if delta <= 0:
                self._settle_schedule(stream, now)
                return None

            key = f"stream:{stream.id}:release:{expected}"
            if self.ledger.transaction_by_key(key) is not None:
                # Same target already failed terminally; wait for time to move it
                return None
            tx, _ = self.ctx.transactions.create_intent(
                key, TxType.PAYOUT, delta,
                to_wallet=worker.wallet_address, worker_id=worker.id,
                platform_id=stream.platform_id, task_id=stream.task_id, stream_id=stream.id,
                extra={'expected_released': str(expected)},
            )
        logger.info("Stream %s release of %s USDC queued (target %s)", stream_id, delta, expected)
        return tx

    def retry_release_for_stream(self, stream_id, actor_id=None, now=None):
        """Operator action: re-create a release whose last attempt failed terminally.

        Needed once a stream has ended, because every later tick computes the
        same target and therefore the same, already-used key.
        """
        now = self.ctx.now(now)
        worker_id = self.ledger.require_stream(stream_id).worker_id
        with self.ledger.worker_scope(worker_id) as worker:
            stream = self.ledger.lock_stream(stream_id)
            if stream.status != StreamStatus.ACTIVE:
                raise ConflictError(f"Cannot retry a release of a {stream.status.value} stream",
                                    stream_id=stream_id)
            if self.ledger.in_flight_release(stream.id) is not None:
                raise ConflictError("Stream already has a release in flight", stream_id=stream_id)
            releases = self.ledger.transactions(stream_id=stream.id, tx_type=TxType.PAYOUT)
            failed = [t for t in releases if t.status in (TxStatus.FAILED, TxStatus.CANCELLED)]
            if not releases or releases[-1] not in failed:
                raise ConflictError("Stream has no failed release to retry", stream_id=stream_id)

            released = Decimal(str(stream.released_amount_usdc))
            expected = expected_released(stream, now)
            delta = expected - released
            if delta <= 0:
                raise ConflictError("Nothing left to release", stream_id=stream_id,
                                    released=str(released), expected=str(expected))
            tx, _ = self.ctx.transactions.create_intent(
                f"stream:{stream.id}:release:{expected}:retry-{len(failed)}", TxType.PAYOUT, delta,
                to_wallet=worker.wallet_address, worker_id=worker.id,
                platform_id=stream.platform_id, task_id=stream.task_id, stream_id=stream.id,
                extra={'expected_released': str(expected), 'retry_of': releases[-1].id},
            )
            self.ledger.audit('stream.release_retry', resource=stream, actor_type='operator',
                              actor_id=actor_id,
                              after={'transaction_id': tx.id, 'amount_usdc': str(delta)})
        logger.info("Operator %s re-created release %s for stream %s", actor_id, tx.id, stream_id)
        return tx

    def apply_release(self, tx, now):
        """Apply a confirmed release. Runs inside the confirming worker scope."""
        stream = self.ledger.lock_stream(tx.stream_id)
        if stream is None:
            logger.error("Confirmed release %s references a missing stream", tx.id)
            return None
        before = snapshot(stream, _AUDIT_FIELDS)
        total = Decimal(str(stream.total_amount_usdc))
        released = Decimal(str(stream.released_amount_usdc)) + Decimal(str(tx.amount_usdc))
        if released > total:
            raise ConflictError("Release would exceed stream total", stream_id=stream.id,
                                released=str(released), total=str(total))
        stream.released_amount_usdc = released
        if stream.status == StreamStatus.ACTIVE:
            self._settle_schedule(stream, now)
        self.ledger.audit('stream.released', resource=stream, before=before,
                          after=snapshot(stream, _AUDIT_FIELDS))
        return stream

    def _settle_schedule(self, stream, now):
        if (Decimal(str(stream.released_amount_usdc)) >= Decimal(str(stream.total_amount_usdc))
                and now >= stream.end_time):
            stream.status = StreamStatus.COMPLETED
            stream.completed_at = now
            stream.next_release_at = None
            logger.info("Stream %s completed", stream.id)
        else:
            stream.next_release_at = next_release_after(stream, now)

    # --- Lifecycle ---

    def _lifecycle(self, stream_id, allowed, action, apply, actor_type, actor_id):
        worker_id = self.ledger.require_stream(stream_id).worker_id
        with self.ledger.worker_scope(worker_id):
            stream = self.ledger.lock_stream(stream_id)
            if stream.status not in allowed:
                raise ConflictError(f"Cannot {action} a {stream.status.value} stream", stream_id=stream_id)
            before = snapshot(stream, _AUDIT_FIELDS)
            apply(stream)
            self.ledger.audit(f'stream.{action}', resource=stream, before=before,
                              after=snapshot(stream, _AUDIT_FIELDS),
                              actor_type=actor_type, actor_id=actor_id)
        logger.info("Stream %s %s by %s", stream_id, action, actor_id or actor_type)
        return stream

    def pause(self, stream_id, actor_type='platform', actor_id=None, now=None):
        now = self.ctx.now(now)

        def apply(stream):
            stream.status = StreamStatus.PAUSED
            stream.paused_at = now
        return self._lifecycle(stream_id, (StreamStatus.ACTIVE,), 'pause', apply, actor_type, actor_id)

    def resume(self, stream_id, actor_type='platform', actor_id=None, now=None):
        def apply(stream):
            stream.status = StreamStatus.ACTIVE
            stream.paused_at = None
        return self._lifecycle(stream_id, (StreamStatus.PAUSED,), 'resume', apply, actor_type, actor_id)

    def cancel(self, stream_id, actor_type='platform', actor_id=None, now=None):
        now = self.ctx.now(now)

        def apply(stream):
            stream.status = StreamStatus.CANCELLED
            stream.cancelled_at = now
            stream.next_release_at = None
        return self._lifecycle(stream_id, (StreamStatus.ACTIVE, StreamStatus.PAUSED), 'cancel',
                               apply, actor_type, actor_id)

    def claim(self, stream_id, amount_usdc=None, actor_type='worker', actor_id=None):
        """Record a withdrawal of released funds by the worker."""
        worker_id = self.ledger.require_stream(stream_id).worker_id
        with self.ledger.worker_scope(worker_id):
            stream = self.ledger.lock_stream(stream_id)
            available = Decimal(str(stream.released_amount_usdc)) - Decimal(str(stream.claimed_amount_usdc))
            amount = available if amount_usdc is None else to_usdc(amount_usdc)
            if amount <= 0:
                raise ValidationError("Nothing to claim", stream_id=stream_id, available=str(available))
            if amount > available:
                raise ConflictError("Claim exceeds released amount", stream_id=stream_id,
                                    amount=str(amount), available=str(available))
            before = snapshot(stream, _AUDIT_FIELDS)
            stream.claimed_amount_usdc = Decimal(str(stream.claimed_amount_usdc)) + amount
            self.ledger.audit('stream.claim', resource=stream, before=before,
                              after=snapshot(stream, _AUDIT_FIELDS),
                              actor_type=actor_type, actor_id=actor_id)
        logger.info("Stream %s claimed %s USDC", stream_id, amount)
        return stream

    # --- Reconciliation ---

    def reconcile(self, stream_id):
        """Compare the ledger with the contract. Mismatches are alerted, never repaired."""
        stream = self.ledger.require_stream(stream_id)
        state = self.ctx.chain.get_stream_state(stream.contract_address, stream.contract_stream_id)
        if state.get('released') is None and state.get('claimed') is None:
            return {"stream_id": stream.id, "status": "unavailable"}

        local = {
            'released': to_usdc(stream.released_amount_usdc),
            'claimed': to_usdc(stream.claimed_amount_usdc),
        }
        mismatches = {}
        if state.get('claimed') is not None and to_usdc(state['claimed']) != local['claimed']:
            mismatches['claimed'] = {'ledger': str(local['claimed']), 'chain': str(state['claimed'])}
        in_flight = self.ledger.in_flight_release(stream.id) is not None
        if (not in_flight and state.get('released') is not None
                and to_usdc(state['released']) != local['released']):
            mismatches['released'] = {'ledger': str(local['released']), 'chain': str(state['released'])}

        if mismatches:
            self.ledger.alert('stream.reconciliation_mismatch', stream,
                              "Ledger and contract disagree", **mismatches)
            raise ReconciliationMismatch("Stream state disagrees with contract",
                                         stream_id=stream.id, **mismatches)
        return {"stream_id": stream.id, "status": "ok", "in_flight": in_flight}

    def reconcile_all(self):
        """Reconcile every active stream. Returns the ids that mismatched."""
        mismatched = []
        for stream_id in [s.id for s in self.ledger.active_streams()]:
            try:
                self.reconcile(stream_id)
            except ReconciliationMismatch:
                mismatched.append(stream_id)
            except ExternalUnavailable as e:
                logger.warning("Reconcile of stream %s skipped: %s", stream_id, e)
                break
        return mismatched


def to_dict(stream: Stream) -> dict:
    return {
        "stream_id": stream.id,
        "worker_id": stream.worker_id,
        "platform_id": stream.platform_id,
        "task_id": stream.task_id,
        "contract_address": stream.contract_address,
        "contract_stream_id": stream.contract_stream_id,
        "status": stream.status.value,
        "total_amount_usdc": str(to_usdc(stream.total_amount_usdc)),
        "released_amount_usdc": str(to_usdc(stream.released_amount_usdc)),
        "claimed_amount_usdc": str(to_usdc(stream.claimed_amount_usdc)),
        "start_time": stream.start_time.isoformat(),
        "end_time": stream.end_time.isoformat(),
        "release_interval": stream.release_interval,
        "next_release_at": stream.next_release_at.isoformat() if stream.next_release_at else None,
    }
