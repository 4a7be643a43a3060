"""
Ledger Store: all-or-nothing units of work, repositories, range queries,
per-worker serialization and the append-only audit trail.

The ledger is the single source of truth. Every multi-entity write goes
through `Ledger.transaction()`; invariant violations surface as
`ConflictError` instead of silent writes.
"""
import enum
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from core.errors import ConflictError, LedgerError, ValidationError
from models import (
    db, Worker, Platform, Task, Stream, Transaction, ReputationEvent, Loan, AuditLog,
    TaskStatus, StreamStatus, TxStatus, TxType, LoanStatus,
    IN_FLIGHT_TX_STATUSES, OPEN_LOAN_STATUSES, IN_FLIGHT_LOAN_STATUSES,
)

logger = logging.getLogger('gigledger.ledger')

USDC_QUANT = Decimal('0.000001')


def to_usdc(value) -> Decimal:
    """Coerce to a 6-decimal USDC amount, rounding toward zero."""
    if value is None:
        return Decimal(0).quantize(USDC_QUANT)
    try:
        return Decimal(str(value)).quantize(USDC_QUANT, rounding=ROUND_DOWN)
    except ArithmeticError:
        raise ValidationError("Invalid USDC amount", amount=str(value))


def snapshot(obj, fields=None) -> dict:
    """JSON-safe dict of column values for audit before/after images."""
    if obj is None:
        return None
    names = fields or [c.key for c in obj.__table__.columns]
    out = {}
    for name in names:
        attr = 'extra' if name == 'metadata' else name
        value = getattr(obj, attr, None)
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, enum.Enum):
            value = value.value
        out[name] = value
    return out


class WorkerLocks:
    """In-process single-writer locks keyed by worker id."""

    def __init__(self):
        self._locks = {}
        self._guard = threading.Lock()

    def get(self, worker_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(worker_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[worker_id] = lock
            return lock


class Ledger:
    def __init__(self, session=None, locks: WorkerLocks = None):
        self._session = session
        self.locks = locks or WorkerLocks()
        self._local = threading.local()

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    # --- Units of work ---

    @contextmanager
    def transaction(self):
        """Commit everything written inside the block, or nothing.

        Nested blocks join the outermost unit of work.
        """
        depth = getattr(self._local, 'depth', 0)
        self._local.depth = depth + 1
        try:
            yield self.session
            if depth == 0:
                self.session.commit()
        except IntegrityError as e:
            if depth == 0:
                self.session.rollback()
            raise ConflictError("Ledger constraint violated", detail=str(e.orig)) from e
        except BaseException:
            if depth == 0:
                self.session.rollback()
            raise
        finally:
            self._local.depth = depth

    def with_transaction(self, fn, *args, **kwargs):
        with self.transaction():
            return fn(*args, **kwargs)

    def in_transaction(self) -> bool:
        return getattr(self._local, 'depth', 0) > 0

    @contextmanager
    def worker_scope(self, worker_id: str):
        """Serialize financial mutations for one worker.

        Holds the in-process lock for the worker and a row lock on the
        worker record for the duration of the unit of work. Never call the
        blockchain adapter inside this scope.
        """
        lock = self.locks.get(worker_id)
        with lock:
            with self.transaction():
                worker = (
                    self.session.query(Worker)
                    .filter_by(id=worker_id)
                    .with_for_update()
                    .first()
                )
                if worker is None:
                    raise ValidationError("Worker not found", worker_id=worker_id)
                yield worker

    # --- Repositories ---

    def add(self, obj):
        self.session.add(obj)
        return obj

    def flush(self):
        self.session.flush()

    def get_worker(self, worker_id):
        return self.session.get(Worker, worker_id)

    def get_platform(self, platform_id):
        return self.session.get(Platform, platform_id)

    def get_task(self, task_id):
        return self.session.get(Task, task_id)

    def get_stream(self, stream_id):
        return self.session.get(Stream, stream_id)

    def get_transaction(self, transaction_id):
        return self.session.get(Transaction, transaction_id)

    def get_loan(self, loan_id):
        return self.session.get(Loan, loan_id)

    def _require(self, getter, kind, ident):
        obj = getter(ident)
        if obj is None:
            raise ValidationError(f"{kind} not found", id=ident)
        return obj

    def require_worker(self, worker_id):
        return self._require(self.get_worker, 'Worker', worker_id)

    def require_platform(self, platform_id):
        return self._require(self.get_platform, 'Platform', platform_id)

    def require_task(self, task_id):
        return self._require(self.get_task, 'Task', task_id)

    def require_stream(self, stream_id):
        return self._require(self.get_stream, 'Stream', stream_id)

    def require_transaction(self, transaction_id):
        return self._require(self.get_transaction, 'Transaction', transaction_id)

    def require_loan(self, loan_id):
        return self._require(self.get_loan, 'Loan', loan_id)

    def lock_task(self, task_id):
        return self.session.query(Task).filter_by(id=task_id).with_for_update().first()

    def lock_stream(self, stream_id):
        return self.session.query(Stream).filter_by(id=stream_id).with_for_update().first()

    def lock_loan(self, loan_id):
        return self.session.query(Loan).filter_by(id=loan_id).with_for_update().first()

    def lock_transaction(self, transaction_id):
        return self.session.query(Transaction).filter_by(id=transaction_id).with_for_update().first()

    def transaction_by_key(self, idempotency_key):
        return Transaction.query.filter_by(idempotency_key=idempotency_key).first()

    # --- Range queries ---

    def transactions(self, worker_id=None, platform_id=None, task_id=None, stream_id=None,
                     status=None, tx_type=None, since=None, until=None):
        query = Transaction.query
        if worker_id:
            query = query.filter(Transaction.worker_id == worker_id)
        if platform_id:
            query = query.filter(Transaction.platform_id == platform_id)
        if task_id:
            query = query.filter(Transaction.task_id == task_id)
        if stream_id:
            query = query.filter(Transaction.stream_id == stream_id)
        if status is not None:
            statuses = status if isinstance(status, (list, tuple, set)) else [status]
            query = query.filter(Transaction.status.in_(statuses))
        if tx_type is not None:
            query = query.filter(Transaction.type == tx_type)
        if since:
            query = query.filter(Transaction.created_at >= since)
        if until:
            query = query.filter(Transaction.created_at < until)
        return query.order_by(Transaction.created_at.asc()).all()

    def retry_ready_transactions(self, now, limit=100):
        return (
            Transaction.query
            .filter(Transaction.status == TxStatus.PENDING)
            .filter((Transaction.next_attempt_at.is_(None)) | (Transaction.next_attempt_at <= now))
            .order_by(Transaction.created_at.asc())
            .limit(limit)
            .all()
        )

    def submitted_transactions(self, limit=200):
        return (
            Transaction.query
            .filter(Transaction.status == TxStatus.SUBMITTED)
            .order_by(Transaction.submitted_at.asc())
            .limit(limit)
            .all()
        )

    def stuck_transactions(self, now, timeout_seconds):
        cutoff = now - timedelta(seconds=timeout_seconds)
        return (
            Transaction.query
            .filter(Transaction.status == TxStatus.SUBMITTED)
            .filter(Transaction.submitted_at <= cutoff)
            .all()
        )

    def due_streams(self, now, limit=500):
        return (
            Stream.query
            .filter(Stream.status == StreamStatus.ACTIVE)
            .filter(Stream.next_release_at.isnot(None))
            .filter(Stream.next_release_at <= now)
            .order_by(Stream.next_release_at.asc())
            .limit(limit)
            .all()
        )

    def active_streams(self):
        return Stream.query.filter(Stream.status == StreamStatus.ACTIVE).all()

    def in_flight_release(self, stream_id):
        return (
            Transaction.query
            .filter(Transaction.stream_id == stream_id)
            .filter(Transaction.type == TxType.PAYOUT)
            .filter(Transaction.status.in_(IN_FLIGHT_TX_STATUSES))
            .first()
        )

    def completed_task_earnings(self, worker_id, since, until=None) -> Decimal:
        query = db.session.query(func.coalesce(func.sum(Task.payment_amount_usdc), 0)).filter(
            Task.worker_id == worker_id,
            Task.status == TaskStatus.COMPLETED,
            Task.completed_at >= since,
        )
        if until:
            query = query.filter(Task.completed_at < until)
        return to_usdc(query.scalar())

    def task_counts(self, worker_id, since=None):
        """(completed, finished) task counts; finished excludes open work."""
        query = Task.query.filter(Task.worker_id == worker_id)
        if since:
            query = query.filter(Task.created_at >= since)
        completed = query.filter(Task.status == TaskStatus.COMPLETED).count()
        finished = query.filter(Task.status.in_(
            (TaskStatus.COMPLETED, TaskStatus.DISPUTED, TaskStatus.CANCELLED)
        )).count()
        return completed, finished

    def loans_for_worker(self, worker_id, statuses=None):
        query = Loan.query.filter(Loan.worker_id == worker_id)
        if statuses:
            query = query.filter(Loan.status.in_(statuses))
        return query.order_by(Loan.created_at.desc()).all()

    def open_loan(self, worker_id, include_in_flight=False):
        statuses = OPEN_LOAN_STATUSES + (IN_FLIGHT_LOAN_STATUSES if include_in_flight else ())
        return (
            Loan.query
            .filter(Loan.worker_id == worker_id)
            .filter(Loan.status.in_(statuses))
            .order_by(Loan.created_at.desc())
            .first()
        )

    def overdue_loans(self, now):
        return (
            Loan.query
            .filter(Loan.status.in_(OPEN_LOAN_STATUSES))
            .filter(Loan.due_date.isnot(None))
            .filter(Loan.due_date < now)
            .all()
        )

    def reputation_events(self, worker_id):
        return (
            ReputationEvent.query
            .filter_by(worker_id=worker_id)
            .order_by(ReputationEvent.created_at.asc())
            .all()
        )

    def reputation_delta_sum(self, worker_id) -> int:
        total = db.session.query(func.coalesce(func.sum(ReputationEvent.points_delta), 0)).filter(
            ReputationEvent.worker_id == worker_id
        ).scalar()
        return int(total or 0)

    def audit_trail(self, resource_type=None, resource_id=None, action=None):
        query = AuditLog.query
        if resource_type:
            query = query.filter(AuditLog.resource_type == resource_type)
        if resource_id:
            query = query.filter(AuditLog.resource_id == resource_id)
        if action:
            query = query.filter(AuditLog.action == action)
        return query.order_by(AuditLog.created_at.asc()).all()

    # --- Audit ---

    def audit(self, action, resource=None, before=None, after=None, actor_type='system',
              actor_id=None, success=True, error=None, request_id=None):
        """Append an audit row inside the current unit of work."""
        entry = AuditLog(
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            resource_type=resource.__tablename__ if resource is not None else None,
            resource_id=getattr(resource, 'id', None),
            request_id=request_id,
            changes_before=before,
            changes_after=after,
            success=success,
            error_message=error,
        )
        self.session.add(entry)
        return entry

    def alert(self, action, resource, error, **context):
        """Record a reconciliation alert in its own unit of work."""
        logger.error("Reconciliation alert %s on %s %s: %s",
                     action, getattr(resource, '__tablename__', '?'), getattr(resource, 'id', '?'), error)
        try:
            with self.transaction():
                self.audit(action, resource=resource, after=context or None, success=False, error=str(error))
        except LedgerError as e:
            logger.critical("Failed to persist reconciliation alert %s: %s", action, e)
