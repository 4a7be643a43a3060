from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session
from datetime import datetime, timezone
from decimal import Decimal
import enum
import re
import uuid

from core.errors import ConflictError, ValidationError

db = SQLAlchemy()

WALLET_RE = re.compile(r'^0x[0-9a-f]{40}$')
BASE_REPUTATION = 100
MIN_REPUTATION = 0
MAX_REPUTATION = 1000


def utcnow():
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid():
    return str(uuid.uuid4())


def _enum(cls, name):
    return db.Enum(
        cls, name=name, native_enum=False, create_constraint=True, length=20,
        values_callable=lambda members: [m.value for m in members],
    )


def normalize_wallet(address: str) -> str:
    addr = (address or '').strip().lower()
    if not WALLET_RE.match(addr):
        raise ValidationError("Invalid wallet address format", wallet_address=address)
    return addr


# ===================================
# Closed status / type enums
# ===================================

class WorkerStatus(str, enum.Enum):
    ACTIVE = 'active'
    SUSPENDED = 'suspended'
    DISABLED = 'disabled'


class PlatformStatus(str, enum.Enum):
    ACTIVE = 'active'
    DISABLED = 'disabled'


class TaskType(str, enum.Enum):
    FIXED = 'fixed'
    TIME_BASED = 'time_based'
    MILESTONE = 'milestone'


class TaskStatus(str, enum.Enum):
    CREATED = 'created'
    ASSIGNED = 'assigned'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    DISPUTED = 'disputed'
    CANCELLED = 'cancelled'


class StreamStatus(str, enum.Enum):
    ACTIVE = 'active'
    PAUSED = 'paused'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class TxType(str, enum.Enum):
    PAYOUT = 'payout'
    ADVANCE = 'advance'
    REFUND = 'refund'
    REPAYMENT = 'repayment'
    FEE = 'fee'


class TxStatus(str, enum.Enum):
    PENDING = 'pending'
    SUBMITTED = 'submitted'
    CONFIRMED = 'confirmed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


class ReputationEventType(str, enum.Enum):
    TASK_COMPLETED = 'task_completed'
    TASK_LATE = 'task_late'
    DISPUTE_FILED = 'dispute_filed'
    DISPUTE_RESOLVED = 'dispute_resolved'
    RATING_RECEIVED = 'rating_received'
    MANUAL_ADJUSTMENT = 'manual_adjustment'
    LOAN_DEFAULTED = 'loan_defaulted'


class LoanStatus(str, enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    DISBURSED = 'disbursed'
    ACTIVE = 'active'
    REPAYING = 'repaying'
    REPAID = 'repaid'
    DEFAULTED = 'defaulted'
    CANCELLED = 'cancelled'


OPEN_LOAN_STATUSES = (LoanStatus.ACTIVE, LoanStatus.REPAYING)
IN_FLIGHT_LOAN_STATUSES = (LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.DISBURSED)
IN_FLIGHT_TX_STATUSES = (TxStatus.PENDING, TxStatus.SUBMITTED)


# ===================================
# Entities
# ===================================

class Worker(db.Model):
    __tablename__ = 'workers'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    display_name = db.Column(db.String(100), nullable=False)
    wallet_address = db.Column(db.String(42), unique=True, nullable=False)
    # Derived projection of reputation_events; rebuildable by replay
    reputation_score = db.Column(db.Integer, nullable=False, default=BASE_REPUTATION)
    total_tasks_completed = db.Column(db.Integer, nullable=False, default=0)
    total_earnings_usdc = db.Column(db.Numeric(20, 6), nullable=False, default=0)
    status = db.Column(_enum(WorkerStatus, 'worker_status'), nullable=False, default=WorkerStatus.ACTIVE)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    extra = db.Column('metadata', db.JSON, default=lambda: {})

    streams = db.relationship('Stream', backref='worker', lazy=True, cascade='all, delete-orphan')
    loans = db.relationship('Loan', backref='worker', lazy=True, cascade='all, delete-orphan')

    __table_args__ = (
        db.Index('ix_workers_reputation', 'reputation_score'),
        db.Index('ix_workers_status', 'status'),
    )

    @db.validates('wallet_address')
    def _validate_wallet(self, key, value):
        return normalize_wallet(value)


class Platform(db.Model):
    __tablename__ = 'platforms'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(100), nullable=False)
    api_key_hash = db.Column(db.String(64), unique=True, nullable=False)
    wallet_address = db.Column(db.String(42), nullable=True)
    webhook_url = db.Column(db.String(500), nullable=True)
    webhook_secret = db.Column(db.String(255), nullable=True)
    total_workers = db.Column(db.Integer, nullable=False, default=0)
    total_payments_usdc = db.Column(db.Numeric(20, 6), nullable=False, default=0)
    status = db.Column(_enum(PlatformStatus, 'platform_status'), nullable=False, default=PlatformStatus.ACTIVE)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    tasks = db.relationship('Task', backref='platform', lazy=True,
                            cascade='all, delete-orphan', passive_deletes=True)

    @db.validates('wallet_address')
    def _validate_wallet(self, key, value):
        return normalize_wallet(value) if value else None


class Task(db.Model):
    __tablename__ = 'tasks'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    platform_id = db.Column(db.String(36), db.ForeignKey('platforms.id', ondelete='CASCADE'), nullable=False)
    worker_id = db.Column(db.String(36), db.ForeignKey('workers.id', ondelete='SET NULL'), nullable=True)
    external_task_id = db.Column(db.String(255), nullable=True)
    title = db.Column(db.String(200), nullable=False)
    type = db.Column(_enum(TaskType, 'task_type'), nullable=False)
    payment_amount_usdc = db.Column(db.Numeric(20, 6), nullable=False)
    paid_amount_usdc = db.Column(db.Numeric(20, 6), nullable=False, default=0)
    status = db.Column(_enum(TaskStatus, 'task_status'), nullable=False, default=TaskStatus.CREATED)
    completed_at = db.Column(db.DateTime, nullable=True)
    due_date = db.Column(db.DateTime, nullable=True)
    worker_rating = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.CheckConstraint('paid_amount_usdc >= 0', name='ck_tasks_paid_non_negative'),
        db.CheckConstraint('paid_amount_usdc <= payment_amount_usdc', name='ck_tasks_paid_le_payment'),
        db.Index('ix_tasks_worker', 'worker_id'),
        db.Index('ix_tasks_platform', 'platform_id'),
        db.Index('ix_tasks_status_completed', 'status', 'completed_at'),
    )


class Stream(db.Model):
    __tablename__ = 'streams'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    worker_id = db.Column(db.String(36), db.ForeignKey('workers.id', ondelete='CASCADE'), nullable=False)
    platform_id = db.Column(db.String(36), db.ForeignKey('platforms.id', ondelete='CASCADE'), nullable=False)
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id', ondelete='SET NULL'), nullable=True, unique=True)
    # On-chain binding (1:1)
    contract_address = db.Column(db.String(42), nullable=False)
    contract_stream_id = db.Column(db.Integer, nullable=False)
    total_amount_usdc = db.Column(db.Numeric(20, 6), nullable=False)
    released_amount_usdc = db.Column(db.Numeric(20, 6), nullable=False, default=0)
    claimed_amount_usdc = db.Column(db.Numeric(20, 6), nullable=False, default=0)
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)
    release_interval = db.Column(db.Integer, nullable=False)  # seconds
    next_release_at = db.Column(db.DateTime, nullable=True)
    status = db.Column(_enum(StreamStatus, 'stream_status'), nullable=False, default=StreamStatus.ACTIVE)
    paused_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.CheckConstraint('claimed_amount_usdc >= 0', name='ck_streams_claimed_non_negative'),
        db.CheckConstraint('claimed_amount_usdc <= released_amount_usdc', name='ck_streams_claimed_le_released'),
        db.CheckConstraint('released_amount_usdc <= total_amount_usdc', name='ck_streams_released_le_total'),
        db.CheckConstraint('end_time > start_time', name='ck_streams_window'),
        db.CheckConstraint('release_interval > 0', name='ck_streams_interval_positive'),
        db.UniqueConstraint('contract_address', 'contract_stream_id', name='uq_streams_contract'),
        db.Index('ix_streams_due', 'status', 'next_release_at'),
        db.Index('ix_streams_worker', 'worker_id'),
    )


class Transaction(db.Model):
    __tablename__ = 'transactions'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    idempotency_key = db.Column(db.String(200), unique=True, nullable=False)
    worker_id = db.Column(db.String(36), db.ForeignKey('workers.id', ondelete='SET NULL'), nullable=True)
    platform_id = db.Column(db.String(36), db.ForeignKey('platforms.id', ondelete='SET NULL'), nullable=True)
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id', ondelete='SET NULL'), nullable=True)
    stream_id = db.Column(db.String(36), db.ForeignKey('streams.id', ondelete='SET NULL'), nullable=True)
    loan_id = db.Column(db.String(36), db.ForeignKey('loans.id', ondelete='SET NULL'), nullable=True)
    type = db.Column(_enum(TxType, 'transaction_type'), nullable=False)
    status = db.Column(_enum(TxStatus, 'transaction_status'), nullable=False, default=TxStatus.PENDING)
    amount_usdc = db.Column(db.Numeric(20, 6), nullable=False)
    fee_usdc = db.Column(db.Numeric(20, 6), nullable=False, default=0)
    from_wallet = db.Column(db.String(42), nullable=True)
    to_wallet = db.Column(db.String(42), nullable=True)
    tx_hash = db.Column(db.String(66), nullable=True)
    confirmations = db.Column(db.Integer, nullable=False, default=0)
    error_message = db.Column(db.Text, nullable=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(db.DateTime, nullable=True)
    submitted_at = db.Column(db.DateTime, nullable=True)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    extra = db.Column('metadata', db.JSON, default=lambda: {})

    __table_args__ = (
        db.CheckConstraint('amount_usdc > 0', name='ck_transactions_amount_positive'),
        db.Index('ix_transactions_tx_hash', 'tx_hash'),
        db.Index('ix_transactions_worker', 'worker_id'),
        db.Index('ix_transactions_task', 'task_id'),
        db.Index('ix_transactions_stream', 'stream_id'),
        db.Index('ix_transactions_status_next', 'status', 'next_attempt_at'),
    )


class ReputationEvent(db.Model):
    """Append-only. Worker.reputation_score is a projection of these rows."""
    __tablename__ = 'reputation_events'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    worker_id = db.Column(db.String(36), db.ForeignKey('workers.id', ondelete='CASCADE'), nullable=False)
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id', ondelete='SET NULL'), nullable=True)
    event_type = db.Column(_enum(ReputationEventType, 'reputation_event_type'), nullable=False)
    points_delta = db.Column(db.Integer, nullable=False)
    previous_score = db.Column(db.Integer, nullable=False)
    new_score = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, nullable=True)
    triggered_by = db.Column(db.String(50), nullable=False, default='system')
    created_at = db.Column(db.DateTime, default=utcnow)
    extra = db.Column('metadata', db.JSON, default=lambda: {})

    __table_args__ = (
        db.Index('ix_reputation_worker_created', 'worker_id', 'created_at'),
    )


class Loan(db.Model):
    __tablename__ = 'loans'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    worker_id = db.Column(db.String(36), db.ForeignKey('workers.id', ondelete='CASCADE'), nullable=False)
    requested_amount_usdc = db.Column(db.Numeric(20, 6), nullable=False)
    approved_amount_usdc = db.Column(db.Numeric(20, 6), nullable=True)
    fee_usdc = db.Column(db.Numeric(20, 6), nullable=False, default=0)
    total_owed_usdc = db.Column(db.Numeric(20, 6), nullable=True)
    remaining_balance_usdc = db.Column(db.Numeric(20, 6), nullable=True)
    risk_score = db.Column(db.Integer, nullable=True)
    predicted_earnings_7d = db.Column(db.Numeric(20, 6), nullable=True)
    fee_percentage = db.Column(db.Numeric(5, 2), nullable=True)
    status = db.Column(_enum(LoanStatus, 'loan_status'), nullable=False, default=LoanStatus.PENDING)
    requested_at = db.Column(db.DateTime, default=utcnow)
    approved_at = db.Column(db.DateTime, nullable=True)
    disbursed_at = db.Column(db.DateTime, nullable=True)
    due_date = db.Column(db.DateTime, nullable=True)
    repaid_at = db.Column(db.DateTime, nullable=True)
    defaulted_at = db.Column(db.DateTime, nullable=True)
    tasks_repaid = db.Column(db.Integer, nullable=False, default=0)
    rejection_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.CheckConstraint('remaining_balance_usdc >= 0', name='ck_loans_remaining_non_negative'),
        # At most one open loan per worker
        db.Index(
            'uq_loans_open_per_worker', 'worker_id', unique=True,
            sqlite_where=db.text("status IN ('active', 'repaying')"),
            postgresql_where=db.text("status IN ('active', 'repaying')"),
        ),
        db.Index('ix_loans_worker_status', 'worker_id', 'status'),
        db.Index('ix_loans_due', 'status', 'due_date'),
    )


class AuditLog(db.Model):
    """Append-only compliance trail with before/after snapshots."""
    __tablename__ = 'audit_logs'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    actor_type = db.Column(db.String(20), nullable=False)  # worker|platform|system|operator
    actor_id = db.Column(db.String(100), nullable=True)
    action = db.Column(db.String(64), nullable=False)
    resource_type = db.Column(db.String(50), nullable=True)
    resource_id = db.Column(db.String(36), nullable=True)
    request_id = db.Column(db.String(100), nullable=True)
    changes_before = db.Column(db.JSON, nullable=True)
    changes_after = db.Column(db.JSON, nullable=True)
    success = db.Column(db.Boolean, nullable=False, default=True)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.Index('ix_audit_resource', 'resource_type', 'resource_id'),
        db.Index('ix_audit_action', 'action'),
        db.Index('ix_audit_created', 'created_at'),
    )


class OperatorNonce(db.Model):
    """Nonces of accepted operator signatures; each signed request is honoured once."""
    __tablename__ = 'operator_nonces'
    nonce = db.Column(db.String(64), primary_key=True)
    path = db.Column(db.String(255), nullable=False)
    used_at = db.Column(db.DateTime, default=utcnow, index=True)


# ===================================
# Flush-time invariant guards
# ===================================

_APPEND_ONLY = (ReputationEvent, AuditLog)


def _committed(obj, attr):
    """Value of `attr` as last loaded from the database, or None if new."""
    hist = inspect(obj).attrs[attr].load_history()
    if hist.deleted:
        return hist.deleted[0]
    if hist.unchanged:
        return hist.unchanged[0]
    return None


def _dec(value):
    return Decimal(str(value)) if value is not None else None


def _check_stream(stream: Stream):
    total = _dec(stream.total_amount_usdc)
    released = _dec(stream.released_amount_usdc) or Decimal(0)
    claimed = _dec(stream.claimed_amount_usdc) or Decimal(0)
    if not (Decimal(0) <= claimed <= released <= total):
        raise ConflictError(
            "Stream amounts violate 0 <= claimed <= released <= total",
            stream_id=stream.id, claimed=str(claimed), released=str(released), total=str(total),
        )
    before = _dec(_committed(stream, 'released_amount_usdc'))
    if before is not None and released < before:
        raise ConflictError("Stream released amount cannot decrease", stream_id=stream.id)


def _check_loan(loan: Loan):
    remaining = _dec(loan.remaining_balance_usdc)
    if remaining is None:
        return
    if remaining < 0:
        raise ConflictError("Loan remaining balance cannot be negative", loan_id=loan.id)
    before = _dec(_committed(loan, 'remaining_balance_usdc'))
    if before is not None and remaining > before:
        raise ConflictError("Loan remaining balance cannot increase", loan_id=loan.id)


def _check_task(task: Task):
    paid = _dec(task.paid_amount_usdc) or Decimal(0)
    if paid < 0 or paid > _dec(task.payment_amount_usdc):
        raise ConflictError("Task paid amount exceeds payment amount", task_id=task.id)


def _check_transaction(tx: Transaction):
    if _committed(tx, 'status') == TxStatus.CONFIRMED:
        raise ConflictError("Confirmed transactions are immutable", transaction_id=tx.id)


@event.listens_for(Session, 'before_flush')
def _enforce_ledger_invariants(session, flush_context, instances):
    for obj in session.deleted:
        if isinstance(obj, _APPEND_ONLY):
            raise ConflictError(f"{obj.__tablename__} is append-only", id=obj.id)
    for obj in session.dirty:
        if not session.is_modified(obj):
            continue
        if isinstance(obj, _APPEND_ONLY):
            raise ConflictError(f"{obj.__tablename__} is append-only", id=obj.id)
        if isinstance(obj, Transaction):
            _check_transaction(obj)
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, Stream):
            _check_stream(obj)
        elif isinstance(obj, Loan):
            _check_loan(obj)
        elif isinstance(obj, Task):
            _check_task(obj)
