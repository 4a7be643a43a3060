import secrets
import logging
from decimal import Decimal

from core.errors import ConflictError, ValidationError
from core.ledger import Ledger, snapshot, to_usdc
from models import Worker, Platform, Task, TaskType, TaskStatus, normalize_wallet

logger = logging.getLogger('gigledger.registry')


class RegistryService:
    """Onboarding of platforms, workers and tasks."""

    @staticmethod
    def register_platform(name: str, wallet_address: str = None, webhook_url: str = None,
                          ledger: Ledger = None) -> dict:
        from services.auth_service import generate_api_key
        if not (name or '').strip():
            raise ValidationError("Platform name is required")
        ledger = ledger or Ledger()
        raw_key, key_hash = generate_api_key()
        with ledger.transaction():
            platform = Platform(
                name=name.strip(),
                api_key_hash=key_hash,
                wallet_address=wallet_address,
                webhook_url=webhook_url,
                webhook_secret=secrets.token_hex(32) if webhook_url else None,
            )
            ledger.add(platform)
            ledger.flush()
            ledger.audit('platform.registered', resource=platform,
                         after=snapshot(platform, ['name', 'wallet_address', 'webhook_url']),
                         actor_type='operator')
        logger.info("Registered platform %s (%s)", platform.id, platform.name)
        return {
            "platform_id": platform.id,
            "name": platform.name,
            "api_key": raw_key,
            "webhook_secret": platform.webhook_secret,
        }

    @staticmethod
    def register_worker(display_name: str, wallet_address: str, ledger: Ledger = None,
                        created_at=None) -> Worker:
        wallet = normalize_wallet(wallet_address)
        if not (display_name or '').strip():
            raise ValidationError("display_name is required")
        ledger = ledger or Ledger()
        with ledger.transaction():
            if Worker.query.filter_by(wallet_address=wallet).first():
                raise ConflictError("Wallet address already registered", wallet_address=wallet)
            worker = Worker(display_name=display_name.strip(), wallet_address=wallet)
            if created_at is not None:
                worker.created_at = created_at
            ledger.add(worker)
            ledger.flush()
            ledger.audit('worker.registered', resource=worker,
                         after=snapshot(worker, ['display_name', 'wallet_address']))
        logger.info("Registered worker %s (%s)", worker.id, wallet)
        return worker

    @staticmethod
    def create_task(platform_id: str, title: str, payment_amount_usdc, task_type='fixed',
                    worker_id: str = None, external_task_id: str = None, due_date=None,
                    ledger: Ledger = None) -> Task:
        try:
            task_type = TaskType(task_type)
        except ValueError:
            raise ValidationError("Unknown task type", task_type=task_type)
        amount = to_usdc(payment_amount_usdc)
        if amount <= 0:
            raise ValidationError("payment_amount_usdc must be positive")
        if not (title or '').strip():
            raise ValidationError("title is required")
        ledger = ledger or Ledger()
        with ledger.transaction():
            ledger.require_platform(platform_id)
            if worker_id:
                ledger.require_worker(worker_id)
            task = Task(
                platform_id=platform_id,
                worker_id=worker_id,
                external_task_id=external_task_id,
                title=title.strip(),
                type=task_type,
                payment_amount_usdc=amount,
                paid_amount_usdc=Decimal(0),
                status=TaskStatus.ASSIGNED if worker_id else TaskStatus.CREATED,
                due_date=due_date,
            )
            ledger.add(task)
            ledger.flush()
            ledger.audit('task.created', resource=task, after=snapshot(task),
                         actor_type='platform', actor_id=platform_id)
        return task

    @staticmethod
    def worker_to_dict(worker: Worker) -> dict:
        return {
            "worker_id": worker.id,
            "display_name": worker.display_name,
            "wallet_address": worker.wallet_address,
            "reputation_score": worker.reputation_score,
            "total_tasks_completed": worker.total_tasks_completed,
            "status": worker.status.value,
            "created_at": worker.created_at.isoformat() if worker.created_at else None,
        }

    @staticmethod
    def task_to_dict(task: Task) -> dict:
        return {
            "task_id": task.id,
            "platform_id": task.platform_id,
            "worker_id": task.worker_id,
            "external_task_id": task.external_task_id,
            "title": task.title,
            "type": task.type.value,
            "payment_amount_usdc": str(to_usdc(task.payment_amount_usdc)),
            "paid_amount_usdc": str(to_usdc(task.paid_amount_usdc)),
            "status": task.status.value,
            "due_date": task.due_date.isoformat() if task.due_date else None,
            "completed_at": task.completed_at.isoformat() if task.completed_at else None,
        }
