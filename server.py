"""
GigLedger: payment ledger reconciliation service.
Flask application factory, HTTP surface and operator CLI.

Transaction statuses: pending -> submitted -> confirmed | failed (-> pending) | cancelled
Stream statuses:      active <-> paused -> cancelled | completed
Loan statuses:        pending -> approved -> disbursed -> active -> repaying -> repaid | defaulted
"""

from flask import Flask, request, jsonify, g, current_app
from models import db
from config import Config
from core.context import build_core
from core.errors import LedgerError, ValidationError
from services.auth_service import require_platform, require_operator
from services.dispatcher import Dispatcher
from services.webhook_service import WebhookNotifier, is_safe_webhook_url

import atexit
import click
import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone

# ---------------------------------------------------------------------------
# Structured logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Produce valid JSON log lines even when message contains quotes/newlines."""
    def format(self, record):
        from flask import has_request_context
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            rid = getattr(g, 'request_id', None)
            if rid:
                entry["request_id"] = rid
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(level=logging.INFO):
    handler = logging.StreamHandler()
    handler.setFormatter(_JsonFormatter())
    logging.basicConfig(level=level, handlers=[handler])


logger = logging.getLogger('gigledger')

# SQLite: enforce foreign keys so ON DELETE CASCADE / SET NULL hold in dev and tests
from sqlalchemy import event as sa_event
from sqlalchemy.engine import Engine


@sa_event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    import sqlite3
    if isinstance(dbapi_conn, sqlite3.Connection):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _core():
    return current_app.extensions['gigledger']


def _dispatch(fn, *args):
    dispatcher = current_app.extensions.get('gigledger.dispatcher')
    if dispatcher is not None and current_app.config.get('ASYNC_SUBMIT'):
        dispatcher.submit(fn, *args)


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _parse_time(value, field):
    if value is None:
        raise ValidationError(f"{field} is required")
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except (ValueError, OverflowError, OSError):
        raise ValidationError(f"{field} must be an ISO-8601 timestamp or unix seconds")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _not_found(kind):
    return jsonify({"error": "not_found", "message": f"{kind} not found"}), 404


def _owned_stream(stream_id):
    stream = _core().ledger.get_stream(stream_id)
    if stream is None or stream.platform_id != g.platform_id:
        return None
    return stream


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def register_routes(app):

    @app.route('/health', methods=['GET'])
    def health():
        core = _core()
        result = {
            "status": "healthy",
            "service": "gigledger",
            "chain_connected": core.chain.is_connected(),
        }
        return jsonify(result), 200

    # --- Onboarding ---

    @app.route('/platforms', methods=['POST'])
    @require_operator
    def register_platform():
        from services.registry_service import RegistryService
        data = _body()
        webhook_url = data.get('webhook_url')
        if webhook_url and not current_app.config.get('DEV_MODE') and not is_safe_webhook_url(webhook_url):
            raise ValidationError("webhook_url must resolve to a public address")
        result = RegistryService.register_platform(
            data.get('name'), wallet_address=data.get('wallet_address'),
            webhook_url=webhook_url, ledger=_core().ledger,
        )
        return jsonify(result), 201

    @app.route('/workers', methods=['POST'])
    @require_platform
    def register_worker():
        from services.registry_service import RegistryService
        data = _body()
        worker = RegistryService.register_worker(
            data.get('display_name'), data.get('wallet_address'), ledger=_core().ledger,
        )
        return jsonify(RegistryService.worker_to_dict(worker)), 201

    @app.route('/tasks', methods=['POST'])
    @require_platform
    def create_task():
        from services.registry_service import RegistryService
        data = _body()
        due_date = data.get('due_date')
        task = RegistryService.create_task(
            g.platform_id, data.get('title'), data.get('payment_amount_usdc'),
            task_type=data.get('type', 'fixed'), worker_id=data.get('worker_id'),
            external_task_id=data.get('external_task_id'),
            due_date=_parse_time(due_date, 'due_date') if due_date is not None else None,
            ledger=_core().ledger,
        )
        return jsonify(RegistryService.task_to_dict(task)), 201

    # --- Task completion ---

    @app.route('/tasks/<task_id>/complete', methods=['POST'])
    @require_platform
    def complete_task(task_id):
        data = _body()
        for field in ('worker_id', 'amount_usdc', 'task_type'):
            if data.get(field) in (None, ''):
                raise ValidationError(f"{field} is required")
        core = _core()
        result = core.payouts.on_task_completed(
            task_id, data['worker_id'], g.platform_id, data['amount_usdc'], data['task_type'],
            ratings=data.get('ratings'),
        )
        if result['transaction_id'] and not result['duplicate']:
            _dispatch(core.transactions.submit, result['transaction_id'])
        return jsonify(result), 200 if result['duplicate'] else 202

    # --- Worker projections ---

    @app.route('/workers/<worker_id>/balance', methods=['GET'])
    @require_platform
    def worker_balance(worker_id):
        core = _core()
        if core.ledger.get_worker(worker_id) is None:
            return _not_found("Worker")
        return jsonify(core.payouts.balance(worker_id)), 200

    @app.route('/workers/<worker_id>/eligibility', methods=['GET'])
    @require_platform
    def worker_eligibility(worker_id):
        core = _core()
        if core.ledger.get_worker(worker_id) is None:
            return _not_found("Worker")
        amount = request.args.get('amount_usdc')
        if not amount:
            raise ValidationError("amount_usdc query parameter is required")
        return jsonify(core.loans.check_eligibility(worker_id, amount)), 200

    @app.route('/workers/<worker_id>/reputation', methods=['GET'])
    @require_platform
    def worker_reputation(worker_id):
        core = _core()
        if core.ledger.get_worker(worker_id) is None:
            return _not_found("Worker")
        return jsonify(core.reputation.breakdown(worker_id)), 200

    @app.route('/workers/<worker_id>/loan', methods=['GET'])
    @require_platform
    def worker_loan(worker_id):
        core = _core()
        if core.ledger.get_worker(worker_id) is None:
            return _not_found("Worker")
        return jsonify(core.loans.loan_status(worker_id)), 200

    @app.route('/workers/<worker_id>/advance', methods=['POST'])
    @require_platform
    def request_advance(worker_id):
        from services.loan_service import to_dict as loan_to_dict
        core = _core()
        if core.ledger.get_worker(worker_id) is None:
            return _not_found("Worker")
        data = _body()
        if data.get('amount_usdc') in (None, ''):
            raise ValidationError("amount_usdc is required")
        loan, tx = core.loans.request_advance(worker_id, data['amount_usdc'])
        _dispatch(core.transactions.submit, tx.id)
        return jsonify({"loan": loan_to_dict(loan), "transaction_id": tx.id}), 201

    # --- Streams ---

    @app.route('/streams', methods=['POST'])
    @require_platform
    def create_stream():
        from services.stream_scheduler import to_dict as stream_to_dict
        data = _body()
        for field in ('worker_id', 'total_amount_usdc', 'release_interval', 'contract_stream_id'):
            if data.get(field) in (None, ''):
                raise ValidationError(f"{field} is required")
        try:
            contract_stream_id = int(data['contract_stream_id'])
        except (TypeError, ValueError):
            raise ValidationError("contract_stream_id must be an integer")
        stream = _core().streams.create_stream(
            data['worker_id'], g.platform_id, data['total_amount_usdc'],
            _parse_time(data.get('start_time'), 'start_time'),
            _parse_time(data.get('end_time'), 'end_time'),
            data['release_interval'], contract_stream_id,
            contract_address=data.get('contract_address'), task_id=data.get('task_id'),
        )
        return jsonify(stream_to_dict(stream)), 201

    @app.route('/streams/<stream_id>/<action>', methods=['POST'])
    @require_platform
    def stream_action(stream_id, action):
        from services.stream_scheduler import to_dict as stream_to_dict
        if action not in ('pause', 'resume', 'cancel', 'claim'):
            return _not_found("Action")
        if _owned_stream(stream_id) is None:
            return _not_found("Stream")
        streams = _core().streams
        if action == 'claim':
            stream = streams.claim(stream_id, _body().get('amount_usdc'),
                                   actor_type='platform', actor_id=g.platform_id)
        else:
            stream = getattr(streams, action)(stream_id, actor_type='platform', actor_id=g.platform_id)
        return jsonify(stream_to_dict(stream)), 200

    # --- Transactions ---

    @app.route('/transactions/<transaction_id>', methods=['GET'])
    @require_platform
    def get_transaction(transaction_id):
        from services.transaction_service import to_dict as tx_to_dict
        tx = _core().ledger.get_transaction(transaction_id)
        if tx is None or tx.platform_id != g.platform_id:
            return _not_found("Transaction")
        return jsonify(tx_to_dict(tx)), 200

    # --- Operator ---

    @app.route('/admin/tasks/<task_id>/retry-payout', methods=['POST'])
    @require_operator
    def retry_payout(task_id):
        from services.transaction_service import to_dict as tx_to_dict
        core = _core()
        if core.ledger.get_task(task_id) is None:
            return _not_found("Task")
        tx = core.transactions.retry_payout_for_task(task_id, actor_id=g.operator_id)
        _dispatch(core.transactions.submit, tx.id)
        return jsonify(tx_to_dict(tx)), 201

    @app.route('/admin/streams/<stream_id>/retry-release', methods=['POST'])
    @require_operator
    def retry_release(stream_id):
        from services.transaction_service import to_dict as tx_to_dict
        core = _core()
        if core.ledger.get_stream(stream_id) is None:
            return _not_found("Stream")
        tx = core.streams.retry_release_for_stream(stream_id, actor_id=g.operator_id)
        _dispatch(core.transactions.submit, tx.id)
        return jsonify(tx_to_dict(tx)), 201

    @app.route('/admin/transactions/<transaction_id>/cancel', methods=['POST'])
    @require_operator
    def cancel_transaction(transaction_id):
        from services.transaction_service import to_dict as tx_to_dict
        core = _core()
        if core.ledger.get_transaction(transaction_id) is None:
            return _not_found("Transaction")
        tx = core.transactions.cancel(transaction_id, actor_type='operator', actor_id=g.operator_id)
        return jsonify(tx_to_dict(tx)), 200

    @app.route('/admin/streams/<stream_id>/reconcile', methods=['POST'])
    @require_operator
    def reconcile_stream(stream_id):
        core = _core()
        if core.ledger.get_stream(stream_id) is None:
            return _not_found("Stream")
        return jsonify(core.streams.reconcile(stream_id)), 200

    @app.route('/admin/workers/<worker_id>/reputation/adjust', methods=['POST'])
    @require_operator
    def adjust_reputation(worker_id):
        from models import ReputationEventType
        core = _core()
        if core.ledger.get_worker(worker_id) is None:
            return _not_found("Worker")
        data = _body()
        event = core.reputation.record_event(
            worker_id, ReputationEventType.MANUAL_ADJUSTMENT,
            points_delta=data.get('points_delta'), description=data.get('reason'),
            triggered_by=g.operator_id,
        )
        return jsonify({
            "worker_id": worker_id,
            "event_id": event.id,
            "points_delta": event.points_delta,
            "previous_score": event.previous_score,
            "new_score": event.new_score,
        }), 201

    @app.route('/admin/workers/<worker_id>/reputation/rebuild', methods=['POST'])
    @require_operator
    def rebuild_reputation(worker_id):
        core = _core()
        if core.ledger.get_worker(worker_id) is None:
            return _not_found("Worker")
        score = core.reputation.rebuild_score(worker_id, actor_id=g.operator_id)
        return jsonify({"worker_id": worker_id, "reputation_score": score}), 200


# ---------------------------------------------------------------------------
# CLI (flask --app server:create_app <command>)
# ---------------------------------------------------------------------------


def register_cli(app):

    @app.cli.command('tick-streams')
    def tick_streams():
        """Create release intents for every due stream."""
        created = _core().streams.tick()
        click.echo(f"Created {len(created)} release intent(s)")

    @app.cli.command('poll-transactions')
    def poll_transactions():
        """Broadcast due intents and poll submitted transactions once."""
        result = _core().transactions.process()
        click.echo(f"Submitted {result['submitted']}, settled {result['settled']}")

    @app.cli.command('sweep-defaults')
    def sweep_defaults():
        """Mark overdue loans as defaulted."""
        defaulted = _core().loans.sweep_defaults()
        click.echo(f"Defaulted {len(defaulted)} loan(s)")

    @app.cli.command('retry-payout')
    @click.argument('task_id')
    @click.option('--operator', default='cli', help='Operator id recorded in the audit trail')
    def retry_payout_cmd(task_id, operator):
        """Re-create the payout of a task whose payout failed terminally."""
        try:
            tx = _core().transactions.retry_payout_for_task(task_id, actor_id=operator)
        except LedgerError as e:
            raise click.ClickException(e.message)
        click.echo(f"Created payout {tx.id} ({tx.amount_usdc} USDC)")

    @app.cli.command('retry-release')
    @click.argument('stream_id')
    @click.option('--operator', default='cli', help='Operator id recorded in the audit trail')
    def retry_release_cmd(stream_id, operator):
        """Re-create a stream release that failed terminally."""
        try:
            tx = _core().streams.retry_release_for_stream(stream_id, actor_id=operator)
        except LedgerError as e:
            raise click.ClickException(e.message)
        click.echo(f"Created release {tx.id} ({tx.amount_usdc} USDC)")

    @app.cli.command('rebuild-reputation')
    @click.argument('worker_id')
    def rebuild_reputation_cmd(worker_id):
        """Replay reputation events and overwrite the stored score."""
        try:
            score = _core().reputation.rebuild_score(worker_id, actor_id='cli')
        except LedgerError as e:
            raise click.ClickException(e.message)
        click.echo(f"Worker {worker_id} reputation: {score}")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(config_class=Config, chain=None, notifier=None, start_workers=None):
    app = Flask(__name__)
    app.config.from_object(config_class)

    if not app.config.get('TESTING'):
        config_class.validate_production()
    if 'sqlite' in app.config['SQLALCHEMY_DATABASE_URI']:
        logger.warning("SQLite detected. Row-level locking (with_for_update) is NOT supported. "
                       "Use PostgreSQL for production deployments.")

    db.init_app(app)
    with app.app_context():
        db.create_all()

    shutdown_event = threading.Event()
    if notifier is None:
        notifier = WebhookNotifier.from_config(app, shutdown_event=shutdown_event)
    core = build_core(config_class, chain=chain, notifier=notifier)
    dispatcher = Dispatcher(app, core, shutdown_event=shutdown_event,
                            max_workers=app.config.get('WORKER_POOL_SIZE', 4))
    app.extensions['gigledger'] = core
    app.extensions['gigledger.dispatcher'] = dispatcher

    @app.before_request
    def _attach_request_id():
        g.request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())

    @app.after_request
    def _add_request_id_header(response):
        rid = getattr(g, 'request_id', None)
        if rid:
            response.headers['X-Request-ID'] = rid
        return response

    @app.errorhandler(LedgerError)
    def _handle_ledger_error(e):
        if e.http_status >= 500:
            logger.error("%s: %s %s", e.code, e.message, e.details)
        return jsonify(e.to_dict()), e.http_status

    register_routes(app)
    register_cli(app)

    if start_workers is None:
        start_workers = app.config.get('RUN_BACKGROUND_WORKERS', False)
    if start_workers:
        dispatcher.start()

    def _shutdown():
        dispatcher.shutdown(wait=False)
        if hasattr(notifier, 'shutdown'):
            notifier.shutdown(wait=False)
    atexit.register(_shutdown)

    logger.info("GigLedger started (chain=%r)", core.chain)
    return app


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

if __name__ == '__main__':
    configure_logging()
    create_app().run(port=5005, debug=os.environ.get('FLASK_DEBUG', 'false').lower() in ('true', '1'))
