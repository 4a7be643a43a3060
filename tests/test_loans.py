"""
Loan engine: underwriting, advance lifecycle, auto-repayment and defaults.
"""
import threading
import time
from datetime import timedelta
from decimal import Decimal

import pytest

from core.errors import ConflictError, ValidationError
from models import LoanStatus, ReputationEventType, TaskStatus, TxStatus, TxType, db, utcnow
from services.loan_service import FEE_TIERS, fee_rate, to_dict
from tests.helpers.factories import complete_and_settle, make_platform, make_task, make_worker, settle


@pytest.fixture
def now():
    return utcnow()


@pytest.fixture
def underwriting(core, monkeypatch):
    """Pin the risk score at 650 (5% tier) and predicted earnings at $200."""
    monkeypatch.setattr(core.loans, 'risk_score', lambda worker_id, now=None: {"score": 650, "factors": {}})
    monkeypatch.setattr(core.loans, 'predicted_earnings', lambda worker_id, now=None: Decimal('200'))


@pytest.fixture
def seasoned(core, now):
    """A month-old worker with one settled $40 task."""
    platform, _ = make_platform(core)
    worker = make_worker(core, age_days=30)
    complete_and_settle(core, platform, worker, '40', now=now)
    return platform, worker


def _active_loan(core, worker, amount, now):
    loan, tx = core.loans.request_advance(worker.id, amount, now=now)
    settle(core, tx.id, now=now)
    return core.ledger.get_loan(loan.id)


# ===================================================================
# Underwriting
# ===================================================================

class TestUnderwriting:
    def test_fee_tiers(self):
        assert [fee_rate(s) for s in (850, 800, 750, 650, 600, 599)] == [
            Decimal('2.0'), Decimal('2.0'), Decimal('3.5'), Decimal('5.0'), Decimal('5.0'), None,
        ]
        assert [floor for floor, _ in FEE_TIERS] == [800, 700, 600]

    def test_risk_score_bounds_and_factors(self, core, now):
        worker = make_worker(core)
        risk = core.loans.risk_score(worker.id, now)
        assert 0 <= risk['score'] <= 1000
        assert set(risk['factors']) == {
            'reputation', 'maturity', 'task_history', 'performance', 'disputes', 'loan_history',
        }
        # New worker: 30 reputation + 80 performance + 100 disputes
        assert risk['score'] == 210

    def test_predicted_earnings_blend(self, core, now):
        platform, _ = make_platform(core)
        worker = make_worker(core)
        for amount, days_ago in (('70', 2), ('30', 20)):
            task = make_task(core, platform, amount=amount, worker=worker)
            core.payouts.on_task_completed(task.id, worker.id, platform.id, amount, 'fixed',
                                           now=now - timedelta(days=days_ago))
        # 0.6 * 70 + 0.4 * (100 * 7 / 30)
        assert core.loans.predicted_earnings(worker.id, now) == Decimal('51.333333')

    def test_completion_rate(self, core, now):
        platform, _ = make_platform(core)
        worker = make_worker(core)
        assert core.loans.completion_rate(worker.id, now) is None

        complete_and_settle(core, platform, worker, '10', now=now)
        dropped = make_task(core, platform, amount='10', worker=worker)
        with core.ledger.transaction():
            dropped.status = TaskStatus.CANCELLED
        assert core.loans.completion_rate(worker.id, now) == Decimal('0.5')

    def test_new_worker_is_ineligible(self, core, now):
        worker = make_worker(core)
        result = core.loans.check_eligibility(worker.id, '100', now)
        assert result['eligible'] is False
        assert {'account_age', 'completion_rate', 'risk_score', 'predicted_earnings'} <= set(result['reasons'])
        assert result['fee_percentage'] is None

        with pytest.raises(ConflictError) as exc:
            core.loans.request_advance(worker.id, '100', now=now)
        assert 'account_age' in exc.value.details['reasons']
        assert core.ledger.loans_for_worker(worker.id) == []

    def test_eligible_worker(self, core, seasoned, underwriting, now):
        _, worker = seasoned
        result = core.loans.check_eligibility(worker.id, '100', now)
        assert result['eligible'] is True
        assert result['reasons'] == []
        assert result['required_earnings_7d'] == '150.000000'
        assert result['fee_percentage'] == '5.0'

    def test_amount_cap(self, core, seasoned, underwriting, now):
        _, worker = seasoned
        result = core.loans.check_eligibility(worker.id, '600', now)
        assert 'max_amount' in result['reasons']

    def test_rejects_non_positive_amount(self, core, seasoned, now):
        _, worker = seasoned
        with pytest.raises(ValidationError):
            core.loans.check_eligibility(worker.id, '0', now)


# ===================================================================
# Advance lifecycle
# ===================================================================

class TestAdvance:
    def test_request_approves_and_queues_advance(self, core, seasoned, underwriting, now):
        _, worker = seasoned
        loan, tx = core.loans.request_advance(worker.id, '100', now=now)
        assert loan.status == LoanStatus.APPROVED
        assert loan.fee_usdc == Decimal('5')
        assert loan.total_owed_usdc == Decimal('105')
        assert loan.remaining_balance_usdc is None
        assert tx.type == TxType.ADVANCE
        assert tx.status == TxStatus.PENDING
        assert tx.from_wallet == core.treasury_wallet
        assert tx.to_wallet == worker.wallet_address
        assert tx.idempotency_key == f"loan:{loan.id}:advance"

    def test_submit_disburses_and_confirm_activates(self, core, seasoned, underwriting, now):
        _, worker = seasoned
        loan, tx = core.loans.request_advance(worker.id, '100', now=now)
        core.transactions.submit(tx.id, now=now)
        disbursed = core.ledger.get_loan(loan.id)
        assert disbursed.status == LoanStatus.DISBURSED
        assert disbursed.remaining_balance_usdc == Decimal('105')

        core.transactions.poll_confirmation(tx.id, now=now)
        active = core.ledger.get_loan(loan.id)
        assert active.status == LoanStatus.ACTIVE
        assert active.due_date == now + timedelta(days=14)

    def test_one_open_loan(self, core, seasoned, underwriting, now):
        _, worker = seasoned
        core.loans.request_advance(worker.id, '50', now=now)
        with pytest.raises(ConflictError) as exc:
            core.loans.request_advance(worker.id, '50', now=now)
        assert 'no_open_loan' in exc.value.details['reasons']

    def test_operator_fee_override(self, core, seasoned, underwriting, now):
        _, worker = seasoned
        loan, _ = core.loans.request_advance(worker.id, '100', fee_percentage='1.5', actor_id='0xop', now=now)
        assert loan.fee_usdc == Decimal('1.5')
        entry = core.ledger.audit_trail(action='loan.requested')[0]
        assert entry.actor_type == 'operator'

    def test_failed_advance_cancels_loan(self, core, seasoned, underwriting, chain, now):
        _, worker = seasoned
        loan, tx = core.loans.request_advance(worker.id, '100', now=now)
        chain.revert_all = True
        for attempt in range(3):
            settle(core, tx.id, now=now + timedelta(minutes=attempt))

        assert core.ledger.get_transaction(tx.id).status == TxStatus.FAILED
        cancelled = core.ledger.get_loan(loan.id)
        assert cancelled.status == LoanStatus.CANCELLED
        assert cancelled.remaining_balance_usdc == 0
        assert cancelled.rejection_reason
        # Free to apply again
        assert core.loans.check_eligibility(worker.id, '100', now)['checks']['no_open_loan'] is True

    def test_cancelled_advance_cancels_loan(self, core, seasoned, underwriting, now):
        _, worker = seasoned
        loan, tx = core.loans.request_advance(worker.id, '100', now=now)
        core.transactions.cancel(tx.id, actor_type='operator', actor_id='0xop')
        assert core.ledger.get_loan(loan.id).status == LoanStatus.CANCELLED


# ===================================================================
# Auto-repayment
# ===================================================================

class TestRepayment:
    def test_three_payouts_repay_twenty_percent_each(self, core, seasoned, underwriting, now):
        platform, worker = seasoned
        loan = _active_loan(core, worker, '100', now)
        assert loan.remaining_balance_usdc == Decimal('105')

        payouts = [complete_and_settle(core, platform, worker, '40', now=now)[1] for _ in range(3)]

        loan = core.ledger.get_loan(loan.id)
        assert loan.remaining_balance_usdc == Decimal('81')
        assert loan.status == LoanStatus.REPAYING
        assert loan.tasks_repaid == 3

        repayments = core.ledger.transactions(worker_id=worker.id, tx_type=TxType.REPAYMENT)
        assert [r.amount_usdc for r in repayments] == [Decimal('8')] * 3
        assert {r.idempotency_key for r in repayments} == {f"{p.id}:repayment" for p in payouts}
        assert all(r.to_wallet == core.treasury_wallet for r in repayments)
        assert all(r.from_wallet == core.ops_wallet for r in repayments)

        worker = core.ledger.get_worker(worker.id)
        # 40 before the advance, then 3 x (40 - 8)
        assert worker.total_earnings_usdc == Decimal('136')
        assert payouts[0].extra['repayment_deducted'] == '8.000000'
        assert core.payouts.balance(worker.id)['outstanding_loan_usdc'] == '81.000000'

    def test_final_deduction_capped_at_balance(self, core, seasoned, underwriting, now):
        platform, worker = seasoned
        loan = _active_loan(core, worker, '10', now)
        assert loan.total_owed_usdc == Decimal('10.5')

        complete_and_settle(core, platform, worker, '40', now=now)
        complete_and_settle(core, platform, worker, '40', now=now)

        loan = core.ledger.get_loan(loan.id)
        assert loan.remaining_balance_usdc == 0
        assert loan.status == LoanStatus.REPAID
        assert loan.repaid_at == now
        amounts = sorted(r.amount_usdc for r in core.ledger.transactions(worker_id=worker.id,
                                                                          tx_type=TxType.REPAYMENT))
        assert amounts == [Decimal('2.5'), Decimal('8')]

    def test_payout_is_broadcast_net_of_loan_share(self, core, seasoned, underwriting, chain, now):
        platform, worker = seasoned
        loan = _active_loan(core, worker, '100', now)
        # Only the custody wallets can sign, as with a live ChainBridge
        chain.signers = {core.ops_wallet, core.treasury_wallet}

        _, payout = complete_and_settle(core, platform, worker, '40', now=now)
        sent = chain.transfers_for(f"{payout.task_id}:payout")
        assert [t['amount'] for t in sent] == [Decimal('32')]
        assert sent[0]['to'] == worker.wallet_address
        assert payout.extra['repayment_withheld'] == '8.000000'

        for cycle in range(3):
            core.transactions.process(now=now + timedelta(minutes=cycle))

        repayment = core.ledger.transactions(worker_id=worker.id, tx_type=TxType.REPAYMENT)[0]
        assert repayment.status == TxStatus.CONFIRMED
        moved = chain.transfers_for(repayment.idempotency_key)
        assert [(t['from'], t['to'], t['amount']) for t in moved] == [
            (core.ops_wallet, core.treasury_wallet, Decimal('8')),
        ]
        assert core.ledger.get_loan(loan.id).remaining_balance_usdc == Decimal('97')
        assert core.ledger.audit_trail(action='transaction.terminal_failure') == []

    def test_retries_reuse_the_withheld_share(self, core, seasoned, underwriting, chain, now):
        platform, worker = seasoned
        _active_loan(core, worker, '100', now)
        task = make_task(core, platform, amount='40', worker=worker)
        tx_id = core.payouts.on_task_completed(task.id, worker.id, platform.id, '40', 'fixed',
                                               now=now)['transaction_id']
        chain.revert_all = True
        settle(core, tx_id, now=now)
        chain.revert_all = False
        settle(core, tx_id, now=now + timedelta(minutes=1))

        assert [t['amount'] for t in chain.transfers_for(f"{task.id}:payout")] == [Decimal('32')] * 2
        repayments = core.ledger.transactions(worker_id=worker.id, tx_type=TxType.REPAYMENT)
        assert [r.amount_usdc for r in repayments] == [Decimal('8')]

    def test_unconfirmed_shares_count_against_balance(self, core, seasoned, underwriting, chain, now):
        platform, worker = seasoned
        loan = _active_loan(core, worker, '10', now)
        assert loan.remaining_balance_usdc == Decimal('10.5')

        shares = []
        for _ in range(2):
            task = make_task(core, platform, amount='40', worker=worker)
            tx_id = core.payouts.on_task_completed(task.id, worker.id, platform.id, '40', 'fixed',
                                                   now=now)['transaction_id']
            core.transactions.submit(tx_id, now=now)
            shares.append(core.ledger.get_transaction(tx_id).extra['repayment_withheld'])
        assert shares == ['8.000000', '2.500000']

    def test_share_withheld_for_a_closed_loan_is_refunded(self, core, seasoned, underwriting, chain, now):
        platform, worker = seasoned
        loan = _active_loan(core, worker, '100', now)
        task = make_task(core, platform, amount='40', worker=worker)
        tx_id = core.payouts.on_task_completed(task.id, worker.id, platform.id, '40', 'fixed',
                                               now=now)['transaction_id']
        core.transactions.submit(tx_id, now=now)

        later = now + timedelta(days=15)
        assert core.loans.sweep_defaults(later) == [loan.id]
        core.transactions.poll_confirmation(tx_id, now=later)

        assert core.ledger.transactions(worker_id=worker.id, tx_type=TxType.REPAYMENT) == []
        refund = core.ledger.transaction_by_key(f"{tx_id}:withheld-refund")
        assert refund.type == TxType.REFUND
        assert refund.amount_usdc == Decimal('8')
        assert refund.to_wallet == worker.wallet_address
        assert core.ledger.get_loan(loan.id).remaining_balance_usdc == Decimal('105')
        assert core.ledger.get_worker(worker.id).total_earnings_usdc == Decimal('80')

    def test_repayment_settlement_is_audited(self, core, seasoned, underwriting, now):
        platform, worker = seasoned
        _active_loan(core, worker, '100', now)
        complete_and_settle(core, platform, worker, '40', now=now)
        repayment = core.ledger.transactions(worker_id=worker.id, tx_type=TxType.REPAYMENT)[0]
        settle(core, repayment.id, now=now)
        assert core.ledger.get_transaction(repayment.id).status == TxStatus.CONFIRMED
        assert core.ledger.audit_trail(action='loan.repayment_settled')[0].resource_id == repayment.id


class TestConcurrentRepayment:
    def test_simultaneous_confirmations_deduct_one_after_another(self, file_app, monkeypatch, now):
        core = file_app.extensions['gigledger']
        monkeypatch.setattr(core.loans, 'risk_score', lambda worker_id, now=None: {"score": 650, "factors": {}})
        monkeypatch.setattr(core.loans, 'predicted_earnings', lambda worker_id, now=None: Decimal('200'))

        platform, _ = make_platform(core)
        worker = make_worker(core, age_days=30)
        complete_and_settle(core, platform, worker, '40', now=now)
        loan = _active_loan(core, worker, '100', now)

        payout_ids = []
        for _ in range(2):
            task = make_task(core, platform, amount='40', worker=worker)
            tx_id = core.payouts.on_task_completed(task.id, worker.id, platform.id, '40', 'fixed',
                                                   now=now)['transaction_id']
            core.transactions.submit(tx_id, now=now)
            payout_ids.append(tx_id)

        # Count how many threads are inside the deduction at once
        guard = threading.Lock()
        inside, peaks = [0], []
        deduct = core.loans.apply_auto_repayment

        def observed_deduct(worker, payout_tx, at):
            with guard:
                inside[0] += 1
                peaks.append(inside[0])
            time.sleep(0.05)
            try:
                return deduct(worker, payout_tx, at)
            finally:
                with guard:
                    inside[0] -= 1

        monkeypatch.setattr(core.loans, 'apply_auto_repayment', observed_deduct)
        barrier = threading.Barrier(len(payout_ids))
        errors = []

        def confirm(tx_id):
            with file_app.app_context():
                try:
                    barrier.wait(timeout=5)
                    core.transactions.poll_confirmation(tx_id, now=now)
                except Exception as e:
                    errors.append(e)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=confirm, args=(tx_id,)) for tx_id in payout_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        assert peaks == [1, 1]

        db.session.expire_all()
        loan = core.ledger.get_loan(loan.id)
        assert loan.remaining_balance_usdc == Decimal('89')
        assert loan.tasks_repaid == 2
        repayments = core.ledger.transactions(worker_id=worker.id, tx_type=TxType.REPAYMENT)
        assert [r.amount_usdc for r in repayments] == [Decimal('8')] * 2
        steps = sorted(
            (Decimal(e.changes_before['remaining_balance_usdc']), Decimal(e.changes_after['remaining_balance_usdc']))
            for e in core.ledger.audit_trail(action='loan.repayment')
        )
        assert steps == [(Decimal('97'), Decimal('89')), (Decimal('105'), Decimal('97'))]


# ===================================================================
# Defaults & projections
# ===================================================================

class TestDefaults:
    def test_sweep_marks_overdue_loan_defaulted(self, core, seasoned, underwriting, now):
        _, worker = seasoned
        loan = _active_loan(core, worker, '100', now)
        score_before = core.ledger.get_worker(worker.id).reputation_score

        assert core.loans.sweep_defaults(now + timedelta(days=13)) == []
        assert core.loans.sweep_defaults(now + timedelta(days=15)) == [loan.id]

        loan = core.ledger.get_loan(loan.id)
        assert loan.status == LoanStatus.DEFAULTED
        assert loan.defaulted_at == now + timedelta(days=15)
        events = [e for e in core.ledger.reputation_events(worker.id)
                  if e.event_type == ReputationEventType.LOAN_DEFAULTED]
        assert len(events) == 1 and events[0].points_delta == -50
        assert core.ledger.get_worker(worker.id).reputation_score == score_before - 50

        assert core.loans.sweep_defaults(now + timedelta(days=16)) == []

    def test_loan_status_projection(self, core, seasoned, underwriting, now):
        _, worker = seasoned
        loan = _active_loan(core, worker, '100', now)
        body = core.loans.loan_status(worker.id)
        assert body['current']['loan_id'] == loan.id
        assert body['current']['status'] == 'active'
        assert body['current']['remaining_balance_usdc'] == '105.000000'
        assert body['history'] == []
        assert to_dict(loan)['fee_percentage'] == '5.00'
