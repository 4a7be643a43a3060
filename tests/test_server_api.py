"""
HTTP surface: auth, onboarding, task completion, projections, streams and
operator endpoints.
"""
import json
from datetime import timedelta

import pytest

from models import TxStatus, utcnow
from tests.helpers.factories import next_wallet, operator_headers


def _auth(api_key):
    return {'Authorization': f'Bearer {api_key}'}


def _post(client, path, body=None, headers=None):
    return client.post(path, data=json.dumps(body or {}), content_type='application/json',
                       headers=headers or {})


def _register_platform(client, name='Acme Gigs'):
    path = '/platforms'
    resp = _post(client, path, {'name': name, 'webhook_url': 'https://hooks.example.com/acme'},
                 headers=operator_headers(path))
    assert resp.status_code == 201
    return resp.get_json()


def _register_worker(client, api_key, name='Dana'):
    resp = _post(client, '/workers', {'display_name': name, 'wallet_address': next_wallet()},
                 headers=_auth(api_key))
    assert resp.status_code == 201
    return resp.get_json()['worker_id']


def _create_task(client, api_key, worker_id, amount='40', **extra):
    body = {'title': 'Deliver order', 'payment_amount_usdc': amount, 'worker_id': worker_id, **extra}
    resp = _post(client, '/tasks', body, headers=_auth(api_key))
    assert resp.status_code == 201
    return resp.get_json()['task_id']


def _complete(client, api_key, task_id, worker_id, amount='40', **extra):
    body = {'worker_id': worker_id, 'amount_usdc': amount, 'task_type': 'fixed', **extra}
    return _post(client, f'/tasks/{task_id}/complete', body, headers=_auth(api_key))


@pytest.fixture
def onboarded(client):
    platform = _register_platform(client)
    worker_id = _register_worker(client, platform['api_key'])
    return platform, worker_id


# ===================================================================
# Health & auth
# ===================================================================

class TestHealth:
    def test_health(self, client):
        resp = client.get('/health')
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['status'] == 'healthy'
        assert data['chain_connected'] is True

    def test_request_id_echoed(self, client):
        resp = client.get('/health', headers={'X-Request-ID': 'req-123'})
        assert resp.headers['X-Request-ID'] == 'req-123'


class TestAuth:
    def test_platform_key_required(self, client):
        assert _post(client, '/workers', {'display_name': 'x'}).status_code == 401
        resp = _post(client, '/workers', {'display_name': 'x'}, headers=_auth('bogus'))
        assert resp.status_code == 401
        assert resp.get_json()['error'] == 'unauthorized'

    def test_operator_signature_required(self, client):
        assert _post(client, '/platforms', {'name': 'Acme'}).status_code == 401

    def test_operator_signature_bound_to_path(self, client):
        resp = _post(client, '/platforms', {'name': 'Acme'}, headers=operator_headers('/elsewhere'))
        assert resp.status_code == 403
        assert resp.get_json()['error'] == 'forbidden'

    def test_operator_signature_is_single_use(self, client, onboarded, core):
        _, worker_id = onboarded
        path = f'/admin/workers/{worker_id}/reputation/adjust'
        headers = operator_headers(path)
        body = {'points_delta': 25, 'reason': 'Verified offline delivery'}

        assert _post(client, path, body, headers=headers).status_code == 201
        replay = _post(client, path, body, headers=headers)
        assert replay.status_code == 403
        assert replay.get_json()['message'] == 'Signature already used'
        assert core.ledger.get_worker(worker_id).reputation_score == 125

    def test_operator_nonce_is_signed(self, client):
        headers = operator_headers('/platforms')
        headers['X-Operator-Nonce'] = 'another-nonce-value'
        resp = _post(client, '/platforms', {'name': 'Acme'}, headers=headers)
        assert resp.status_code == 403

    def test_operator_nonce_required(self, client):
        headers = operator_headers('/platforms')
        del headers['X-Operator-Nonce']
        assert _post(client, '/platforms', {'name': 'Acme'}, headers=headers).status_code == 401

    def test_register_platform_returns_key_once(self, client):
        data = _register_platform(client)
        assert data['api_key']
        assert data['webhook_secret']
        assert data['platform_id']


# ===================================================================
# Onboarding
# ===================================================================

class TestOnboarding:
    def test_register_worker_validates_wallet(self, client, onboarded):
        platform, _ = onboarded
        resp = _post(client, '/workers', {'display_name': 'Bad', 'wallet_address': '0x123'},
                     headers=_auth(platform['api_key']))
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'validation_error'

    def test_duplicate_wallet_conflicts(self, client, onboarded):
        platform, _ = onboarded
        wallet = next_wallet()
        _post(client, '/workers', {'display_name': 'A', 'wallet_address': wallet}, headers=_auth(platform['api_key']))
        resp = _post(client, '/workers', {'display_name': 'B', 'wallet_address': wallet},
                     headers=_auth(platform['api_key']))
        assert resp.status_code == 409
        assert resp.get_json()['error'] == 'conflict'

    def test_create_task(self, client, onboarded):
        platform, worker_id = onboarded
        resp = _post(client, '/tasks', {'title': 'Walk dog', 'payment_amount_usdc': '12.5',
                                        'worker_id': worker_id, 'due_date': '2026-06-01T12:00:00Z'},
                     headers=_auth(platform['api_key']))
        assert resp.status_code == 201
        data = resp.get_json()
        assert data['status'] == 'assigned'
        assert data['payment_amount_usdc'] == '12.500000'
        assert data['due_date'] == '2026-06-01T12:00:00'


# ===================================================================
# Task completion & transactions
# ===================================================================

class TestTaskCompletion:
    def test_complete_accepts_then_dedupes(self, client, core, onboarded):
        platform, worker_id = onboarded
        task_id = _create_task(client, platform['api_key'], worker_id)

        first = _complete(client, platform['api_key'], task_id, worker_id, ratings={'stars': 4})
        assert first.status_code == 202
        body = first.get_json()
        assert body['duplicate'] is False

        again = _complete(client, platform['api_key'], task_id, worker_id, ratings={'stars': 4})
        assert again.status_code == 200
        assert again.get_json()['transaction_id'] == body['transaction_id']

        tx = client.get(f"/transactions/{body['transaction_id']}", headers=_auth(platform['api_key']))
        assert tx.status_code == 200
        assert tx.get_json()['status'] == 'pending'

    def test_background_cycle_settles_payout(self, client, core, onboarded, notifier):
        platform, worker_id = onboarded
        task_id = _create_task(client, platform['api_key'], worker_id)
        tx_id = _complete(client, platform['api_key'], task_id, worker_id).get_json()['transaction_id']

        # Broadcast then poll in the same cycle; the fake chain confirms immediately
        assert core.transactions.process() == {"submitted": 1, "settled": 1}
        assert core.transactions.process() == {"submitted": 0, "settled": 0}
        assert core.ledger.get_transaction(tx_id).status == TxStatus.CONFIRMED
        notifier.transaction_confirmed.assert_called_once()

        balance = client.get(f'/workers/{worker_id}/balance', headers=_auth(platform['api_key']))
        assert balance.get_json()['total_earnings_usdc'] == '40.000000'

    def test_complete_missing_fields(self, client, onboarded):
        platform, worker_id = onboarded
        task_id = _create_task(client, platform['api_key'], worker_id)
        resp = _post(client, f'/tasks/{task_id}/complete', {'worker_id': worker_id},
                     headers=_auth(platform['api_key']))
        assert resp.status_code == 400

    def test_complete_over_amount(self, client, onboarded):
        platform, worker_id = onboarded
        task_id = _create_task(client, platform['api_key'], worker_id)
        resp = _complete(client, platform['api_key'], task_id, worker_id, amount='41')
        assert resp.status_code == 400
        assert resp.get_json()['details']['outstanding'] == '40.000000'

    def test_other_platform_cannot_read_transaction(self, client, onboarded):
        platform, worker_id = onboarded
        other = _register_platform(client, name='Other')
        task_id = _create_task(client, platform['api_key'], worker_id)
        tx_id = _complete(client, platform['api_key'], task_id, worker_id).get_json()['transaction_id']
        resp = client.get(f'/transactions/{tx_id}', headers=_auth(other['api_key']))
        assert resp.status_code == 404


# ===================================================================
# Worker projections
# ===================================================================

class TestProjections:
    def test_unknown_worker(self, client, onboarded):
        platform, _ = onboarded
        resp = client.get('/workers/nope/balance', headers=_auth(platform['api_key']))
        assert resp.status_code == 404
        assert resp.get_json()['error'] == 'not_found'

    def test_reputation(self, client, onboarded):
        platform, worker_id = onboarded
        resp = client.get(f'/workers/{worker_id}/reputation', headers=_auth(platform['api_key']))
        assert resp.status_code == 200
        assert resp.get_json()['score'] == 100

    def test_eligibility_requires_amount(self, client, onboarded):
        platform, worker_id = onboarded
        resp = client.get(f'/workers/{worker_id}/eligibility', headers=_auth(platform['api_key']))
        assert resp.status_code == 400

    def test_eligibility_and_rejected_advance(self, client, onboarded):
        platform, worker_id = onboarded
        resp = client.get(f'/workers/{worker_id}/eligibility?amount_usdc=50',
                          headers=_auth(platform['api_key']))
        assert resp.status_code == 200
        assert resp.get_json()['eligible'] is False

        advance = _post(client, f'/workers/{worker_id}/advance', {'amount_usdc': '50'},
                        headers=_auth(platform['api_key']))
        assert advance.status_code == 409
        assert 'account_age' in advance.get_json()['details']['reasons']

    def test_loan_projection_empty(self, client, onboarded):
        platform, worker_id = onboarded
        resp = client.get(f'/workers/{worker_id}/loan', headers=_auth(platform['api_key']))
        assert resp.get_json() == {"worker_id": worker_id, "current": None, "history": []}


# ===================================================================
# Streams
# ===================================================================

class TestStreams:
    def _create(self, client, platform, worker_id):
        start = utcnow()
        body = {
            'worker_id': worker_id,
            'total_amount_usdc': '120',
            'start_time': start.isoformat(),
            'end_time': (start + timedelta(hours=4)).isoformat(),
            'release_interval': 3600,
            'contract_stream_id': 42,
        }
        return _post(client, '/streams', body, headers=_auth(platform['api_key']))

    def test_create_and_pause(self, client, onboarded):
        platform, worker_id = onboarded
        resp = self._create(client, platform, worker_id)
        assert resp.status_code == 201
        stream_id = resp.get_json()['stream_id']

        paused = _post(client, f'/streams/{stream_id}/pause', headers=_auth(platform['api_key']))
        assert paused.status_code == 200
        assert paused.get_json()['status'] == 'paused'

        again = _post(client, f'/streams/{stream_id}/pause', headers=_auth(platform['api_key']))
        assert again.status_code == 409

    def test_unknown_action(self, client, onboarded):
        platform, worker_id = onboarded
        stream_id = self._create(client, platform, worker_id).get_json()['stream_id']
        resp = _post(client, f'/streams/{stream_id}/explode', headers=_auth(platform['api_key']))
        assert resp.status_code == 404

    def test_other_platform_cannot_touch_stream(self, client, onboarded):
        platform, worker_id = onboarded
        other = _register_platform(client, name='Other')
        stream_id = self._create(client, platform, worker_id).get_json()['stream_id']
        resp = _post(client, f'/streams/{stream_id}/cancel', headers=_auth(other['api_key']))
        assert resp.status_code == 404

    def test_invalid_window(self, client, onboarded):
        platform, worker_id = onboarded
        body = {'worker_id': worker_id, 'total_amount_usdc': '10', 'start_time': 'yesterday',
                'end_time': '2026-01-01T00:00:00', 'release_interval': 60, 'contract_stream_id': 1}
        resp = _post(client, '/streams', body, headers=_auth(platform['api_key']))
        assert resp.status_code == 400

    def test_operator_reconcile_unavailable(self, client, onboarded):
        platform, worker_id = onboarded
        stream_id = self._create(client, platform, worker_id).get_json()['stream_id']
        path = f'/admin/streams/{stream_id}/reconcile'
        resp = _post(client, path, headers=operator_headers(path))
        assert resp.status_code == 200
        assert resp.get_json()['status'] == 'unavailable'


# ===================================================================
# Operator endpoints
# ===================================================================

class TestOperator:
    def test_retry_payout_after_terminal_failure(self, client, core, chain, onboarded):
        platform, worker_id = onboarded
        task_id = _create_task(client, platform['api_key'], worker_id)
        tx_id = _complete(client, platform['api_key'], task_id, worker_id).get_json()['transaction_id']

        chain.revert_all = True
        now = utcnow()
        for attempt in range(3):
            core.transactions.submit(tx_id, now=now + timedelta(minutes=attempt))
            core.transactions.poll_confirmation(tx_id, now=now + timedelta(minutes=attempt))
        assert core.ledger.get_transaction(tx_id).status == TxStatus.FAILED

        path = f'/admin/tasks/{task_id}/retry-payout'
        resp = _post(client, path, headers=operator_headers(path))
        assert resp.status_code == 201
        data = resp.get_json()
        assert data['status'] == 'pending'
        assert data['transaction_id'] != tx_id

        again = _post(client, path, headers=operator_headers(path))
        assert again.status_code == 409

    def test_retry_release_after_terminal_failure(self, client, core, chain, onboarded):
        platform, worker_id = onboarded
        now = utcnow()
        stream = core.streams.create_stream(worker_id, platform['platform_id'], '60',
                                            now - timedelta(hours=2), now - timedelta(hours=1), 600,
                                            contract_stream_id=3)
        path = f'/admin/streams/{stream.id}/retry-release'
        assert _post(client, path, headers=operator_headers(path)).status_code == 409

        chain.revert_all = True
        release = core.streams.tick(now=now)[0]
        for attempt in range(3):
            core.transactions.submit(release.id, now=now + timedelta(minutes=attempt))
            core.transactions.poll_confirmation(release.id, now=now + timedelta(minutes=attempt))
        chain.revert_all = False

        resp = _post(client, path, headers=operator_headers(path))
        assert resp.status_code == 201
        data = resp.get_json()
        assert data['status'] == 'pending'
        assert data['stream_id'] == stream.id
        assert data['transaction_id'] != release.id

        missing = '/admin/streams/nope/retry-release'
        assert _post(client, missing, headers=operator_headers(missing)).status_code == 404

    def test_cancel_pending_transaction(self, client, onboarded):
        platform, worker_id = onboarded
        task_id = _create_task(client, platform['api_key'], worker_id)
        tx_id = _complete(client, platform['api_key'], task_id, worker_id).get_json()['transaction_id']
        path = f'/admin/transactions/{tx_id}/cancel'
        resp = _post(client, path, headers=operator_headers(path))
        assert resp.status_code == 200
        assert resp.get_json()['status'] == 'cancelled'

    def test_reputation_adjust_requires_reason(self, client, onboarded):
        _, worker_id = onboarded
        path = f'/admin/workers/{worker_id}/reputation/adjust'
        resp = _post(client, path, {'points_delta': 25}, headers=operator_headers(path))
        assert resp.status_code == 400

    def test_reputation_adjust_and_rebuild(self, client, onboarded):
        _, worker_id = onboarded
        path = f'/admin/workers/{worker_id}/reputation/adjust'
        resp = _post(client, path, {'points_delta': 25, 'reason': 'dispute overturned'},
                     headers=operator_headers(path))
        assert resp.status_code == 201
        assert resp.get_json()['new_score'] == 125

        path = f'/admin/workers/{worker_id}/reputation/rebuild'
        rebuilt = _post(client, path, headers=operator_headers(path))
        assert rebuilt.get_json() == {"worker_id": worker_id, "reputation_score": 125}


# ===================================================================
# CLI
# ===================================================================

class TestCli:
    def test_tick_and_poll_commands(self, app):
        runner = app.test_cli_runner()
        result = runner.invoke(args=['tick-streams'])
        assert result.exit_code == 0
        assert 'Created 0 release intent(s)' in result.output

        result = runner.invoke(args=['poll-transactions'])
        assert 'Submitted 0, settled 0' in result.output

    def test_retry_payout_unknown_task(self, app):
        result = app.test_cli_runner().invoke(args=['retry-payout', 'missing'])
        assert result.exit_code != 0
        assert 'Task not found' in result.output

    def test_retry_release_unknown_stream(self, app):
        result = app.test_cli_runner().invoke(args=['retry-release', 'missing'])
        assert result.exit_code != 0
        assert 'Stream not found' in result.output
