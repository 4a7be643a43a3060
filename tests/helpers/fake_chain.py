"""
In-memory stand-in for ChainBridge.
Provides: deterministic hashes, scripted reverts/outages, settable stream state.
"""
import hashlib
from decimal import Decimal

from core.errors import ExternalUnavailable, TransferReverted, ValidationError


class FakeChain:
    ops_address = '0x' + 'aa' * 20

    def __init__(self, confirmations=1):
        self.confirmations = confirmations
        self.transfers = []
        self.reverted = set()
        self.revert_all = False
        self.unavailable = False
        self.streams = {}
        # None signs for any wallet; a set restricts signing like ChainBridge's key map
        self.signers = None
        self._by_key = {}

    def is_connected(self):
        return not self.unavailable

    def submit_transfer(self, from_wallet, to_wallet, amount_usdc, idempotency_key):
        if self.unavailable:
            raise ExternalUnavailable("RPC down")
        if self.signers is not None and (from_wallet or '').lower() not in self.signers:
            raise ValidationError("No signing key for source wallet", wallet=from_wallet)
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        tx_hash = '0x' + hashlib.sha256(idempotency_key.encode()).hexdigest()
        self._by_key[idempotency_key] = tx_hash
        self.transfers.append({
            'from': from_wallet, 'to': to_wallet,
            'amount': Decimal(str(amount_usdc)), 'key': idempotency_key, 'tx_hash': tx_hash,
        })
        return tx_hash

    def get_confirmations(self, tx_hash):
        if self.unavailable:
            raise ExternalUnavailable("RPC down")
        if self.revert_all or tx_hash in self.reverted:
            raise TransferReverted("execution reverted", tx_hash=tx_hash)
        return self.confirmations

    def get_stream_state(self, contract_address, stream_id):
        return self.streams.get((contract_address.lower(), int(stream_id)), {
            'released': None, 'claimed': None,
        })

    def transfers_for(self, key_prefix):
        return [t for t in self.transfers if t['key'].startswith(key_prefix)]
