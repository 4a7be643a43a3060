"""
ChainBridge: web3.py adapter for USDC transfers and PaymentStreaming reads.

The chain is treated as an unreliable, at-least-once external system:
transfers are signed and broadcast without waiting for a receipt, and
confirmation is observed later through `get_confirmations`.
Gracefully degrades to `OffChainBridge` in dev mode when RPC is missing.
"""
import hashlib
import json
import logging
import threading
from decimal import Decimal

from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception
from eth_account import Account
from requests.exceptions import RequestException

from core.errors import ExternalUnavailable, TransferReverted, ValidationError

logger = logging.getLogger('gigledger.chain')

USDC_DECIMALS = 6

# Standard USDC ERC-20 ABI (transfer + decimals only)
USDC_ABI = [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"}
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function"
    }
]

# PaymentStreaming.getStream (read-only)
STREAMING_ABI = [
    {
        "inputs": [{"name": "streamId", "type": "uint256"}],
        "name": "getStream",
        "outputs": [{
            "components": [
                {"name": "id", "type": "uint256"},
                {"name": "worker", "type": "address"},
                {"name": "platform", "type": "address"},
                {"name": "totalAmount", "type": "uint256"},
                {"name": "releasedAmount", "type": "uint256"},
                {"name": "claimedAmount", "type": "uint256"},
                {"name": "startTime", "type": "uint256"},
                {"name": "duration", "type": "uint256"},
                {"name": "releaseInterval", "type": "uint256"},
                {"name": "lastReleaseTime", "type": "uint256"},
                {"name": "status", "type": "uint8"},
            ],
            "name": "",
            "type": "tuple",
        }],
        "stateMutability": "view",
        "type": "function"
    }
]

_TRANSIENT = (Web3Exception, RequestException, ConnectionError, TimeoutError, OSError)


def to_raw_units(amount: Decimal, decimals: int = USDC_DECIMALS) -> int:
    return int(Decimal(str(amount)) * Decimal(10 ** decimals))


def from_raw_units(raw: int, decimals: int = USDC_DECIMALS) -> Decimal:
    return (Decimal(raw) / Decimal(10 ** decimals)).quantize(Decimal(1).scaleb(-decimals))


class ChainBridge:
    def __init__(self, rpc_url, usdc_address, ops_key, custodial_keys=None,
                 gas_limit=100_000, w3=None):
        self.rpc_url = rpc_url
        self.usdc_address = usdc_address
        self.gas_limit = gas_limit
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))
        self.usdc_contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(usdc_address),
            abi=USDC_ABI,
        )
        self.usdc_decimals = USDC_DECIMALS
        # Signing keys indexed by lowercase address
        self._keys = {}
        if ops_key:
            self.ops_address = Account.from_key(ops_key).address.lower()
            self._keys[self.ops_address] = ops_key
        else:
            self.ops_address = ''
        for address, key in (custodial_keys or {}).items():
            self._keys[address.lower()] = key
        # Nonce lock for concurrent transactions
        self._tx_lock = threading.Lock()
        # idempotency_key -> tx_hash for transfers this process already broadcast
        self._broadcast = {}

    def __repr__(self):
        return f"ChainBridge(rpc_url={self.rpc_url!r}, ops={self.ops_address!r})"

    def is_connected(self) -> bool:
        try:
            return bool(self.w3.is_connected())
        except _TRANSIENT:
            return False

    def submit_transfer(self, from_wallet: str, to_wallet: str, amount_usdc: Decimal,
                        idempotency_key: str) -> str:
        """Sign and broadcast a USDC transfer. Returns tx_hash, never waits for a receipt."""
        cached = self._broadcast.get(idempotency_key)
        if cached:
            return cached

        key = self._keys.get((from_wallet or '').lower())
        if not key:
            raise ValidationError("No signing key for source wallet", from_wallet=from_wallet)
        raw_amount = to_raw_units(amount_usdc, self.usdc_decimals)
        if raw_amount <= 0:
            raise ValidationError("Transfer amount must be positive", amount=str(amount_usdc))

        sender = Web3.to_checksum_address(from_wallet)
        try:
            with self._tx_lock:
                tx = self.usdc_contract.functions.transfer(
                    Web3.to_checksum_address(to_wallet), raw_amount
                ).build_transaction({
                    'from': sender,
                    'nonce': self.w3.eth.get_transaction_count(sender, 'pending'),
                    'gas': self.gas_limit,
                    'gasPrice': self.w3.eth.gas_price,
                })
                signed = self.w3.eth.account.sign_transaction(tx, key)
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except _TRANSIENT as e:
            logger.warning("Transfer %s broadcast failed: %s", idempotency_key, e)
            raise ExternalUnavailable("Chain unavailable", reason=str(e)) from e

        tx_hash_hex = tx_hash.hex() if hasattr(tx_hash, 'hex') else str(tx_hash)
        if not tx_hash_hex.startswith('0x'):
            tx_hash_hex = '0x' + tx_hash_hex
        self._broadcast[idempotency_key] = tx_hash_hex
        logger.info("Broadcast transfer %s: %s USDC %s -> %s (%s)",
                    idempotency_key, amount_usdc, from_wallet, to_wallet, tx_hash_hex)
        return tx_hash_hex

    def get_confirmations(self, tx_hash: str) -> int:
        """Confirmation count; 0 while unmined. Raises TransferReverted on status 0."""
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return 0
        except _TRANSIENT as e:
            raise ExternalUnavailable("Chain unavailable", reason=str(e)) from e
        if receipt is None:
            return 0
        if receipt['status'] != 1:
            raise TransferReverted("Transfer reverted on-chain", tx_hash=tx_hash)
        try:
            current_block = self.w3.eth.block_number
        except _TRANSIENT as e:
            raise ExternalUnavailable("Chain unavailable", reason=str(e)) from e
        return max(0, current_block - receipt['blockNumber'] + 1)

    def get_stream_state(self, contract_address: str, stream_id: int) -> dict:
        """On-chain released/claimed amounts for a PaymentStreaming stream."""
        contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=STREAMING_ABI,
        )
        try:
            result = contract.functions.getStream(int(stream_id)).call()
        except _TRANSIENT as e:
            raise ExternalUnavailable("Chain unavailable", reason=str(e)) from e
        return {
            'released': from_raw_units(result[4], self.usdc_decimals),
            'claimed': from_raw_units(result[5], self.usdc_decimals),
        }


class OffChainBridge:
    """Dev-mode adapter: deterministic hashes, instantly final, no RPC."""

    def __init__(self, confirmations=12):
        self.confirmations = confirmations
        self.transfers = {}
        self.streams = {}
        self._lock = threading.Lock()

    def __repr__(self):
        return f"OffChainBridge(transfers={len(self.transfers)})"

    def is_connected(self) -> bool:
        return True

    def submit_transfer(self, from_wallet, to_wallet, amount_usdc, idempotency_key) -> str:
        tx_hash = '0x' + hashlib.sha256(idempotency_key.encode()).hexdigest()
        with self._lock:
            self.transfers.setdefault(tx_hash, {
                'from': from_wallet, 'to': to_wallet,
                'amount': Decimal(str(amount_usdc)), 'key': idempotency_key,
            })
        return tx_hash

    def get_confirmations(self, tx_hash) -> int:
        return self.confirmations if tx_hash in self.transfers else 0

    def get_stream_state(self, contract_address, stream_id) -> dict:
        return self.streams.get((contract_address.lower(), int(stream_id)), {
            'released': None, 'claimed': None,
        })


def build_chain_bridge(config):
    """Adapter for the given config; off-chain only when explicitly in dev mode."""
    if config.RPC_URL and config.USDC_CONTRACT and config.OPERATIONS_WALLET_KEY:
        custodial = json.loads(config.CUSTODIAL_WALLET_KEYS) if config.CUSTODIAL_WALLET_KEYS else {}
        bridge = ChainBridge(
            rpc_url=config.RPC_URL,
            usdc_address=config.USDC_CONTRACT,
            ops_key=config.OPERATIONS_WALLET_KEY,
            custodial_keys=custodial,
            gas_limit=config.TX_GAS_LIMIT,
        )
        logger.info("Connected to %s, ops=%s", config.RPC_URL, bridge.ops_address)
        return bridge
    if config.DEV_MODE:
        logger.warning("Chain not configured. Running with OffChainBridge (dev mode).")
        return OffChainBridge()
    raise RuntimeError("Chain not configured: set RPC_URL, USDC_CONTRACT and OPERATIONS_WALLET_KEY")
