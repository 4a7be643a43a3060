"""
Explicit wiring of the ledger core.

One `CoreContext` is built per Flask app (or per test) and handed to every
service; there are no process-wide client singletons.
"""
import logging

from core.ledger import Ledger
from models import utcnow

logger = logging.getLogger('gigledger.core')


class CoreContext:
    def __init__(self, config, chain, ledger=None, notifier=None, clock=None):
        self.config = config
        self.chain = chain
        self.ledger = ledger or Ledger()
        self.notifier = notifier
        self.clock = clock or utcnow

        from services.transaction_service import TransactionService
        from services.stream_scheduler import StreamScheduler
        from services.reputation_service import ReputationService
        from services.loan_service import LoanService
        from services.payout_service import PayoutService

        self.transactions = TransactionService(self)
        self.streams = StreamScheduler(self)
        self.reputation = ReputationService(self)
        self.loans = LoanService(self)
        self.payouts = PayoutService(self)

    def now(self, now=None):
        return now or self.clock()

    @property
    def ops_wallet(self) -> str:
        """Custody wallet that funds payouts and stream releases."""
        address = self.config.OPERATIONS_WALLET_ADDRESS or getattr(self.chain, 'ops_address', '')
        return (address or '').lower()

    @property
    def treasury_wallet(self) -> str:
        """Source of advances and destination of loan repayments."""
        return (self.config.TREASURY_WALLET_ADDRESS or self.ops_wallet).lower()


def build_core(config, chain=None, notifier=None, clock=None) -> CoreContext:
    if chain is None:
        from services.chain_bridge import build_chain_bridge
        chain = build_chain_bridge(config)
    return CoreContext(config, chain, notifier=notifier, clock=clock)
