import os
from decimal import Decimal


def _env_bool(name, default='false'):
    return os.environ.get(name, default).lower() in ('true', '1', 'yes')


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///gigledger_dev.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get('FLASK_SECRET_KEY', 'dev-secret-key-change-me')

    # Dev mode: off-chain adapter, SQLite allowed
    # Defaults to False; must be explicitly enabled via DEV_MODE=true
    DEV_MODE = _env_bool('DEV_MODE')

    # Background loops (stream ticks, confirmation polling, default sweep)
    RUN_BACKGROUND_WORKERS = _env_bool('RUN_BACKGROUND_WORKERS', 'true')
    WORKER_POOL_SIZE = int(os.environ.get('WORKER_POOL_SIZE', '4'))
    # Broadcast new intents from the pool right after the request commits
    ASYNC_SUBMIT = _env_bool('ASYNC_SUBMIT', 'true')

    # Chain
    RPC_URL = os.environ.get('RPC_URL', '')
    USDC_CONTRACT = os.environ.get('USDC_CONTRACT', '')
    STREAMING_CONTRACT_ADDRESS = os.environ.get('STREAMING_CONTRACT_ADDRESS', '')
    OPERATIONS_WALLET_ADDRESS = os.environ.get('OPERATIONS_WALLET_ADDRESS', '')
    OPERATIONS_WALLET_KEY = os.environ.get('OPERATIONS_WALLET_KEY', '')
    # Destination of loan repayments and source of advances
    TREASURY_WALLET_ADDRESS = os.environ.get('TREASURY_WALLET_ADDRESS', '')
    # JSON object {address: private_key} for custodial worker wallets
    CUSTODIAL_WALLET_KEYS = os.environ.get('CUSTODIAL_WALLET_KEYS', '')
    TX_GAS_LIMIT = int(os.environ.get('TX_GAS_LIMIT', '100000'))

    # Transaction state machine
    CONFIRMATION_THRESHOLD = int(os.environ.get('CONFIRMATION_THRESHOLD', '1'))
    TX_MAX_RETRIES = int(os.environ.get('TX_MAX_RETRIES', '3'))
    TX_BACKOFF_BASE_SECONDS = int(os.environ.get('TX_BACKOFF_BASE_SECONDS', '2'))
    TX_BACKOFF_CAP_SECONDS = int(os.environ.get('TX_BACKOFF_CAP_SECONDS', '60'))
    TX_SUBMITTED_TIMEOUT_SECONDS = int(os.environ.get('TX_SUBMITTED_TIMEOUT_SECONDS', '300'))
    TX_POLL_SECONDS = int(os.environ.get('TX_POLL_SECONDS', '15'))

    # Stream release scheduler
    STREAM_TICK_SECONDS = int(os.environ.get('STREAM_TICK_SECONDS', '60'))
    # Ledger vs. PaymentStreaming contract comparison
    RECONCILE_SECONDS = int(os.environ.get('RECONCILE_SECONDS', '900'))

    # Reputation
    REPUTATION_QUALITY_STARS = int(os.environ.get('REPUTATION_QUALITY_STARS', '4'))
    LOAN_DEFAULT_PENALTY = int(os.environ.get('LOAN_DEFAULT_PENALTY', '-50'))

    # Loan underwriting
    LOAN_MIN_RISK_SCORE = int(os.environ.get('LOAN_MIN_RISK_SCORE', '600'))
    LOAN_EARNINGS_MULTIPLE = Decimal(os.environ.get('LOAN_EARNINGS_MULTIPLE', '1.5'))
    LOAN_MIN_ACCOUNT_AGE_DAYS = int(os.environ.get('LOAN_MIN_ACCOUNT_AGE_DAYS', '7'))
    LOAN_MIN_COMPLETION_RATE = Decimal(os.environ.get('LOAN_MIN_COMPLETION_RATE', '0.80'))
    LOAN_TERM_DAYS = int(os.environ.get('LOAN_TERM_DAYS', '14'))
    LOAN_MAX_AMOUNT_USDC = Decimal(os.environ.get('LOAN_MAX_AMOUNT_USDC', '500'))
    PREDICTION_WEIGHT_7D = Decimal(os.environ.get('PREDICTION_WEIGHT_7D', '0.6'))
    PREDICTION_WEIGHT_30D = Decimal(os.environ.get('PREDICTION_WEIGHT_30D', '0.4'))
    # Auto-repayment share of each confirmed payout (percent)
    AUTO_REPAY_PERCENTAGE = Decimal(os.environ.get('AUTO_REPAY_PERCENTAGE', '20'))
    DEFAULT_SWEEP_SECONDS = int(os.environ.get('DEFAULT_SWEEP_SECONDS', '3600'))

    # Platform webhooks
    WEBHOOK_MAX_RETRIES = int(os.environ.get('WEBHOOK_MAX_RETRIES', '3'))
    WEBHOOK_BACKOFF_BASE = int(os.environ.get('WEBHOOK_BACKOFF_BASE', '1'))
    WEBHOOK_TIMEOUT_SECONDS = int(os.environ.get('WEBHOOK_TIMEOUT_SECONDS', '10'))

    # Operator: Ethereum address authorized for privileged operations
    OPERATOR_ADDRESS = os.environ.get('OPERATOR_ADDRESS', '')
    OPERATOR_SIGNATURE_MAX_AGE = int(os.environ.get('OPERATOR_SIGNATURE_MAX_AGE', '300'))  # seconds

    @classmethod
    def validate_production(cls):
        """Startup check: reject SQLite and default secrets in non-DEV_MODE."""
        if not cls.DEV_MODE and 'sqlite' in cls.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError(
                "FATAL: SQLite is not supported in production mode. "
                "Set DATABASE_URL to a PostgreSQL connection string, "
                "or set DEV_MODE=true for development."
            )
        if not cls.DEV_MODE and cls.SECRET_KEY == 'dev-secret-key-change-me':
            raise RuntimeError(
                "FATAL: SECRET_KEY must be changed from default in production. "
                "Set FLASK_SECRET_KEY environment variable."
            )
        if not cls.DEV_MODE and not cls.OPERATOR_ADDRESS:
            raise RuntimeError(
                "FATAL: OPERATOR_ADDRESS must be set in production. "
                "Set the OPERATOR_ADDRESS environment variable to the "
                "Ethereum address authorized for operator operations."
            )
        if not cls.DEV_MODE and not (cls.RPC_URL and cls.OPERATIONS_WALLET_KEY):
            raise RuntimeError(
                "FATAL: RPC_URL and OPERATIONS_WALLET_KEY must be set in production."
            )
