from unittest.mock import MagicMock

import pytest
from eth_account import Account

from config import Config
from models import db
from server import create_app
from tests.helpers.factories import OPERATOR_PRIVATE_KEY
from tests.helpers.fake_chain import FakeChain


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'  # in-memory
    DEV_MODE = True
    RUN_BACKGROUND_WORKERS = False
    ASYNC_SUBMIT = False
    OPERATOR_ADDRESS = Account.from_key(OPERATOR_PRIVATE_KEY).address
    OPERATIONS_WALLET_ADDRESS = FakeChain.ops_address
    TREASURY_WALLET_ADDRESS = '0x' + 'ee' * 20
    STREAMING_CONTRACT_ADDRESS = '0x' + '5c' * 20


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def app(chain, notifier):
    """App with a fresh in-memory DB, the fake chain and a mock notifier."""
    app = create_app(TestConfig, chain=chain, notifier=notifier, start_workers=False)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()
    app.extensions['gigledger.dispatcher'].shutdown(wait=True)


@pytest.fixture
def file_app(tmp_path, chain, notifier):
    """Like `app`, but on a SQLite file so every thread gets its own connection."""
    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'ledger.db'}"

    app = create_app(FileConfig, chain=chain, notifier=notifier, start_workers=False)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
    app.extensions['gigledger.dispatcher'].shutdown(wait=True)


@pytest.fixture
def core(app):
    return app.extensions['gigledger']


@pytest.fixture
def client(app):
    return app.test_client()
