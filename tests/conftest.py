"""
Shared fixtures: an in-memory database, a hand-driven scheduler with a fake
clock, and a chain reader that replays scripted answers.
"""

import heapq
import itertools

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from txstatus.chain_reader import ChainReader, NotFound, TransactionEnvelope
from txstatus.config import Settings
from txstatus.database import Base, make_engine
from txstatus.models import User
from txstatus.polling import TaskScheduler
from txstatus.service import TransactionStatusService
from txstatus.store import TransactionStore, UserDirectory

TX_HASH = "0x" + "ab" * 32
ALICE_WALLET = "0xAAA0000000000000000000000000000000000001"
BOB_WALLET = "0xBBB0000000000000000000000000000000000002"
STRANGER_WALLET = "0xCCC0000000000000000000000000000000000003"
TOKEN_CONTRACT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ManualScheduler(TaskScheduler):
    """Timer queue driven by hand against a ``FakeClock``; nothing runs until asked."""

    def __init__(self, clock):
        self._clock = clock
        self._queue = []
        self._seq = itertools.count()

    def __len__(self):
        return len(self._queue)

    def schedule(self, delay, fn, *args):
        heapq.heappush(self._queue, (self._clock() + max(0.0, delay), next(self._seq), fn, args))

    def next_due(self):
        return self._queue[0][0] if self._queue else None

    def run_pending(self):
        """Run every task due now, including ones that became due while running."""
        ran = 0
        while self._queue and self._queue[0][0] <= self._clock():
            self.run_next()
            ran += 1
        return ran

    def run_next(self):
        if not self._queue:
            return False
        _, _, fn, args = heapq.heappop(self._queue)
        fn(*args)
        return True

    def drain(self, limit=10_000):
        ran = 0
        while ran < limit and self.run_next():
            ran += 1
        return ran


class ScriptedReader(ChainReader):
    """Replays ``answers`` in order, then keeps repeating the last one.

    ``None`` stands for not-found; exception instances are raised.
    """

    def __init__(self, *answers):
        self.answers = list(answers)
        self.calls = []

    def script(self, *answers):
        self.answers = list(answers)

    def get_transaction_details(self, network, tx_hash):
        self.calls.append((network, tx_hash))
        if not self.answers:
            answer = None
        elif len(self.answers) == 1:
            answer = self.answers[0]
        else:
            answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        if answer is None:
            return NotFound(tx_hash)
        return answer

    def get_supported_networks(self):
        return ["ethereum", "sepolia", "bsc"]


def make_envelope(**overrides):
    fields = dict(
        hash=TX_HASH,
        from_address=ALICE_WALLET,
        to_address=BOB_WALLET,
        value="1000000000000000000",
        gas="21000",
        gas_price="30000000000",
        nonce=7,
        block_number=None,
        confirmations=0,
        timestamp=None,
        status="pending",
    )
    fields.update(overrides)
    return TransactionEnvelope(**fields)


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def store(session_factory):
    return TransactionStore(session_factory)


@pytest.fixture
def users(session_factory):
    return UserDirectory(session_factory)


@pytest.fixture
def add_user(session_factory):
    def _add(user_id, wallet=None, username=None):
        with session_factory() as db:
            db.add(User(id=user_id, username=username or user_id, primary_wallet_address=wallet))
            db.commit()
        return user_id

    return _add


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def reader():
    return ScriptedReader()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def service(store, users, reader, scheduler, settings, sleeps):
    return TransactionStatusService(
        store=store,
        users=users,
        reader=reader,
        scheduler=scheduler,
        settings=settings,
        sleep=sleeps.append,
    )


@pytest.fixture
def tick(clock, scheduler, settings):
    """Advance one poll interval and run whatever became due."""

    def _tick(times=1):
        ran = 0
        for _ in range(times):
            clock.advance(settings.poll_interval)
            ran += scheduler.run_pending()
        return ran

    return _tick
