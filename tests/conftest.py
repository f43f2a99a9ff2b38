"""Shared fixtures: a throwaway SQLite database, a scripted executor and a fake clock."""
import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from nodepulse.config import Settings
from nodepulse.database import create_engine, create_session_factory, init_db
from nodepulse.services.circuit_breaker import CircuitBreaker
from nodepulse.services.node_store import NodeStore
from nodepulse.services.remote import RemoteResult


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeExecutor:
    """Answers commands from a script of (substring -> output or exception).

    Later rules win. An output may be a callable taking the command, which
    lets a test echo back delimiters found in a batch script.
    """

    def __init__(self):
        self.calls = []
        self.rules = []
        self.default = ""

    def on(self, substring: str, response, node_id=None):
        self.rules.append((node_id, substring, response))

    async def run(self, target, command: str, timeout: float) -> RemoteResult:
        self.calls.append((target.id, command, timeout))
        for node_id, substring, response in reversed(self.rules):
            if (node_id is None or node_id == target.id) and substring in command:
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    response = response(command)
                return RemoteResult(stdout=response, stderr="", exit_code=0)
        return RemoteResult(stdout=self.default, stderr="", exit_code=0)

    def commands_for(self, node_id):
        return [command for target_id, command, _ in self.calls if target_id == node_id]


@pytest.fixture
def config(tmp_path):
    return Settings(data_path=str(tmp_path), ssh_control_dir=str(tmp_path / "ssh"))


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'nodepulse-test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return NodeStore(create_session_factory(engine))


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(clock=clock)


@pytest.fixture
def scheduler():
    # Never started: added jobs stay pending and never fire on their own
    return AsyncIOScheduler()


@pytest.fixture
def make_node(store):
    async def _make_node(name="node", host="10.0.0.10", **fields):
        return await store.create_node(name=name, host=host, **fields)
    return _make_node
