import pytest
from sqlalchemy.exc import OperationalError

from nodepulse.utils import db_utils
from nodepulse.utils.db_utils import retry_on_lock


def locked():
    return OperationalError("COMMIT", {}, Exception("database is locked"))


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    async def instant(delay):
        return None
    monkeypatch.setattr(db_utils.asyncio, "sleep", instant)


async def test_retries_transient_errors():
    attempts = []

    async def commit():
        attempts.append(1)
        if len(attempts) < 3:
            raise locked()
        return "ok"

    assert await retry_on_lock(commit) == "ok"
    assert len(attempts) == 3


async def test_gives_up_after_max_retries():
    async def commit():
        raise locked()

    with pytest.raises(OperationalError):
        await retry_on_lock(commit, max_retries=2)


async def test_other_errors_are_not_retried():
    attempts = []

    async def commit():
        attempts.append(1)
        raise OperationalError("COMMIT", {}, Exception("no such table: nodes"))

    with pytest.raises(OperationalError):
        await retry_on_lock(commit)
    assert len(attempts) == 1
