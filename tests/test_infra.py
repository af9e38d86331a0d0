import pytest

from festix.infra.sql import async_url, is_memory_sqlite, open_database


@pytest.mark.parametrize("url,expected", [
    ("sqlite://", "sqlite+aiosqlite://"),
    ("sqlite:///./festix.db", "sqlite+aiosqlite:///./festix.db"),
    ("postgres://u:p@db/festix", "postgresql+asyncpg://u:p@db/festix"),
    ("postgresql://u:p@db/festix", "postgresql+asyncpg://u:p@db/festix"),
    ("sqlite+aiosqlite:///x.db", "sqlite+aiosqlite:///x.db"),
])
def test_async_url(url, expected):
    assert async_url(url) == expected


def test_memory_sqlite_detection():
    assert is_memory_sqlite("sqlite+aiosqlite://")
    assert is_memory_sqlite("sqlite+aiosqlite:///:memory:")
    assert not is_memory_sqlite("sqlite+aiosqlite:///./festix.db")


async def test_memory_database_is_gated_to_one():
    db = open_database("sqlite://")
    assert db.gate_limit == 1
    async with db.gated():
        pass
    await db.engine.dispose()
