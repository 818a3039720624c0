import pytest

from campustix.infra.sql import async_url, make_async_engine


@pytest.mark.parametrize("url, expected", [
    ("sqlite:///./a.db", "sqlite+aiosqlite:///./a.db"),
    ("postgres://u@h/db", "postgresql+asyncpg://u@h/db"),
    ("postgresql://u@h/db", "postgresql+asyncpg://u@h/db"),
    ("sqlite+aiosqlite:///./a.db", "sqlite+aiosqlite:///./a.db"),
])
def test_async_url(url, expected):
    assert async_url(url) == expected


@pytest.mark.asyncio
async def test_sqlite_gate_admits_one_transaction(tmp_path):
    eng = make_async_engine(f"sqlite:///{tmp_path}/gate.db")
    try:
        assert not eng.gate.locked()
        async with eng.gated():
            assert eng.gate.locked()
        assert not eng.gate.locked()
    finally:
        await eng.engine.dispose()


@pytest.mark.asyncio
async def test_explicit_gate_limit(tmp_path):
    eng = make_async_engine(f"sqlite:///{tmp_path}/gate.db", gate_limit=2)
    try:
        async with eng.gated():
            assert not eng.gate.locked()
            async with eng.gated():
                assert eng.gate.locked()
    finally:
        await eng.engine.dispose()
