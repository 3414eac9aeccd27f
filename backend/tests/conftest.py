import asyncio
import inspect
import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from carteira.db.session import Database  # noqa: E402
from carteira.services.locks import portfolio_locks  # noqa: E402


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used in the suite."""

    config.addinivalue_line("markers", "asyncio: mark test as running in an asyncio event loop")


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute async test functions without requiring pytest-asyncio."""

    test_function = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_function):
        funcargs = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            loop.run_until_complete(test_function(**funcargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


@pytest.fixture
def database(tmp_path: pathlib.Path):
    """A fresh SQLite database per test with the schema already created."""

    db = Database(url=f"sqlite+aiosqlite:///{tmp_path / 'carteira.db'}")

    async def _prepare() -> None:
        await db.create_all()
        # Pooled connections belong to this loop; the test runs in another.
        await db.dispose()

    asyncio.run(_prepare())
    # asyncio locks bind to the loop that first contends for them.
    portfolio_locks.clear()
    yield db
    portfolio_locks.clear()
