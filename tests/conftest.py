"""Shared pytest configuration and fixtures."""

from collections.abc import Generator
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from src.config import Settings, get_settings
from src.failure_modes.cache import RecordCache
from src.failure_modes.models import FailureMode
from src.failure_modes.offline_store import LocalRecordStore
from src.failure_modes.remote import FailureModeTable
from src.failure_modes.service import FailureModeService
from src.resilience.connectivity import ConnectivityMonitor
from src.resilience.rate_limiter import RateLimiter

SUPABASE_TEST_URL = "http://supabase.test"


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run e2e tests that hit a real backend (requires .env with valid credentials)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="Need --run-e2e flag to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _no_dotenv(request: pytest.FixtureRequest) -> Generator[None]:
    """Block .env loading so tests that forget mock_settings fail locally, not just in CI.

    Sets Settings.model_config['env_file'] = None before each test (except e2e).
    """
    if "e2e" in request.keywords:
        yield
        return

    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings() -> Generator[Any]:
    """Provide fake settings so tests don't need a .env file.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = Settings(
        supabase_url=SUPABASE_TEST_URL,
        supabase_anon_key="anon-test-key",
        offline_db_path=":memory:",
    )
    with (
        patch("src.config.get_settings", return_value=fake_settings),
        patch("src.failure_modes.service.get_settings", return_value=fake_settings),
        patch("src.api.main.get_settings", return_value=fake_settings),
        patch("src.cli.get_settings", return_value=fake_settings),
    ):
        yield fake_settings


def make_failure_mode(
    fm_id: str,
    category: str,
    mode: str,
    tags: list[str] | None = None,
    severity: int = 5,
) -> FailureMode:
    return FailureMode(
        id=fm_id,
        category=category,
        mode=mode,
        common_causes=[],
        severity_default=severity,
        tags=tags or [],
        created_at="2026-01-01T00:00:00+00:00",
        updated_at="2026-01-01T00:00:00+00:00",
    )


@pytest.fixture
def make_mode() -> Any:
    """Expose the record builder to test modules."""
    return make_failure_mode


@pytest.fixture
def sample_modes() -> list[FailureMode]:
    return [
        make_failure_mode("fm-1", "Assembly", "Loose Connection", ["electrical"]),
        make_failure_mode("fm-2", "Machining", "Tool Wear", ["tool"]),
        make_failure_mode("fm-3", "Assembly", "Misalignment", ["mechanical", "fixture"]),
        make_failure_mode("fm-4", "Electrical", "Short Circuit", ["electrical", "safety"], severity=9),
    ]


@pytest.fixture
async def memory_store() -> Any:
    store = LocalRecordStore(":memory:")
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def fake_remote() -> AsyncMock:
    """A FailureModeTable stand-in whose coroutine methods are AsyncMocks."""
    return AsyncMock(spec=FailureModeTable)


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def service_factory(fake_remote: AsyncMock) -> Any:
    """Build a FailureModeService around injectable collaborators with no real delays."""

    def _build(
        *,
        store: LocalRecordStore | None = None,
        online: bool = True,
        remote: Any = None,
        rate_limiter: RateLimiter | None = None,
        cache: RecordCache | None = None,
    ) -> FailureModeService:
        return FailureModeService(
            remote=remote if remote is not None else fake_remote,
            offline_store=store if store is not None else LocalRecordStore(""),
            rate_limiter=rate_limiter or RateLimiter(10, 1.0),
            connectivity=ConnectivityMonitor(online=online),
            cache=cache or RecordCache(),
            sleep=_no_sleep,
        )

    return _build
