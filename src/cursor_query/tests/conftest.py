import pytest

_ENV_VARS = (
    "CURSOR_QUERY_API_HOST",
    "CURSOR_QUERY_APP_ID",
    "CURSOR_QUERY_TOKEN",
    "CURSOR_QUERY_TTL_MS",
    "CURSOR_QUERY_EVICTION_GRACE_MS",
    "CURSOR_QUERY_SWR_MS",
    "CURSOR_QUERY_PRELOAD_DELAY_MS",
)


@pytest.fixture(autouse=True)
def isolate_cursor_query_env(monkeypatch):
    """Keep a developer's shell settings out of every test."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms / 1000.0


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
