import pytest

from planboard.config import Settings
from planboard.transport import ChannelHub


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(db_path=str(tmp_path / "planboard.db"), secret="test-secret",
                    heartbeat_interval=0.05, poll_interval=0.01, recovery_grace=0.0)


@pytest.fixture
def hub():
    h = ChannelHub()
    h.open()
    return h


@pytest.fixture
def app(settings, hub):
    import server
    return server.create_app(settings, hub=hub)


@pytest.fixture
def http(app):
    return app.test_client()


def login(http, username, pin):
    resp = http.post("/api/auth/login", json={"username": username, "pin": pin})
    assert resp.status_code == 200, resp.get_json()
    return {"Authorization": f"Bearer {resp.get_json()['token']}"}


@pytest.fixture
def planner(http):
    return login(http, "planner", "1111")


@pytest.fixture
def planner2(http):
    return login(http, "planner2", "2222")


@pytest.fixture
def sales(http):
    return login(http, "sales", "3333")
