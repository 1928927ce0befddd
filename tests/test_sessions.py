import sys
import time
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fake_exchange import FakeExchange, network_error
from gridbot.grid import STATE_RUNNING, STATE_STOPPED, GridConfig, StartupError
from gridbot.sessions import (
    Credentials,
    EventLog,
    SessionExistsError,
    SessionSupervisor,
    session_key,
)


class RecordingFactory:
    def __init__(self):
        self.exchanges = {}
        self.credentials = []
        self.fail_for = set()

    def __call__(self, credentials):
        self.credentials.append(credentials)
        exchange = FakeExchange()
        if credentials.user_id in self.fail_for:
            exchange.fail["filters"] = network_error("bad symbol")
        self.exchanges[credentials.user_id] = exchange
        return exchange


@pytest.fixture
def factory():
    return RecordingFactory()


@pytest.fixture
def supervisor(factory):
    sup = SessionSupervisor(factory)
    yield sup
    sup.stop_all(wait=True)


def _creds(user):
    return Credentials(user_id=user, api_key=f"key-{user}", api_secret=f"secret-{user}")


def _wait_for(predicate, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_start_creates_running_session(supervisor, factory):
    handle = supervisor.start(_creds("alice"), "dogeusdt", GridConfig())
    assert handle.session_id == session_key("alice", "DOGEUSDT") == "alice:DOGEUSDT"
    assert handle.controller.state == STATE_RUNNING
    assert handle.running
    assert supervisor.get("alice:DOGEUSDT") is handle
    assert factory.credentials[0].api_key == "key-alice"


def test_duplicate_user_symbol_is_rejected(supervisor):
    supervisor.start(_creds("alice"), "DOGEUSDT", GridConfig())
    with pytest.raises(SessionExistsError):
        supervisor.start(_creds("alice"), "dogeusdt", GridConfig())
    other = supervisor.start(_creds("bob"), "DOGEUSDT", GridConfig())
    assert other.controller.client is not supervisor.get("alice:DOGEUSDT").controller.client
    assert len(supervisor.sessions()) == 2


def test_sessions_do_not_share_state(supervisor, factory):
    alice = supervisor.start(_creds("alice"), "DOGEUSDT", GridConfig())
    bob = supervisor.start(_creds("bob"), "DOGEUSDT", GridConfig())
    factory.exchanges["alice"].price = Decimal("99")
    alice.controller.tick()
    assert len(alice.controller.ledger) == 1
    assert len(bob.controller.ledger) == 0
    assert bob.controller.base_price == Decimal("100")


def test_startup_failure_is_raised_and_releases_key(supervisor, factory):
    factory.fail_for.add("carol")
    with pytest.raises(StartupError):
        supervisor.start(_creds("carol"), "DOGEUSDT", GridConfig())
    assert supervisor.get("carol:DOGEUSDT") is None
    factory.fail_for.clear()
    handle = supervisor.start(_creds("carol"), "DOGEUSDT", GridConfig())
    assert handle.controller.state == STATE_RUNNING


def test_polling_thread_ticks_until_stopped(supervisor, factory):
    handle = supervisor.start(_creds("alice"), "DOGEUSDT", GridConfig(poll_interval_ms=10))
    assert _wait_for(lambda: handle.controller.ticks >= 2)
    supervisor.stop(handle, wait=True)
    assert handle.controller.state == STATE_STOPPED
    assert not handle.running
    assert supervisor.get(handle.session_id) is None
    ticks = handle.controller.ticks
    time.sleep(0.05)
    assert handle.controller.ticks == ticks


def test_stop_leaves_exchange_orders_alone_and_allows_restart(supervisor, factory):
    handle = supervisor.start(_creds("alice"), "DOGEUSDT", GridConfig())
    factory.exchanges["alice"].price = Decimal("99")
    handle.controller.tick()
    placed = list(factory.exchanges["alice"].placed)
    supervisor.stop(handle)
    supervisor.stop(handle)
    assert factory.exchanges["alice"].placed == placed
    again = supervisor.start(_creds("alice"), "DOGEUSDT", GridConfig())
    assert again is not handle


def test_tick_errors_do_not_kill_the_loop(supervisor, factory):
    handle = supervisor.start(_creds("alice"), "DOGEUSDT", GridConfig(poll_interval_ms=10))
    factory.exchanges["alice"].fail["price"] = network_error("down")
    assert _wait_for(lambda: factory.exchanges["alice"].price_calls >= 3)
    assert handle.running
    assert handle.controller.state == STATE_RUNNING
    logs = supervisor.events.logs(handle.session_id)
    assert any(entry["kind"] == "error" for entry in logs)


def test_event_log_filters_by_session_and_limits():
    log = EventLog(maxlen=5)
    for i in range(4):
        log.add_log(f"a{i}", session_id="a:X", symbol="X")
    log.sink("b:Y", "Y")("hello", "price")
    assert [e["msg"] for e in log.logs("a:X", limit=2)] == ["a2", "a3"]
    assert log.logs("b:Y")[0]["kind"] == "price"
    log.add_log("a4", session_id="a:X")
    assert len(log.logs()) == 5
    assert log.logs(limit=0) == []


def test_credentials_repr_hides_secrets():
    text = repr(_creds("alice"))
    assert "alice" in text
    assert "secret-alice" not in text
    assert "key-alice" not in text
