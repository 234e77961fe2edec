import json
from typing import Any, Dict, List, Optional

import pytest

from ksrewards.api import LoginResult, RedeemResult
from ksrewards.config import Config
from ksrewards.queue import RedemptionQueue
from ksrewards.ratelimit import Sleeper
from ksrewards.status import RedemptionStatus
from ksrewards.storage import Database


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleeper(Sleeper):
    """Records waits instead of blocking; moves the fake clock forward if given one"""

    def __init__(self, clock: Optional[FakeClock] = None):
        super().__init__()
        self.clock = clock
        self.sleeps: List[float] = []

    def sleep(self, seconds: float):
        if self.stopping:
            super().sleep(seconds)
        self.sleeps.append(seconds)
        if self.clock is not None and seconds > 0:
            self.clock.advance(seconds)


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None, text: Optional[str] = None,
                 headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self._json = json_data
        if text is None:
            text = json.dumps(json_data) if json_data is not None else ""
        self.text = text
        self.headers = headers or {}

    def json(self):
        if self._json is not None:
            return self._json
        return json.loads(self.text)


class FakeSession:
    """Scripted stand-in for requests.Session; entries are responses or exceptions"""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.headers: Dict[str, str] = {}
        self.calls: List[Dict[str, Any]] = []

    def _next(self):
        if not self.responses:
            raise AssertionError("FakeSession ran out of scripted responses")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def post(self, url, data=None, timeout=None, **kwargs):
        self.calls.append({"method": "POST", "url": url, "data": data, "timeout": timeout})
        return self._next()

    def get(self, url, headers=None, timeout=None, **kwargs):
        self.calls.append({"method": "GET", "url": url, "headers": headers, "timeout": timeout})
        return self._next()


class FakeClient:
    """Scripted game client for validator, processor and service tests

    outcomes maps (fid, code) or code to a RedemptionStatus, a
    (status, raw_message) tuple, an exception, or a list of those consumed in
    order (the last one repeats).
    """

    def __init__(self, outcomes=None, default=RedemptionStatus.SUCCESS, failing_logins=()):
        self.outcomes = dict(outcomes or {})
        self.default = default
        self.failing_logins = set(failing_logins)
        self.handler = None
        self.login_calls: List[str] = []
        self.redeem_calls: List[tuple] = []

    def login(self, fid: str) -> LoginResult:
        self.login_calls.append(fid)
        if fid in self.failing_logins:
            return LoginResult(ok=False, error="role not exist")
        return LoginResult(ok=True, nickname=f"Player{fid}", kingdom="77", avatar=f"https://img/{fid}.png")

    def _pick(self, fid: str, code: str):
        if self.handler is not None:
            return self.handler(fid, code)
        value = self.outcomes.get((fid, code), self.outcomes.get(code, self.default))
        if isinstance(value, list):
            return value.pop(0) if len(value) > 1 else value[0]
        return value

    def redeem(self, fid: str, code: str) -> RedeemResult:
        self.redeem_calls.append((fid, code))
        outcome = self._pick(fid, code)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, tuple):
            outcome, raw = outcome
        else:
            raw = outcome.value
        if fid in self.failing_logins:
            return RedeemResult(RedemptionStatus.NOT_LOGIN, "role not exist")
        return RedeemResult(outcome, raw, nickname=f"Player{fid}", kingdom="77", avatar=f"https://img/{fid}.png")


def make_config(tmp_path, **overrides) -> Config:
    env = {
        "DB_PATH": str(tmp_path / "data" / "test.db"),
        "BACKUP_DIR": str(tmp_path / "backups"),
        "MAX_RETRIES": "5",
        "RETRY_DELAY_MS": "1000",
        "MIN_REQUEST_INTERVAL_MS": "0",
        "REDEEM_DELAY_MS": "2000",
        "VALIDATION_DELAY_MS": "500",
        "MAX_QUEUE_ATTEMPTS": "3",
        "FALLBACK_TEST_FID": "27370737",
        "KS_ENCRYPT_KEY": "test-secret",
    }
    env.update({key: str(value) for key, value in overrides.items()})
    return Config(env=env)


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def db(config):
    return Database(config.db_path)


@pytest.fixture
def queue(db):
    return RedemptionQueue(db)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return RecordingSleeper(clock)
