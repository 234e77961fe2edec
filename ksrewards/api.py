"""
Game backend client

Two signed form-POST endpoints: login (player lookup) and redeem (gift code
exchange). Every call goes through the shared RateLimiter and a retry loop
that distinguishes rate limiting, transient failures and hard rejections.
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Optional

import requests

from .config import Config
from .errors import ClientRejectedError, RetriesExhaustedError, UpstreamError, UpstreamResponseError
from .ratelimit import RateLimiter, Sleeper
from .status import SUCCESS_STATUSES, RedemptionStatus, parse_status, status_label

logger = logging.getLogger(__name__)

SESSION_INVALID_CODE = -4


@dataclass
class LoginResult:
    ok: bool
    nickname: Optional[str] = None
    kingdom: Optional[str] = None
    avatar: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RedeemResult:
    outcome: RedemptionStatus
    raw_message: str
    nickname: Optional[str] = None
    kingdom: Optional[str] = None
    avatar: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome in SUCCESS_STATUSES

    @property
    def label(self) -> str:
        return status_label(self.outcome, self.raw_message)


def _format_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def sign_payload(params: Dict[str, Any], secret: str) -> Dict[str, Any]:
    """Return params plus the MD5 `sign` field the backend expects"""
    encoded = "&".join(f"{key}={_format_value(params[key])}" for key in sorted(params))
    sign = hashlib.md5(f"{encoded}{secret}".encode("utf-8")).hexdigest()
    return {"sign": sign, **params}


def rate_limit_backoff(base: float, attempt: int) -> float:
    return base * 2 ** (attempt - 1)


def transient_backoff(base: float, attempt: int) -> float:
    return base * 1.5 ** (attempt - 1)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)"""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class KingshotClient:
    """Signed, rate limited access to the login and redeem endpoints"""

    def __init__(
        self,
        config: Config,
        limiter: RateLimiter,
        sleeper: Optional[Sleeper] = None,
        session: Optional[requests.Session] = None,
        time_ms: Optional[Callable[[], int]] = None,
    ):
        self.config = config
        self.limiter = limiter
        self.sleeper = sleeper or Sleeper()
        self.session = session or self._build_session()
        self._time_ms = time_ms or (lambda: int(time.time() * 1000))

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update({
            'User-Agent': self.config.user_agent,
            'Accept': 'application/json, text/plain, */*',
            'Connection': 'keep-alive',
        })
        # Retries are handled in _post so the adapter must not add its own
        adapter = requests.adapters.HTTPAdapter(pool_connections=2, pool_maxsize=4, max_retries=0)
        session.mount('http://', adapter)
        session.mount('https://', adapter)
        return session

    def _decode(self, resp: requests.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            raise UpstreamResponseError(f"Invalid response from server: {resp.text[:200]!r}")
        if not isinstance(data, dict):
            raise UpstreamResponseError(f"Invalid response from server: {data!r}")
        return data

    def _post(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """POST a signed form with the retry policy applied"""
        base = self.config.retry_delay
        max_attempts = self.config.max_retries
        attempt = 0
        last_error = None

        while True:
            attempt += 1
            last_data = None
            self.limiter.acquire()
            payload = sign_payload({**params, "time": self._time_ms()}, self.config.encrypt_key)

            try:
                resp = self.session.post(url, data=payload, timeout=self.config.request_timeout)
            except requests.RequestException as e:
                last_error = f"{type(e).__name__}: {e}"
                delay = transient_backoff(base, attempt)
            else:
                if resp.status_code == 429:
                    retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                    delay = retry_after if retry_after is not None else rate_limit_backoff(base, attempt)
                    last_error = "HTTP 429 Too Many Requests"
                elif resp.status_code >= 500:
                    delay = transient_backoff(base, attempt)
                    last_error = f"HTTP {resp.status_code}"
                elif resp.status_code >= 400:
                    raise ClientRejectedError(resp.status_code, resp.text[:200])
                else:
                    data = self._decode(resp)
                    if parse_status(data.get("msg")) is not RedemptionStatus.TIMEOUT_RETRY:
                        return data
                    last_data = data
                    delay = transient_backoff(base, attempt)
                    last_error = "server requested retry"

            if attempt >= max_attempts:
                logger.warning(f"Attempt {attempt}/{max_attempts} failed for {url}: {last_error}, giving up")
                raise RetriesExhaustedError(url, attempt, last_error, last_data=last_data)

            logger.info(f"Attempt {attempt}/{max_attempts} failed for {url}: {last_error}, retrying in {delay:.1f}s")
            self.sleeper.sleep(delay)

    def login(self, fid: str) -> LoginResult:
        """Look up a player; also refreshes the backend session for that player"""
        try:
            data = self._post(self.config.login_url, {"fid": fid})
        except UpstreamError as e:
            logger.error(f"Error validating player ID {fid}: {e}")
            return LoginResult(ok=False, error=str(e))

        if data.get("code") == 0 and data.get("msg") == "success":
            profile = data.get("data") or {}
            if not isinstance(profile, dict):
                profile = {}
            return LoginResult(
                ok=True,
                nickname=_clean(profile.get("nickname")),
                kingdom=_clean(profile.get("kid")),
                avatar=_clean(profile.get("avatar_image")),
            )

        return LoginResult(ok=False, error=str(data.get("msg") or "Unknown error"))

    @staticmethod
    def _session_invalid(data: Dict[str, Any]) -> bool:
        return data.get("code") == SESSION_INVALID_CODE or parse_status(data.get("msg")) is RedemptionStatus.NOT_LOGIN

    def _result(self, outcome: RedemptionStatus, message: str, login: LoginResult) -> RedeemResult:
        return RedeemResult(
            outcome=outcome,
            raw_message=message,
            nickname=login.nickname,
            kingdom=login.kingdom,
            avatar=login.avatar,
        )

    def redeem(self, fid: str, code: str) -> RedeemResult:
        """Redeem a gift code for a player (always logs in first)"""
        login = self.login(fid)
        if not login.ok:
            return RedeemResult(RedemptionStatus.NOT_LOGIN, login.error or "Failed to authenticate player")

        params = {"fid": fid, "cdk": code}
        try:
            data = self._post(self.config.redeem_url, params)

            if self._session_invalid(data):
                logger.warning(f"Session expired for FID {fid}, attempting to re-login...")
                relogin = self.login(fid)
                if not relogin.ok:
                    return self._result(
                        RedemptionStatus.NOT_LOGIN, str(data.get("msg") or "Session expired or invalid"), login
                    )
                login = relogin
                data = self._post(self.config.redeem_url, params)
                if self._session_invalid(data):
                    return self._result(
                        RedemptionStatus.NOT_LOGIN, str(data.get("msg") or "Session expired or invalid"), login
                    )
        except RetriesExhaustedError as e:
            if e.last_data is not None:
                return self._result(RedemptionStatus.TIMEOUT_RETRY, str(e.last_data.get("msg") or ""), login)
            logger.error(f"Error redeeming gift code {code} for FID {fid}: {e}")
            return self._result(RedemptionStatus.ERROR, str(e), login)
        except UpstreamError as e:
            logger.error(f"Error redeeming gift code {code} for FID {fid}: {e}")
            return self._result(RedemptionStatus.ERROR, str(e), login)

        raw_message = str(data.get("msg") or "")
        outcome = parse_status(raw_message)
        logger.debug(f"Redeem {code} for {fid}: raw={raw_message!r} outcome={outcome.value}")
        return self._result(outcome, raw_message, login)
