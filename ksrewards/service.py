"""
Application service

Wires the components together around one Database, one RateLimiter and one
Sleeper, and exposes the operations a presentation layer (CLI, admin UI)
needs. Input problems are reported with the exceptions from errors.py.
"""

import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import requests

from .api import KingshotClient
from .backup import BackupInfo, BackupManager
from .config import Config
from .discovery import CODE_PATTERN, CodeDiscovery
from .errors import (
    AccountInactiveError,
    AccountNotFoundError,
    CodeExistsError,
    CodeNotFoundError,
    InvalidRequestError,
    PlayerLookupError,
)
from .queue import ACCOUNT_PRIORITY, DEFAULT_PRIORITY, REGISTRATION_PRIORITY, QueueItem, RedemptionQueue
from .processor import RedemptionProcessor
from .ratelimit import RateLimiter, Sleeper
from .status import Classification, CodeStatus, QueueStatus
from .storage import Account, Database, GiftCode, PriorityAccount, RedemptionRecord
from .validator import CodeValidator

logger = logging.getLogger(__name__)

FID_PATTERN = re.compile(r"^\d+$")


@dataclass
class Registration:
    account: Account
    created: bool
    queued: int = 0
    redeemed: int = 0


def clean_code(code: str) -> str:
    return str(code or "").strip().upper()


class RewardsService:
    """Entry point for everything the scheduler and the CLI do"""

    def __init__(
        self,
        config: Config,
        db: Optional[Database] = None,
        client: Optional[KingshotClient] = None,
        sleeper: Optional[Sleeper] = None,
        feed_session: Optional[requests.Session] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.db = db or Database(config.db_path)
        self.sleeper = sleeper or Sleeper()
        self.limiter = RateLimiter(config.min_request_interval, sleeper=self.sleeper)
        self.client = client or KingshotClient(config, self.limiter, sleeper=self.sleeper)

        self.queue = RedemptionQueue(self.db)
        self.discovery = CodeDiscovery(config, self.db, session=feed_session)
        self.validator = CodeValidator(config, self.db, self.queue, self.client, sleeper=self.sleeper, rng=rng)
        self.processor = RedemptionProcessor(config, self.db, self.queue, self.client, sleeper=self.sleeper)
        self.backups = BackupManager(config, self.db)

    def recover(self) -> int:
        """Call once at startup, before any job runs"""
        return self.queue.release_stale()

    def stop(self):
        self.sleeper.stop()

    # -------------------------------
    # Pipeline
    # -------------------------------

    def discover_codes(self) -> Dict[str, int]:
        return self.discovery.sync().as_dict()

    def validate_pending_codes(self) -> Dict[str, int]:
        return self.validator.validate_pending_codes()

    def validate_one_code(self, code: str) -> Classification:
        code = clean_code(code)
        if self.db.get_code(code) is None:
            raise CodeNotFoundError(f"Gift code {code} not found")
        return self.validator.validate_code(code).classification

    def revalidate_codes(self) -> Dict[str, int]:
        return self.validator.revalidate_validated_codes()

    def enqueue_validated_for_all(self, priority: int = DEFAULT_PRIORITY) -> int:
        return self.queue.bulk_enqueue_validated(priority)

    def enqueue_for_account(self, fid: str, priority: int = ACCOUNT_PRIORITY) -> int:
        self._require_active(fid)
        queued = self.queue.enqueue_for_account(fid, priority)
        logger.info(f"Queued {queued} codes for {fid} at priority {priority}")
        return queued

    def process_queue(self, batch_size: Optional[int] = None) -> Dict[str, int]:
        return self.processor.process_queue(batch_size)

    def discovery_cycle(self) -> Dict[str, int]:
        """Discovery run as scheduled: sync, validate what is new, queue it up"""
        summary = dict(self.discover_codes())
        validation = self.validate_pending_codes()
        summary["validated"] = validation["valid"]
        summary["queued"] = self.enqueue_validated_for_all()
        if summary["queued"]:
            logger.info(f"Queued {summary['queued']} redemptions (including any missed codes)")
        return summary

    # -------------------------------
    # Accounts
    # -------------------------------

    def _require_account(self, fid: str) -> Account:
        account = self.db.get_account(fid)
        if account is None:
            raise AccountNotFoundError(f"Account {fid} not found")
        return account

    def _require_active(self, fid: str) -> Account:
        account = self._require_account(fid)
        if not account.active:
            raise AccountInactiveError(f"Account {fid} is inactive")
        return account

    def register_account(self, fid: str) -> Registration:
        """Look the player up, store the profile and redeem everything they are missing"""
        fid = str(fid or "").strip()
        if not FID_PATTERN.match(fid):
            raise InvalidRequestError("FID must be numeric")

        logger.info(f"Validating player FID: {fid}")
        login = self.client.login(fid)
        if not login.ok:
            raise PlayerLookupError(f"Invalid FID: {login.error}")

        if self.db.get_account(fid) is not None:
            changes = self.db.update_account_profile(fid, login.nickname, login.kingdom, login.avatar)
            for field_name, value in changes.items():
                logger.info(f"Updated {field_name} for {fid}: {value}")
            return Registration(account=self.db.get_account(fid), created=False)

        self.db.upsert_account(fid, login.nickname, login.kingdom, login.avatar)
        queued = self.queue.enqueue_for_account(fid, REGISTRATION_PRIORITY)
        logger.info(f"Account registered: {fid} ({login.nickname}), {queued} codes queued")

        redeemed = 0
        if queued:
            logger.info(f"Starting immediate redemption for new account {fid}")
            redeemed = self.processor.process_account(fid)["success"]
            logger.info(f"Immediate redemption complete for {fid}: {redeemed}/{queued} successful")

        return Registration(account=self.db.get_account(fid), created=True, queued=queued, redeemed=redeemed)

    def set_account_active(self, fid: str, active: bool) -> Account:
        self._require_account(fid)
        self.db.set_account_active(fid, active)
        logger.info(f"Account {fid} {'activated' if active else 'deactivated'}")
        return self.db.get_account(fid)

    def list_accounts(self) -> List[Account]:
        return self.db.list_accounts()

    # -------------------------------
    # Codes
    # -------------------------------

    def add_code(self, code: str, source: str = "admin") -> str:
        code = clean_code(code)
        if not code:
            raise InvalidRequestError("Gift code is required")
        if not CODE_PATTERN.match(code):
            raise InvalidRequestError(f"Gift code {code} must be alphanumeric")
        if not self.db.insert_code(code, source=source):
            raise CodeExistsError(f"Gift code {code} already exists")
        logger.info(f"Added gift code: {code}")
        return code

    def delete_code(self, code: str):
        code = clean_code(code)
        if not self.db.delete_code(code):
            raise CodeNotFoundError(f"Gift code {code} not found")
        logger.info(f"Deleted gift code: {code}")

    def list_codes(self, status: Optional[CodeStatus] = None) -> List[GiftCode]:
        if status is not None:
            return self.db.list_codes_by_status(status)
        return self.db.list_codes()

    def code_stats(self) -> Dict[str, int]:
        return self.db.code_stats()

    # -------------------------------
    # Queue
    # -------------------------------

    def queue_items(self, status: Optional[QueueStatus] = None, limit: int = 100) -> List[QueueItem]:
        return self.queue.list_items(status, limit)

    def queue_stats(self) -> Dict[str, int]:
        return self.queue.stats()

    def retry_queue_items(self, item_ids: Iterable[int]) -> int:
        item_ids = list(item_ids)
        if not item_ids:
            raise InvalidRequestError("At least one queue item id is required")
        reset = self.queue.reset_many(item_ids)
        logger.info(f"Reset {reset} queue items to pending")
        return reset

    # -------------------------------
    # Priority accounts
    # -------------------------------

    def add_priority_account(self, fid: str, priority: int = REGISTRATION_PRIORITY) -> int:
        """Register an account for preferential service and queue its missing codes"""
        self._require_active(fid)
        self._set_priority(fid, priority)
        queued = self.queue.enqueue_for_account(fid, priority)
        logger.info(f"Priority account {fid} added at {priority}, {queued} codes queued")
        return queued

    def update_priority_account(self, fid: str, priority: int):
        if self.db.get_priority_account(fid) is None:
            raise AccountNotFoundError(f"Account {fid} is not a priority account")
        self._set_priority(fid, priority)
        logger.info(f"Priority of {fid} changed to {priority}")

    def remove_priority_account(self, fid: str):
        if not self.db.remove_priority_account(fid):
            raise AccountNotFoundError(f"Account {fid} is not a priority account")
        logger.info(f"Removed {fid} from priority accounts")

    def list_priority_accounts(self) -> List[PriorityAccount]:
        return self.db.list_priority_accounts()

    def _set_priority(self, fid: str, priority: int):
        try:
            self.db.set_priority_account(fid, int(priority))
        except (TypeError, ValueError) as e:
            raise InvalidRequestError(str(e)) from e

    # -------------------------------
    # History and dashboard
    # -------------------------------

    def redemptions(
        self, fid: Optional[str] = None, code: Optional[str] = None, limit: Optional[int] = 100
    ) -> List[RedemptionRecord]:
        return self.db.list_redemptions(fid=fid, code=code, limit=limit)

    def recent_successes(self, limit: int = 50) -> List[RedemptionRecord]:
        return self.db.recent_successes(limit)

    def dashboard(self) -> Dict[str, Any]:
        accounts = self.db.account_stats()
        return {
            "accounts": {**accounts, "inactive": accounts["total"] - accounts["active"]},
            "codes": self.db.code_stats(),
            "queue": self.queue.stats(),
            "redemptions": self.db.redemption_stats(),
        }

    # -------------------------------
    # Backups
    # -------------------------------

    def create_backup(self):
        return self.backups.create_backup()

    def list_backups(self) -> List[BackupInfo]:
        return self.backups.list_backups()
