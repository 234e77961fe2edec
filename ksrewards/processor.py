"""
Redemption queue processing

Items are handled strictly one at a time. Each attempt lands in the
redemption history, and what the backend says about the code is fed back
into the code table.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, List, Optional

from .api import KingshotClient, RedeemResult
from .config import Config
from .errors import ShutdownRequested
from .log import Colors, log_section
from .queue import QueueItem, RedemptionQueue
from .ratelimit import Sleeper
from .status import (
    EXPIRED_STATUSES,
    NOT_FOUND_STATUSES,
    PERMANENT_FAILURE_STATUSES,
    Classification,
    CodeStatus,
    RedemptionStatus,
    classify_status,
)
from .storage import Database

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    fid: str
    code: str
    success: bool
    status: str
    message: str = ""
    cached: bool = False


class RedemptionProcessor:
    """Drains the redemption queue"""

    def __init__(
        self,
        config: Config,
        db: Database,
        queue: RedemptionQueue,
        client: KingshotClient,
        sleeper: Optional[Sleeper] = None,
    ):
        self.config = config
        self.db = db
        self.queue = queue
        self.client = client
        self.sleeper = sleeper or Sleeper()

    def _refresh_profile(self, fid: str, result: RedeemResult):
        changes = self.db.update_account_profile(fid, result.nickname, result.kingdom, result.avatar)
        for field_name, value in changes.items():
            logger.info(f"Updated {field_name} for {fid}: {value}")

    def _reconcile_code(self, code: str, outcome: RedemptionStatus):
        classification = classify_status(outcome)
        if classification is Classification.VALIDATED:
            # Only pending codes move; a validated code stays as it is
            self.db.set_code_status(code, CodeStatus.VALIDATED)
        elif outcome in EXPIRED_STATUSES or outcome in NOT_FOUND_STATUSES:
            new_status = CodeStatus.EXPIRED if outcome in EXPIRED_STATUSES else CodeStatus.INVALID
            if self.db.set_code_status(code, new_status):
                logger.warning(f"Gift code {code} is now {new_status.value} ({outcome.value})")
            self.queue.purge_code(code)

    def _resolve_item(self, item: QueueItem, result: RedeemResult):
        if result.success or result.outcome in PERMANENT_FAILURE_STATUSES:
            self.queue.delete(item)
        elif result.outcome is RedemptionStatus.TIMEOUT_RETRY and item.attempts < self.config.max_queue_attempts:
            self.queue.requeue(item, result.raw_message or result.label)
        else:
            self.queue.mark_failed(item, result.raw_message or result.label)

    def process_item(self, item: QueueItem) -> Optional[ProcessResult]:
        """Redeem one queued item; None when another worker already took it"""
        fid, code = item.fid, item.code

        previous = self.db.latest_successful_redemption(fid, code)
        if previous is not None:
            logger.info(f"FID {fid} already redeemed code {code} successfully")
            self.queue.delete(item)
            return ProcessResult(fid, code, True, previous.status, cached=True)

        if not self.queue.mark_processing(item):
            logger.debug(f"Queue item {item.id} ({fid} {code}) was taken by another worker")
            return None

        try:
            result = self.client.redeem(fid, code)
            if result.nickname or result.kingdom or result.avatar:
                self._refresh_profile(fid, result)
            self.db.add_redemption(fid, code, result.label)
            self._reconcile_code(code, result.outcome)
            self._resolve_item(item, result)
        except ShutdownRequested:
            self.queue.requeue(item, "interrupted by shutdown")
            raise
        except Exception as e:
            self._release(item, f"{type(e).__name__}: {e}")
            raise

        label = result.label
        if result.success:
            logger.info(f"  {Colors.GREEN}{fid}{Colors.END} {code}: {label}")
        else:
            logger.info(f"  {Colors.RED}{fid}{Colors.END} {code}: {label} {result.raw_message}".rstrip())
        return ProcessResult(fid, code, result.success, label, result.raw_message)

    def _release(self, item: QueueItem, reason: str):
        try:
            self.queue.requeue(item, reason)
        except sqlite3.Error as e:
            logger.error(f"Could not return queue item {item.id} to pending: {e}")

    def _process_items(self, items: List[QueueItem]) -> Dict[str, int]:
        counts = {"processed": 0, "success": 0, "failed": 0}
        called_upstream = False
        for item in items:
            if self.queue.get_item(item.id) is None:
                # Purged earlier in this batch
                continue
            if called_upstream:
                self.sleeper.sleep(self.config.redeem_delay)
                called_upstream = False
            result = self.process_item(item)
            if result is None:
                continue
            called_upstream = not result.cached
            counts["processed"] += 1
            if result.success:
                counts["success"] += 1
            else:
                counts["failed"] += 1
        return counts

    def process_queue(self, batch_size: Optional[int] = None) -> Dict[str, int]:
        items = self.queue.dequeue_pending(batch_size or self.config.batch_size)
        if not items:
            logger.debug("Redemption queue is empty")
            return {"processed": 0, "success": 0, "failed": 0}

        log_section(logger, f"Processing {len(items)} queued redemptions")
        counts = self._process_items(items)
        logger.info(
            f"Batch complete: {counts['processed']} processed, "
            f"{counts['success']} successful, {counts['failed']} failed"
        )
        return counts

    def process_account(self, fid: str) -> Dict[str, int]:
        """Work off everything pending for one account right away"""
        items = self.queue.dequeue_pending(self.config.batch_size, fid=fid)
        if not items:
            return {"processed": 0, "success": 0, "failed": 0}
        logger.info(f"Processing {len(items)} queued redemptions for {fid}")
        return self._process_items(items)
