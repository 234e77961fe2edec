"""
Gift code validation

A code is checked by redeeming it for one test account and reading what the
backend says about the code itself. Validation only touches the code and its
queue entries; it never writes redemption history.
"""

import logging
import random
from dataclasses import dataclass
from typing import Dict, List, Optional

from .api import KingshotClient
from .config import Config
from .log import log_code
from .queue import RedemptionQueue
from .ratelimit import Sleeper
from .status import Classification, CodeStatus, classify_status
from .storage import Database

logger = logging.getLogger(__name__)

CLASSIFICATION_TO_STATUS = {
    Classification.VALIDATED: CodeStatus.VALIDATED,
    Classification.INVALID: CodeStatus.INVALID,
    Classification.EXPIRED: CodeStatus.EXPIRED,
}


@dataclass
class ValidationOutcome:
    classification: Classification
    status: str
    message: str
    test_fid: str

    @property
    def valid(self) -> Optional[bool]:
        if self.classification is Classification.VALIDATED:
            return True
        if self.classification is Classification.UNCERTAIN:
            return None
        return False


class CodeValidator:
    def __init__(
        self,
        config: Config,
        db: Database,
        queue: RedemptionQueue,
        client: KingshotClient,
        sleeper: Optional[Sleeper] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.db = db
        self.queue = queue
        self.client = client
        self.sleeper = sleeper or Sleeper()
        self.rng = rng or random.Random()

    def pick_test_account(self) -> str:
        """Random active account that can log in, else the fallback FID"""
        candidates = [account.fid for account in self.db.list_active_accounts()]
        for _ in range(2):
            if not candidates:
                break
            fid = self.rng.choice(candidates)
            login = self.client.login(fid)
            if login.ok:
                logger.info(f"Using active account {fid} for validation")
                return fid
            logger.warning(f"Failed to log in test account {fid}: {login.error}")
            candidates.remove(fid)

        logger.info(f"Using fallback test FID {self.config.fallback_test_fid} for validation")
        return self.config.fallback_test_fid

    def validate_code(self, code: str) -> ValidationOutcome:
        test_fid = self.pick_test_account()
        result = self.client.redeem(test_fid, code)
        classification = classify_status(result.outcome)
        outcome = ValidationOutcome(classification, result.label, result.raw_message, test_fid)

        new_status = CLASSIFICATION_TO_STATUS.get(classification)
        if new_status is None:
            log_code(logger, code, "UNCERTAIN", f"- {outcome.status}, left unchanged", logging.WARNING)
            return outcome

        self.db.set_code_status(code, new_status)
        if classification is Classification.VALIDATED:
            log_code(logger, code, "VALID", f"- {outcome.status}")
        else:
            log_code(logger, code, classification.value.upper(), f"- {outcome.status}", logging.WARNING)
            self.queue.purge_code(code)
        return outcome

    def _validate_many(self, codes: List[str]) -> Dict[str, int]:
        counts = {"processed": 0, "valid": 0, "invalid": 0, "uncertain": 0}
        for index, code in enumerate(codes):
            if index:
                self.sleeper.sleep(self.config.validation_delay)
            outcome = self.validate_code(code)
            counts["processed"] += 1
            if outcome.valid is True:
                counts["valid"] += 1
            elif outcome.valid is False:
                counts["invalid"] += 1
            else:
                counts["uncertain"] += 1
        return counts

    def validate_pending_codes(self) -> Dict[str, int]:
        codes = [gc.code for gc in self.db.list_codes_by_status(CodeStatus.PENDING)]
        if not codes:
            logger.debug("No pending gift codes to validate")
            return {"processed": 0, "valid": 0, "invalid": 0, "uncertain": 0}

        logger.info(f"Validating {len(codes)} pending gift codes...")
        counts = self._validate_many(codes)
        logger.info(
            f"Validation complete: {counts['valid']} valid, {counts['invalid']} invalid, "
            f"{counts['uncertain']} uncertain"
        )
        return counts

    def revalidate_validated_codes(self) -> Dict[str, int]:
        """Re-check validated codes so silently expired ones stop being queued"""
        codes = [gc.code for gc in self.db.list_codes_by_status(CodeStatus.VALIDATED)]
        if not codes:
            return {"processed": 0, "valid": 0, "invalid": 0, "uncertain": 0}

        logger.info(f"Re-validating {len(codes)} validated gift codes...")
        counts = self._validate_many(codes)
        if counts["invalid"]:
            logger.warning(f"{counts['invalid']} previously valid codes are no longer redeemable")
        return counts
