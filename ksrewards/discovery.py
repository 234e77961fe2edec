"""
Gift code discovery

Pulls the public gift code feed and records codes we have not seen before as
pending. The feed normally answers JSON ({"codes": ["CODE DD.MM.YYYY", ...]})
but plain text and HTML listings with the same line format are accepted too.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests
from bs4 import BeautifulSoup

from .config import Config
from .errors import DiscoveryError
from .log import log_code
from .storage import Database

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-Za-z0-9]+$")


@dataclass
class FeedEntry:
    code: str
    date: str  # ISO timestamp of the day the feed lists


@dataclass
class DiscoveryResult:
    new: int = 0
    existing: int = 0
    total: int = 0
    new_codes: List[str] = field(default_factory=list)
    malformed: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, int]:
        return {"new": self.new, "existing": self.existing, "total": self.total}


def parse_feed_line(line: str) -> Optional[FeedEntry]:
    """Parse "CODE DD.MM.YYYY"; returns None for anything else"""
    parts = str(line).split()
    if len(parts) != 2:
        return None

    code, date_str = parts
    if not CODE_PATTERN.match(code):
        return None

    try:
        day, month, year = (int(p) for p in date_str.split("."))
        date = datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None

    return FeedEntry(code=code.upper(), date=date.isoformat())


def _body_lines(text: str, content_type: str) -> Tuple[Optional[List[Any]], List[str]]:
    """Split a feed body into candidate lines; first item is the JSON codes list if any"""
    stripped = text.lstrip()
    if "json" in content_type or stripped.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            data = None
        if isinstance(data, dict):
            error = data.get("error") or data.get("detail")
            if error:
                raise DiscoveryError(f"Feed reported an error: {error}")
            codes = data.get("codes") or []
            if not isinstance(codes, list):
                raise DiscoveryError(f"Unexpected codes field in feed: {type(codes).__name__}")
            return codes, []

    if "html" in content_type or stripped.startswith("<"):
        soup = BeautifulSoup(text, "html.parser")
        text = soup.get_text("\n")

    return None, [line.strip() for line in text.splitlines() if line.strip()]


def parse_feed(text: str, content_type: str = "") -> Tuple[List[FeedEntry], List[str]]:
    """Parse a whole feed body into unique entries plus the lines that did not parse"""
    codes, lines = _body_lines(text, content_type.lower())
    candidates = codes if codes is not None else lines

    entries: List[FeedEntry] = []
    malformed: List[str] = []
    seen = set()
    for line in candidates:
        entry = parse_feed_line(line) if isinstance(line, str) else None
        if entry is None:
            malformed.append(str(line))
            continue
        if entry.code in seen:
            continue
        seen.add(entry.code)
        entries.append(entry)

    return entries, malformed


class CodeDiscovery:
    """Synchronizes the local code table with the public feed"""

    def __init__(self, config: Config, db: Database, session: Optional[requests.Session] = None):
        self.config = config
        self.db = db
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': config.user_agent})

    def fetch(self) -> Tuple[List[FeedEntry], List[str]]:
        logger.info("Fetching gift codes from feed...")
        try:
            resp = self.session.get(
                self.config.giftcode_api_url,
                headers={'X-API-Key': self.config.giftcode_api_key, 'Accept': 'application/json'},
                timeout=self.config.feed_timeout,
            )
        except requests.RequestException as e:
            raise DiscoveryError(f"Feed request failed: {e}") from e

        if resp.status_code == 429:
            raise DiscoveryError("Rate limited by feed, will retry on the next run")
        if resp.status_code != 200:
            raise DiscoveryError(f"Feed returned status {resp.status_code}")

        entries, malformed = parse_feed(resp.text, resp.headers.get("Content-Type", ""))
        if malformed:
            logger.warning(f"Found {len(malformed)} malformed feed lines: {malformed[:10]}")
        logger.info(f"Parsed {len(entries)} gift codes from feed")
        return entries, malformed

    def sync(self) -> DiscoveryResult:
        """Insert unseen feed codes as pending; feed failures give an empty result"""
        try:
            entries, malformed = self.fetch()
        except DiscoveryError as e:
            logger.error(f"Error fetching gift codes: {e}")
            return DiscoveryResult()

        result = DiscoveryResult(total=len(entries), malformed=malformed)
        if not entries:
            logger.info("No gift codes received from feed")
            return result

        known = self.db.known_codes()
        for entry in entries:
            if entry.code in known:
                result.existing += 1
                continue
            if self.db.insert_code(entry.code, source="api", discovered_at=entry.date):
                result.new += 1
                result.new_codes.append(entry.code)
                log_code(logger, entry.code, "NEW", f"(listed {entry.date[:10]})")
            else:
                result.existing += 1

        logger.info(f"Sync complete: {result.new} new, {result.existing} existing, {result.total} total")
        return result
