"""
Configuration management

Values come from a .env file when present, then from the process
environment, then from the defaults below.
"""

import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import dotenv_values


class Config:
    """Centralized configuration management"""

    def __init__(self, env: Optional[Dict[str, str]] = None, env_file: str = ".env"):
        if env is None:
            # Load .env file if it exists (for local development)
            env_file_config = dotenv_values(env_file) if Path(env_file).exists() else {}
            self.env_config = {**os.environ, **{k: v for k, v in env_file_config.items() if v is not None}}
        else:
            self.env_config = dict(env)

        # Paths
        self.db_path = Path(self._get_str("DB_PATH", "./data/ks-rewards.db"))
        self.backup_dir = Path(self._get_str("BACKUP_DIR", "./backups"))
        self.backup_retention_days = self._get_int("BACKUP_RETENTION_DAYS", 30)

        # Upstream game API
        self.login_url = self._get_str("KS_LOGIN_URL", "https://kingshot-giftcode.centurygame.com/api/player")
        self.redeem_url = self._get_str("KS_REDEEM_URL", "https://kingshot-giftcode.centurygame.com/api/gift_code")
        self.encrypt_key = self._get_str("KS_ENCRYPT_KEY", "mN4!pQs6JrYwV9")
        self.user_agent = (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36"
        )

        # Gift code feed
        self.giftcode_api_url = self._get_str(
            "GIFTCODE_API_URL", "http://ks-gift-code-api.whiteout-bot.com/giftcode_api.php"
        )
        self.giftcode_api_key = self._get_str("GIFTCODE_API_KEY", "super_secret_bot_token_nobody_will_ever_find")

        # Retry and throughput (milliseconds in the environment, seconds here)
        self.max_retries = max(1, self._get_int("MAX_RETRIES", 5))
        self.retry_delay = self._get_int("RETRY_DELAY_MS", 2000) / 1000.0
        self.min_request_interval = self._get_int("MIN_REQUEST_INTERVAL_MS", 3000) / 1000.0
        self.redeem_delay = self._get_int("REDEEM_DELAY_MS", 2000) / 1000.0
        self.validation_delay = self._get_int("VALIDATION_DELAY_MS", 500) / 1000.0
        self.request_timeout = self._get_float("REQUEST_TIMEOUT", 10.0)
        self.feed_timeout = self._get_float("FEED_TIMEOUT", 15.0)
        self.max_queue_attempts = self._get_int("MAX_QUEUE_ATTEMPTS", 3)

        # Validation
        self.fallback_test_fid = self._get_str("FALLBACK_TEST_FID", "27370737")

        # Scheduler
        self.redemption_interval_minutes = self._get_int("REDEMPTION_INTERVAL_MINUTES", 2)
        self.discovery_interval_minutes = self._get_int("DISCOVERY_INTERVAL_MINUTES", 15)
        self.backup_interval_hours = self._get_int("BACKUP_INTERVAL_HOURS", 6)
        self.revalidation_interval_hours = self._get_int("REVALIDATION_INTERVAL_HOURS", 0)
        self.batch_size = self._get_int("BATCH_SIZE", 100)

        self.verbose = self._get_bool("VERBOSE", False)

    def _get_str(self, key: str, default: str = "") -> str:
        value = self.env_config.get(key)
        return value if value else default

    def _get_bool(self, key: str, default: bool = False) -> bool:
        value = self.env_config.get(key, "1" if default else "0")
        return str(value).strip().lower() in ("1", "true", "yes", "on")

    def _get_int(self, key: str, default: int) -> int:
        try:
            return int(self.env_config.get(key, default))
        except (TypeError, ValueError):
            return default

    def _get_float(self, key: str, default: float) -> float:
        try:
            return float(self.env_config.get(key, default))
        except (TypeError, ValueError):
            return default

    def summary(self) -> Dict[str, str]:
        """Human readable settings for the startup banner (secrets masked)"""
        return {
            "Database": str(self.db_path),
            "Backups": f"{self.backup_dir} (keep {self.backup_retention_days} days)",
            "Min Request Interval": f"{self.min_request_interval}s",
            "Redeem Delay": f"{self.redeem_delay}s",
            "Max Retries": str(self.max_retries),
            "Redemption Interval": f"{self.redemption_interval_minutes} min",
            "Discovery Interval": f"{self.discovery_interval_minutes} min",
            "Backup Interval": f"{self.backup_interval_hours} h",
            "Revalidation": (
                f"{self.revalidation_interval_hours} h" if self.revalidation_interval_hours > 0 else "disabled"
            ),
        }
