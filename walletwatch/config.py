"""
Configuration for the Wallet Watch monitor

All settings in one place for easy tuning. Secrets come from the environment
(or a .env file in the project root).
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Set
import os

from dotenv import load_dotenv

_project_root = Path(__file__).parent.parent
_env_path = _project_root / ".env"
if _env_path.exists():
    load_dotenv(_env_path)


def _interval_from_env() -> float:
    """MONITORING_INTERVAL is given in milliseconds."""
    raw = os.environ.get("MONITORING_INTERVAL")
    try:
        return int(raw) / 1000 if raw else 5.0
    except ValueError:
        return 5.0


# Base chain majors (USDC, WETH, DAI, cbETH, USDbC)
DEFAULT_TRACKED_TOKENS = {
    "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913",
    "0x4200000000000000000000000000000000000006",
    "0x50c5725949a6f0c72e6c4a641f24049a917db0cb",
    "0x2ae3f1ec7f1f5012cfeab0185bfc7aa3cf0dec22",
    "0xd9aaec86b65d86f6a7b5b1b0c42ffa531710b6ca",
}


@dataclass
class Config:
    """All configuration settings."""

    # -------------------------------------------------------------------------
    # Scheduling (seconds)
    # -------------------------------------------------------------------------
    # Scheduler tick; independent of and no longer than the per-wallet spacing
    poll_interval_sec: float = field(default_factory=_interval_from_env)

    # A wallet is re-fetched only when this much time has passed since its watermark
    min_check_spacing_sec: float = 5.0

    # Delay before the catch-up check that follows an alert being added
    alert_catchup_delay_sec: float = 1.0

    # -------------------------------------------------------------------------
    # Detection windows
    # -------------------------------------------------------------------------
    # Watermark rewind on registration and forced checks
    lookback_minutes: int = 30

    # Transactions older than this are never treated as new
    recency_window_minutes: int = 30

    # Transaction hashes remembered per wallet
    seen_hashes_cap: int = 100

    # Max new transactions handled in a single check
    max_new_per_check: int = 10

    # Rows requested per category from the provider
    fetch_limit: int = 20

    # -------------------------------------------------------------------------
    # Nodit Data API
    # -------------------------------------------------------------------------
    nodit_api_url: str = "https://web3.nodit.io/v1/base/mainnet"

    request_timeout_sec: float = 15.0
    max_concurrent_requests: int = 5

    # Delay after each request (seconds), keeps us under the provider rate limit
    request_delay_sec: float = 0.2

    rate_limit_backoff_sec: float = 2.0
    max_retries: int = 2

    # Response cache lifetime
    cache_ttl_sec: float = 300.0

    # Token transfers are reported only for these contracts (empty = all tokens)
    tracked_token_contracts: Set[str] = field(default_factory=lambda: set(DEFAULT_TRACKED_TOKENS))

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------
    telegram_timeout_sec: float = 10.0
    max_message_length: int = 4000

    explorer_tx_url: str = "https://basescan.org/tx/{hash}"
    explorer_address_url: str = "https://basescan.org/address/{address}"

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: str = "INFO"
    log_file: str = "logs/monitor.log"

    # -------------------------------------------------------------------------
    # Secrets (from environment)
    # -------------------------------------------------------------------------
    @property
    def nodit_api_key(self) -> Optional[str]:
        return os.environ.get("NODIT_API_KEY")

    @property
    def telegram_bot_token(self) -> Optional[str]:
        return os.environ.get("TELEGRAM_BOT_TOKEN") or os.environ.get("TELEGRAM_TOKEN")

    # -------------------------------------------------------------------------
    # Helper Methods
    # -------------------------------------------------------------------------

    def tx_link(self, tx_hash: str) -> str:
        return self.explorer_tx_url.format(hash=tx_hash)

    def address_link(self, address: str) -> str:
        return self.explorer_address_url.format(address=address)


# Global config instance
config = Config()
