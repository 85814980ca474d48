"""
Nodit Data API Client

Single responsibility: fetch recent native transactions and token transfers
for an address and normalize them into Transaction objects.
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from ..config import config
from ..errors import ProviderError
from ..models import Direction, Transaction, TransactionKind

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18
NATIVE_SYMBOL = "ETH"
NATIVE_NAME = "Ethereum"


class NoditClient:
    """
    Async client for the Nodit Web3 Data API.

    Handles:
    - Native transaction and token transfer listing per address
    - Short-TTL response caching (with explicit bypass)
    - Concurrency limiting, request spacing and 429 backoff
    - Per-request timeouts; exhausted retries raise ProviderError
    """

    def __init__(
        self,
        api_key: str = None,
        url: str = None,
        max_concurrent: int = None,
        request_delay: float = None,
        timeout: float = None,
        cache_ttl: float = None,
        tracked_tokens=None,
    ):
        self.api_key = api_key if api_key is not None else (config.nodit_api_key or "")
        self.url = (url or config.nodit_api_url).rstrip("/")
        self.max_concurrent = max_concurrent or config.max_concurrent_requests
        self.request_delay = request_delay if request_delay is not None else config.request_delay_sec
        self.timeout = timeout or config.request_timeout_sec
        self.cache_ttl = cache_ttl if cache_ttl is not None else config.cache_ttl_sec
        self.tracked_tokens = {
            a.lower() for a in (tracked_tokens if tracked_tokens is not None else config.tracked_token_contracts)
        }

        self._session: Optional[aiohttp.ClientSession] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._cache: Dict[str, Tuple[float, Any]] = {}

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self):
        """Create session and semaphore if needed."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "X-API-KEY": self.api_key,
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._semaphore = asyncio.Semaphore(self.max_concurrent)

    async def close(self):
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    def clear_cache(self):
        """Drop every cached response."""
        self._cache.clear()
        logger.debug("Nodit response cache cleared")

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _request(self, endpoint: str, payload: dict) -> Tuple[int, Any]:
        """One POST under the concurrency semaphore. Returns (status, body or None)."""
        async with self._semaphore:
            async with self._session.post(f"{self.url}{endpoint}", json=payload) as response:
                if response.status != 200:
                    return response.status, None
                result = await response.json()

            # Spacing between requests, still inside the semaphore
            await asyncio.sleep(self.request_delay)
            return response.status, result

    async def _post(self, endpoint: str, payload: dict) -> Any:
        """
        POST to the data API with retry logic.

        429, 5xx and transport errors back off exponentially and retry; other
        4xx fail at once. Backoff sleeps outside the semaphore.

        Raises:
            ProviderError: if every attempt failed
        """
        await self._ensure_session()
        retries = config.max_retries
        last_error = "no attempt made"

        for attempt in range(retries + 1):
            try:
                status, result = await self._request(endpoint, payload)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.error(f"Request error on {endpoint} (attempt {attempt + 1}): {last_error}")
            else:
                if status == 200:
                    return result
                last_error = f"HTTP {status}"
                if status == 429:
                    logger.warning(f"Rate limited on {endpoint} (attempt {attempt + 1})")
                else:
                    logger.error(f"Nodit API error {status} on {endpoint}")
                    if status < 500:
                        break

            if attempt < retries:
                backoff = config.rate_limit_backoff_sec * (2 ** attempt)
                logger.debug(f"Backing off {backoff}s before retrying {endpoint}")
                await asyncio.sleep(backoff)

        raise ProviderError(f"{endpoint} failed: {last_error}")

    async def _call(self, endpoint: str, payload: dict, use_cache: bool = True) -> Any:
        """Cached POST. A bypassed call still refreshes the cache entry."""
        key = f"{endpoint}:{json.dumps(payload, sort_keys=True)}"
        now = time.monotonic()

        if use_cache:
            cached = self._cache.get(key)
            if cached and now - cached[0] < self.cache_ttl:
                logger.debug(f"Using cached response for {endpoint}")
                return cached[1]

        result = await self._post(endpoint, payload)
        self._evict_expired(now)
        self._cache[key] = (now, result)
        return result

    def _evict_expired(self, now: float):
        expired = [k for k, (stored, _) in self._cache.items() if now - stored >= self.cache_ttl]
        for k in expired:
            del self._cache[k]

    # -------------------------------------------------------------------------
    # Public Methods
    # -------------------------------------------------------------------------

    async def list_native_transactions(
        self, address: str, limit: int = 20, use_cache: bool = True
    ) -> List[Transaction]:
        """
        Get recent native (ETH) transfers for an address, newest first.

        Returns an empty list when the provider has no data.

        Raises:
            ProviderError: on hard failure
        """
        response = await self._call(
            "/blockchain/getTransactionsByAccount",
            {"accountAddress": address, "rpp": limit},
            use_cache=use_cache,
        )
        return parse_native_transactions(_items(response), address)

    async def list_token_transfers(
        self, address: str, limit: int = 20, use_cache: bool = True
    ) -> List[Transaction]:
        """
        Get recent ERC-20 transfers for an address, newest first.

        Returns an empty list when the provider has no data.

        Raises:
            ProviderError: on hard failure
        """
        response = await self._call(
            "/token/getTokenTransfersByAccount",
            {"accountAddress": address, "rpp": limit},
            use_cache=use_cache,
        )
        return parse_token_transfers(_items(response), address, self.tracked_tokens)


# =============================================================================
# Parsing
# =============================================================================

def _items(response: Any) -> List[Dict[str, Any]]:
    if not isinstance(response, dict):
        return []
    items = response.get("items")
    if not isinstance(items, list):
        return []
    return [i for i in items if isinstance(i, dict)]


def scale_amount(raw: Any, decimals: int) -> Decimal:
    """Convert an integer base-unit amount into token units."""
    return Decimal(str(raw)) / (Decimal(10) ** int(decimals))


def format_amount(value: Decimal) -> str:
    """Plain decimal string without exponent or trailing zeros."""
    text = format(value.normalize(), "f")
    return text if text != "-0" else "0"


def _parse_common(item: Dict[str, Any], address: str) -> Optional[dict]:
    """Fields shared by both feeds, or None if the record is unusable."""
    tx_hash = item.get("transactionHash")
    sender = item.get("from")
    recipient = item.get("to")
    ts = item.get("timestamp")
    if not tx_hash or not isinstance(sender, str) or not isinstance(recipient, str) or ts is None:
        return None

    addr = address.lower()
    if addr not in (sender.lower(), recipient.lower()):
        return None

    try:
        timestamp = datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None

    block = item.get("blockNumber")
    try:
        block_number = int(block) if block is not None else None
    except (TypeError, ValueError):
        block_number = None

    return {
        "hash": tx_hash,
        "direction": Direction.OUT if sender.lower() == addr else Direction.IN,
        "from_address": sender,
        "to_address": recipient,
        "timestamp": timestamp,
        "block_number": block_number,
    }


def parse_native_transactions(items: List[Dict[str, Any]], address: str) -> List[Transaction]:
    """Normalize getTransactionsByAccount items; zero-value and malformed rows are dropped."""
    out: List[Transaction] = []
    for item in items:
        common = _parse_common(item, address)
        if common is None or item.get("value") is None:
            logger.debug(f"Dropping malformed native tx: {item.get('transactionHash')}")
            continue
        try:
            value = scale_amount(item["value"], NATIVE_DECIMALS)
        except (InvalidOperation, ValueError, TypeError):
            logger.debug(f"Dropping native tx with bad value: {common['hash']}")
            continue
        if value <= 0:
            continue

        out.append(Transaction(
            value=format_amount(value),
            token_symbol=NATIVE_SYMBOL,
            token_name=NATIVE_NAME,
            kind=TransactionKind.NATIVE,
            **common,
        ))

    out.sort(key=lambda t: t.timestamp, reverse=True)
    return out


def parse_token_transfers(
    items: List[Dict[str, Any]], address: str, tracked_tokens=frozenset()
) -> List[Transaction]:
    """
    Normalize getTokenTransfersByAccount items.

    When `tracked_tokens` is non-empty only those contract addresses are kept.
    """
    out: List[Transaction] = []
    for item in items:
        common = _parse_common(item, address)
        contract = item.get("contract")
        if common is None or not isinstance(contract, dict) or item.get("value") is None:
            logger.debug(f"Dropping malformed token transfer: {item.get('transactionHash')}")
            continue

        token_address = (contract.get("address") or "").lower()
        if tracked_tokens and token_address not in tracked_tokens:
            continue

        try:
            decimals = contract.get("decimals")
            value = scale_amount(item["value"], 18 if decimals is None else decimals)
        except (InvalidOperation, ValueError, TypeError):
            logger.debug(f"Dropping token transfer with bad value: {common['hash']}")
            continue

        out.append(Transaction(
            value=format_amount(value),
            token_symbol=contract.get("symbol") or "TOKEN",
            token_name=contract.get("name") or "Unknown Token",
            token_address=token_address or None,
            kind=TransactionKind.TOKEN,
            **common,
        ))

    out.sort(key=lambda t: t.timestamp, reverse=True)
    return out
