"""Token-holder listing through the Moralis Web3 Data API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from atp_unlock_tracker.chain.retry import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY,
    RetryError,
    retry_async,
)
from atp_unlock_tracker.vesting.models import TokenHolder

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://deep-index.moralis.io/api/v2.2"
DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 50
DEFAULT_TIMEOUT_SECONDS = 30.0
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


class HolderProviderError(Exception):
    """Raised when the holder list cannot be retrieved."""


class HolderProviderTransientError(HolderProviderError):
    """Raised for retryable failures (429/5xx)."""


class MoralisHolderProvider:
    """Lists the holders of an ERC-20 token, following Moralis cursors."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        chain: str = "eth",
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._chain = chain
        self._page_size = page_size
        self._max_pages = max_pages
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)

    async def get_token_holders(self, token_address: str) -> list[TokenHolder]:
        """Return every holder of ``token_address`` up to the page cap.

        Raises:
            HolderProviderError: If a page cannot be fetched after retries.
        """
        token = token_address.lower()
        holders: list[TokenHolder] = []
        cursor: str | None = None

        for page in range(self._max_pages):
            page_cursor = cursor
            try:
                payload = await retry_async(
                    lambda: self._fetch_page(token, page_cursor),
                    max_attempts=self._max_attempts,
                    base_delay=self._base_delay,
                    retry_on=(HolderProviderTransientError, httpx.TransportError),
                    description=f"holders page {page + 1}",
                )
            except RetryError as e:
                raise HolderProviderError(
                    f"Failed to fetch token holders for {token}: {e.last_exception}"
                ) from e

            for row in payload.get("result") or []:
                holder = self._parse_holder(row, token)
                if holder is not None:
                    holders.append(holder)

            cursor = payload.get("cursor") or None
            if cursor is None:
                break
        else:
            logger.warning(
                "Stopped listing holders of %s after %d pages (%d holders)",
                token,
                self._max_pages,
                len(holders),
            )

        logger.info("Fetched %d token holders for %s", len(holders), token)
        return holders

    async def _fetch_page(self, token: str, cursor: str | None) -> dict[str, Any]:
        params: dict[str, str | int] = {"chain": self._chain, "limit": self._page_size}
        if cursor:
            params["cursor"] = cursor
        response = await self._client.get(
            f"{self._base_url}/erc20/{token}/owners",
            params=params,
            headers={"X-API-Key": self._api_key, "Accept": "application/json"},
        )
        if response.status_code in RETRY_STATUS_CODES:
            raise HolderProviderTransientError(
                f"Moralis returned {response.status_code} for {token}"
            )
        if response.status_code >= 400:
            raise HolderProviderError(
                f"Moralis returned {response.status_code} for {token}: {response.text[:200]}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise HolderProviderError(f"Malformed Moralis response for {token}: {e}") from e
        if not isinstance(data, dict):
            raise HolderProviderError(f"Unexpected Moralis response for {token}")
        return data

    @staticmethod
    def _parse_holder(row: dict[str, Any], token: str) -> TokenHolder | None:
        address = row.get("owner_address")
        if not address:
            logger.warning("Skipping holder row without owner_address: %s", row)
            return None
        try:
            balance = int(row.get("balance") or 0)
        except (TypeError, ValueError):
            logger.warning("Skipping holder %s with malformed balance %r", address, row.get("balance"))
            return None
        return TokenHolder(
            address=str(address).lower().strip(),
            balance=balance,
            balance_formatted=str(row.get("balance_formatted") or ""),
            token_address=token,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
