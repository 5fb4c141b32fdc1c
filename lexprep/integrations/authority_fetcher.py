"""
HTTP authority fetcher.

Queries an external legal search endpoint and returns candidate authorities.
Only allowlisted Tier A/B domains are passed on; the store applies governance
again on write.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from lexprep.core.errors import AuthorityUnavailableError
from lexprep.grounding.governance import validate_source

from .capabilities import AuthorityQuery, FetchedAuthority


class HttpAuthorityFetcher:
    """AuthorityFetcher backed by a JSON search API."""

    def __init__(
        self,
        search_url: str,
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the fetcher.

        Args:
            search_url: Endpoint accepting ?q=&jurisdiction=&limit= and returning
                {"results": [...]} where each entry matches FetchedAuthority
            timeout_seconds: Per-request timeout
            client: Optional preconfigured client (tests pass a MockTransport client)
        """
        self.search_url = search_url
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def search(self, query: AuthorityQuery) -> list[FetchedAuthority]:
        params = {"q": query.concept, "jurisdiction": query.jurisdiction, "limit": query.limit}
        try:
            response = await self.client.get(self.search_url, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise AuthorityUnavailableError(f"Authority search failed for '{query.concept}': {exc}") from exc

        return self._parse_results(data.get("results", []) if isinstance(data, dict) else data)

    def _parse_results(self, raw: list[dict[str, Any]]) -> list[FetchedAuthority]:
        results: list[FetchedAuthority] = []
        for entry in raw:
            try:
                fetched = FetchedAuthority.model_validate(entry)
            except PydanticValidationError as exc:
                logger.warning("Skipping malformed authority result: {}", exc.errors()[0]["msg"])
                continue
            check = validate_source(fetched.url)
            if not check.valid:
                logger.info("Dropping {}: {}", fetched.url, check.reason)
                continue
            results.append(fetched)
        return results
