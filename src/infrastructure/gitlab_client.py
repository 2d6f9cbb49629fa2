import aiohttp
import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from src.domain.exceptions import RateLimitExceededException

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://gitlab.com"
DEFAULT_PER_PAGE = 100
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60, connect=10)
MAX_RETRIES = 7
# Stop before GitLab starts answering 429 for every request
MIN_REMAINING_REQUESTS = 10

class GitLabRestClient:
    """
    Client for the GitLab REST API (v4).
    Handles authentication, offset pagination, retries and rate limit management.
    """

    def __init__(self, token: str, base_url: str = DEFAULT_BASE_URL):
        self.headers = {
            "PRIVATE-TOKEN": token,
            "Accept": "application/json",
            "User-Agent": "repository-catalog",
        }
        self.api_url = f"{base_url.rstrip('/')}/api/v4"

    async def fetch_page(
        self,
        session: aiohttp.ClientSession,
        path: str,
        page: int = 1,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        """
        Fetches a single page of a GitLab collection endpoint.

        Returns:
            Tuple of (items, next_page). next_page is None on the last page.
        """
        query = {"per_page": DEFAULT_PER_PAGE, **(params or {}), "page": page}
        url = f"{self.api_url}/{path.lstrip('/')}"

        for attempt in range(MAX_RETRIES):
          try:
            async with session.get(url, params=query, headers=self.headers, timeout=REQUEST_TIMEOUT) as response:
                if response.status == 429:
                  retry_after = response.headers.get('Retry-After')
                  sleep_time = int(retry_after) if retry_after else 60
                  logger.warning(f"Rate limited (429). Sleeping {sleep_time}s...")
                  await asyncio.sleep(sleep_time)
                  continue

                if response.status in {500, 502, 503, 504}:
                  sleep_time = (2 ** attempt) + random.uniform(0, 2)
                  logger.warning(
                      f"Server error ({response.status}) on {path}, "
                      f"retrying in {sleep_time:.1f}s (attempt {attempt + 1}/{MAX_RETRIES})..."
                  )
                  await asyncio.sleep(sleep_time)
                  continue

                response.raise_for_status()
                items = await response.json()

                remaining = response.headers.get('RateLimit-Remaining')
                if remaining is not None and int(remaining) < MIN_REMAINING_REQUESTS:
                    raise RateLimitExceededException(reset_at=self._reset_at(response.headers))

                next_page = response.headers.get('X-Next-Page')
                return items, int(next_page) if next_page else None

          except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
              sleep_time = (2 ** attempt) + random.uniform(0, 2)
              logger.warning(
                  f"Request to {path} failed (attempt {attempt + 1}/{MAX_RETRIES}): {e}. "
                  f"Retrying in {sleep_time:.1f}s..."
              )
              await asyncio.sleep(sleep_time)

        raise Exception(f"Failed to fetch {path} page {page} after {MAX_RETRIES} attempts.")

    async def iter_pages(
        self,
        session: aiohttp.ClientSession,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yields every item of a collection endpoint, following X-Next-Page."""
        page: Optional[int] = 1
        while page is not None:
            items, page = await self.fetch_page(session, path, page, params)
            for item in items:
                yield item

    def iter_groups(
        self,
        session: aiohttp.ClientSession,
        root_group: Optional[str] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yields all groups visible to the token, or a root group's descendants."""
        if root_group:
            return self.iter_pages(session, f"groups/{self._encode(root_group)}/descendant_groups")
        return self.iter_pages(session, "groups", {"all_available": "true"})

    async def fetch_group(self, session: aiohttp.ClientSession, root_group: str) -> Dict[str, Any]:
        items, _ = await self.fetch_page(session, f"groups/{self._encode(root_group)}")
        # Single-object endpoints return a dict rather than a list
        return items

    def iter_group_projects(
        self,
        session: aiohttp.ClientSession,
        group_id: str,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yields the projects directly owned by a group."""
        return self.iter_pages(session, f"groups/{self._encode(group_id)}/projects", {"archived": "false"})

    @staticmethod
    def _encode(group: str) -> str:
        # Full paths like "parent/child" must be URL-encoded as a single segment
        return str(group).replace("/", "%2F")

    @staticmethod
    def _reset_at(headers) -> str:
        reset = headers.get('RateLimit-Reset')
        if not reset:
            return datetime.now(timezone.utc).isoformat()
        return datetime.fromtimestamp(int(reset), tz=timezone.utc).isoformat()
