import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, NamedTuple, Optional

import aiohttp

from src.domain.exceptions import InvalidOperationError, RateLimitExceededException
from src.domain.models import ApplicationUser, Repository, RepositoryGroup
from src.infrastructure.acl import GitLabTranslator
from src.infrastructure.database import PostgresCatalogRepository
from src.infrastructure.gitlab_client import DEFAULT_BASE_URL, GitLabRestClient
from src.infrastructure.loader import link_parent_groups

logger = logging.getLogger(__name__)

# Limit concurrent connections to avoid overwhelming the GitLab instance
CONNECTOR_LIMIT = 10
# Number of groups whose projects are fetched concurrently
MAX_CONCURRENT_GROUPS = 3
MAX_RATE_LIMIT_WAITS = 3


class ImportSummary(NamedTuple):
    groups: int
    repositories: int


class CatalogImportService:
    """
    Service responsible for importing GitLab groups and projects into the catalog.

    Groups are fetched first, linked into a hierarchy (rejecting cycles) and stored;
    projects are then fetched per group with bounded concurrency and stored as
    repositories of that group.
    """

    def __init__(
            self,
            gitlab_client: GitLabRestClient,
            db_repository: PostgresCatalogRepository,
    ):
        self.gitlab_client = gitlab_client
        self.db_repository = db_repository

    @classmethod
    def for_credential(
        cls,
        user: ApplicationUser,
        credential_name: str,
        decrypt_token: Callable[[str], str],
        db_repository: PostgresCatalogRepository,
        base_url: str = DEFAULT_BASE_URL,
    ) -> "CatalogImportService":
        """
        Builds a service that reads GitLab with one of the user's stored credentials.

        Args:
            user (ApplicationUser): Owner of the credential.
            credential_name (str): Name of the credential, matched ignoring case.
            decrypt_token (Callable[[str], str]): Turns the stored encrypted token into a usable one.
            db_repository (PostgresCatalogRepository): Destination of the import.
            base_url (str): GitLab instance URL.
        """
        credential = user.get_gitlab_credential_by_name(credential_name)
        if credential is None:
            raise InvalidOperationError(
                f"User '{user.user_name}' has no GitLab credential named '{credential_name}'."
            )
        client = GitLabRestClient(token=decrypt_token(credential.encrypted_access_token), base_url=base_url)
        return cls(gitlab_client=client, db_repository=db_repository)

    async def run(self, root_group: Optional[str] = None) -> ImportSummary:
        """
        Imports all visible groups, or the subtree under root_group, with their projects.

        Returns:
            ImportSummary: Number of groups and repositories stored.
        """
        logger.info(f"Starting GitLab import{f' under {root_group!r}' if root_group else ''}.")

        async with aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=CONNECTOR_LIMIT),
        ) as session:
            groups = await self._import_groups(session, root_group)
            repository_count = await self._import_projects(session, groups)

        logger.info(f"Import completed. Groups: {len(groups)}, repositories: {repository_count}.")
        return ImportSummary(groups=len(groups), repositories=repository_count)

    async def _import_groups(self, session, root_group: Optional[str]) -> List[RepositoryGroup]:
        raw_groups = []
        if root_group:
            raw_groups.append(await self.gitlab_client.fetch_group(session, root_group))
        async for raw_group in self.gitlab_client.iter_groups(session, root_group):
            raw_groups.append(raw_group)

        groups = link_parent_groups(GitLabTranslator.to_group(raw) for raw in raw_groups if raw)
        await self.db_repository.bulk_upsert_groups(groups)
        logger.info(f"Stored {len(groups)} groups.")
        return groups

    async def _import_projects(self, session, groups: List[RepositoryGroup]) -> int:
        pending: List[RepositoryGroup] = list(groups)
        total = 0
        rate_limit_waits = 0

        while pending:
            batch, pending = pending[:MAX_CONCURRENT_GROUPS], pending[MAX_CONCURRENT_GROUPS:]
            results = await asyncio.gather(
                *(self._import_group_projects(session, group) for group in batch),
                return_exceptions=True,
            )

            retry: List[RepositoryGroup] = []
            rate_limit: Optional[RateLimitExceededException] = None
            for group, result in zip(batch, results):
                if isinstance(result, RateLimitExceededException):
                    retry.append(group)
                    rate_limit = result
                elif isinstance(result, Exception):
                    logger.error(f"Failed to import projects of group {group}: {result}")
                else:
                    total += result

            if rate_limit is not None:
                rate_limit_waits += 1
                if rate_limit_waits > MAX_RATE_LIMIT_WAITS:
                    logger.error(f"Rate limit hit too often. Skipping {len(retry)} group(s).")
                else:
                    await self._wait_for_reset(rate_limit)
                    # Re-queue so the groups are retried after the wait
                    pending = retry + pending

        return total

    async def _import_group_projects(self, session, group: RepositoryGroup) -> int:
        """Fetch and store the projects of a single group."""
        repositories: Dict[str, Repository] = {}
        async for raw_project in self.gitlab_client.iter_group_projects(session, group.id):
            if not raw_project:
                continue
            repository = GitLabTranslator.to_repository(raw_project, group)
            repositories[repository.id] = repository

        await self.db_repository.bulk_upsert_repositories(list(repositories.values()))
        logger.info(f"[{group}] Stored {len(repositories)} repositories.")
        return len(repositories)

    @staticmethod
    async def _wait_for_reset(error: RateLimitExceededException) -> None:
        reset_time = datetime.fromisoformat(error.reset_at.replace("Z", "+00:00"))
        now = datetime.now(timezone.utc)
        wait_seconds = max((reset_time - now).total_seconds() + 5, 1)
        logger.warning(f"Rate limit exceeded. Waiting {wait_seconds:.0f}s until {error.reset_at}.")
        await asyncio.sleep(wait_seconds)
