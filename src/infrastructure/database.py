import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import (
    Table, Column, String, Integer, Boolean, DateTime, ForeignKey, MetaData, Text,
    delete, select, text, update,
)

from src.domain.exceptions import DatabaseException
from src.domain.models import ApplicationUser, Repository, RepositoryGroup
from src.infrastructure.loader import link_parent_groups

logger = logging.getLogger(__name__)

# SQLAlchemy core Table definitions
metadata = MetaData()
groups_table = Table(
    'repository_groups', metadata,
    Column('id', String, primary_key=True),
    Column('name', String, nullable=False),
    Column('parent_group_id', String, nullable=True),
    Column('url', Text, nullable=True),
    Column('synced_at', DateTime(timezone=True), server_default=text('NOW()')),
)
repositories_table = Table(
    'repositories', metadata,
    Column('id', String, primary_key=True),
    Column('name', String, nullable=False),
    Column('group_id', String, ForeignKey('repository_groups.id'), nullable=False),
    Column('url', Text, nullable=False),
    Column('synced_at', DateTime(timezone=True), server_default=text('NOW()')),
)
users_table = Table(
    'application_users', metadata,
    Column('id', String, primary_key=True),
    Column('user_name', String, nullable=False, unique=True),
    Column('email', String, nullable=False),
    Column('security_stamp', String, nullable=False),
    Column('full_name', String, nullable=False),
    Column('display_name', String, nullable=False),
    Column('bio', Text, nullable=True),
    Column('avatar_url', Text, nullable=True),
    Column('is_active', Boolean, nullable=False, server_default=text('true')),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('last_seen_at', DateTime(timezone=True), nullable=True),
)
credentials_table = Table(
    'gitlab_credentials', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('name', String, nullable=False),
    Column('encrypted_access_token', Text, nullable=False),
    Column('gitlab_username', String, nullable=True),
    Column('application_user_id', String, ForeignKey('application_users.id', ondelete='CASCADE'), nullable=False),
)

class PostgresCatalogRepository:
    """
    Persistence collaborator for the catalog entities on PostgreSQL.
    Upserts groups and repositories in batches, saves users with their credentials
    and loads the group tree with parent references resolved.
    """

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)

    async def bulk_upsert_groups(self, groups: List[RepositoryGroup]) -> None:
        """
        Inserts or updates multiple RepositoryGroup instances in a single statement.

        Args:
            groups (List[RepositoryGroup]): Groups to store.
        """
        if not groups:
            return  # Nothing to store

        values = [
            {   'id': group.id,
                'name': group.name,
                'parent_group_id': group.parent_group_id,
                'url': group.url,
            } for group in groups
        ]

        stmt = insert(groups_table).values(values)
        # Only touch rows whose stored columns actually differ.
        upsert_stmt = stmt.on_conflict_do_update(
            index_elements=['id'],
            set_={
                'name': stmt.excluded.name,
                'parent_group_id': stmt.excluded.parent_group_id,
                'url': stmt.excluded.url,
                'synced_at': text('NOW()'),
            },
            where=(
                groups_table.c.name.is_distinct_from(stmt.excluded.name)
                | groups_table.c.parent_group_id.is_distinct_from(stmt.excluded.parent_group_id)
                | groups_table.c.url.is_distinct_from(stmt.excluded.url)
            )
        )
        await self._execute(upsert_stmt)

    async def bulk_upsert_repositories(self, repositories: List[Repository]) -> None:
        """
        Inserts or updates multiple Repository instances in a single statement.

        Args:
            repositories (List[Repository]): Repositories to store. Their groups must already exist.
        """
        if not repositories:
            return

        values = [
            {   'id': repository.id,
                'name': repository.name,
                'group_id': repository.group_id,
                'url': repository.url,
            } for repository in repositories
        ]

        stmt = insert(repositories_table).values(values)
        upsert_stmt = stmt.on_conflict_do_update(
            index_elements=['id'],
            set_={
                'name': stmt.excluded.name,
                'group_id': stmt.excluded.group_id,
                'url': stmt.excluded.url,
                'synced_at': text('NOW()'),
            },
            where=(
                repositories_table.c.name.is_distinct_from(stmt.excluded.name)
                | repositories_table.c.group_id.is_distinct_from(stmt.excluded.group_id)
                | repositories_table.c.url.is_distinct_from(stmt.excluded.url)
            )
        )
        await self._execute(upsert_stmt)

    async def save_user(self, user: ApplicationUser) -> None:
        """
        Makes the stored user match the aggregate in one transaction.

        The user row is upserted, credential rows no longer in the aggregate are
        deleted, stored credentials get their current token and username, and
        credentials without an id are inserted with the generated id written back.

        Args:
            user (ApplicationUser): The aggregate to store.
        """
        profile = user.model_dump(include=set(users_table.c.keys()))
        user_stmt = insert(users_table).values(profile)
        user_stmt = user_stmt.on_conflict_do_update(
            index_elements=['id'],
            set_={key: user_stmt.excluded[key] for key in profile if key != 'id'},
        )

        stored = [c for c in user.gitlab_credentials if c.id is not None]
        pending = [c for c in user.gitlab_credentials if c.id is None]

        delete_stmt = delete(credentials_table).where(credentials_table.c.application_user_id == user.id)
        if stored:
            delete_stmt = delete_stmt.where(credentials_table.c.id.not_in([c.id for c in stored]))

        try:
            async with self.engine.begin() as conn:
                await conn.execute(user_stmt)
                await conn.execute(delete_stmt)
                for credential in stored:
                    await conn.execute(
                        update(credentials_table)
                        .where(
                            (credentials_table.c.id == credential.id)
                            & (credentials_table.c.application_user_id == user.id)
                        )
                        .values(
                            name=credential.name,
                            encrypted_access_token=credential.encrypted_access_token,
                            gitlab_username=credential.gitlab_username,
                        )
                    )
                for credential in pending:
                    cred_stmt = insert(credentials_table).values(
                        name=credential.name,
                        encrypted_access_token=credential.encrypted_access_token,
                        gitlab_username=credential.gitlab_username,
                        application_user_id=credential.application_user_id,
                    ).returning(credentials_table.c.id)
                    result = await conn.execute(cred_stmt)
                    credential.id = result.scalar_one()
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to save user '{user.id}': {e}") from e

        logger.info(f"Saved user '{user.user_name}' with {len(pending)} new GitLab credential(s).")

    async def load_user(self, user_id: str) -> Optional[ApplicationUser]:
        """
        Loads a user and rebuilds its credential collection.

        Args:
            user_id (str): Identifier of the user.

        Returns:
            Optional[ApplicationUser]: The aggregate, or None when no such user is stored.
        """
        try:
            async with self.engine.connect() as conn:
                user_result = await conn.execute(select(users_table).where(users_table.c.id == user_id))
                profile = user_result.mappings().first()
                if profile is None:
                    return None
                cred_result = await conn.execute(
                    select(
                        credentials_table.c.id,
                        credentials_table.c.name,
                        credentials_table.c.encrypted_access_token,
                        credentials_table.c.gitlab_username,
                    )
                    .where(credentials_table.c.application_user_id == user_id)
                    .order_by(credentials_table.c.id)
                )
                credentials = cred_result.mappings().all()
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to load user '{user_id}': {e}") from e

        return ApplicationUser.restore(credentials=credentials, **dict(profile))

    async def load_groups(self) -> List[RepositoryGroup]:
        """
        Loads every stored group and resolves parent references.

        Returns:
            List[RepositoryGroup]: All groups, linked into their hierarchy.
        """
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(
                    select(
                        groups_table.c.id,
                        groups_table.c.name,
                        groups_table.c.parent_group_id,
                        groups_table.c.url,
                    )
                )
                rows = result.mappings().all()
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to load repository groups: {e}") from e

        groups = [
            RepositoryGroup.create(
                id=row['id'],
                name=row['name'],
                parent_group_id=row['parent_group_id'],
                url=row['url'],
            ) for row in rows
        ]
        return link_parent_groups(groups)

    async def _execute(self, stmt) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.execute(stmt)
        except SQLAlchemyError as e:
            raise DatabaseException(f"Database write failed: {e}") from e
