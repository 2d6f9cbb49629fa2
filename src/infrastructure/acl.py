from typing import Any, Dict
from src.domain.exceptions import InvalidArgumentError
from src.domain.models import Repository, RepositoryGroup

class GitLabTranslator:
    """
    Anti-corruption layer that translates raw GitLab REST JSON objects into catalog entities.
    """

    @staticmethod
    def to_group(raw_group: Dict[str, Any]) -> RepositoryGroup:
        """
        Transforms a raw GitLab group object into a RepositoryGroup.

        Args:
            raw_group (Dict[str, Any]): A group object from GitLab's /groups endpoint.

        Returns:
            RepositoryGroup: The domain entity, with parent_group left unresolved.
        """
        raw_id = raw_group.get('id')
        if raw_id is None:
            raise InvalidArgumentError("id is required to build RepositoryGroup.")

        parent_id = raw_group.get('parent_id')

        return RepositoryGroup.create(
            id=str(raw_id),
            name=raw_group.get('name') or raw_group.get('path', ''),
            parent_group_id=str(parent_id) if parent_id is not None else None,
            url=raw_group.get('web_url'),
        )

    @staticmethod
    def to_repository(raw_project: Dict[str, Any], group: RepositoryGroup) -> Repository:
        """
        Transforms a raw GitLab project object into a Repository owned by the given group.

        Args:
            raw_project (Dict[str, Any]): A project object from GitLab's /groups/:id/projects endpoint.
            group (RepositoryGroup): The group the project was listed under.

        Returns:
            Repository: The domain entity.
        """
        raw_id = raw_project.get('id')
        if raw_id is None:
            raise InvalidArgumentError("id is required to build Repository.")

        return Repository.create(
            id=str(raw_id),
            name=raw_project.get('name') or raw_project.get('path', ''),
            group=group,
            url=raw_project.get('web_url') or raw_project.get('http_url_to_repo', ''),
        )
