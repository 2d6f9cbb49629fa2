import logging
from typing import Dict, Iterable, List

from src.domain.exceptions import HierarchyCycleError
from src.domain.models import RepositoryGroup

logger = logging.getLogger(__name__)


def link_parent_groups(groups: Iterable[RepositoryGroup]) -> List[RepositoryGroup]:
    """
    Resolves parent_group for every group whose parent is part of the given set.

    Groups pointing at a parent outside the set keep parent_group unset. The walk
    from each group towards its root must never revisit a group.

    Args:
        groups (Iterable[RepositoryGroup]): Groups freshly built from storage or an API.

    Returns:
        List[RepositoryGroup]: The same groups, with parent references attached.

    Raises:
        HierarchyCycleError: If the parent links form a cycle (A -> B -> A).
    """
    groups = list(groups)
    by_id: Dict[str, RepositoryGroup] = {group.id: group for group in groups}

    _check_for_cycles(by_id)

    for group in groups:
        if group.is_root:
            continue
        parent = by_id.get(group.parent_group_id)
        if parent is None:
            logger.warning(
                f"Parent group '{group.parent_group_id}' of '{group.id}' is not loaded; leaving it unresolved."
            )
            continue
        group.attach_parent(parent)

    return groups


def _check_for_cycles(by_id: Dict[str, RepositoryGroup]) -> None:
    # Groups already proven to reach a root (or an unknown parent).
    acyclic = set()

    for start_id in by_id:
        path: List[str] = []
        on_path = set()
        current_id = start_id

        while current_id in by_id and current_id not in acyclic:
            if current_id in on_path:
                cycle = path[path.index(current_id):] + [current_id]
                raise HierarchyCycleError(cycle)
            path.append(current_id)
            on_path.add(current_id)
            current_id = by_id[current_id].parent_group_id

        acyclic.update(path)
