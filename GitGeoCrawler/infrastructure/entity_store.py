"""
JSON file store holding the deduplicated developer collection.
"""

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Union

from core.entities import Developer, MergeResult
from core.errors import PersistenceError
from infrastructure.json_files import atomic_write_json, read_json

logger = logging.getLogger(__name__)


def by_followers(developer: Developer):
    return (-developer.followers, developer.developer_id)


def by_score(developer: Developer):
    return (-developer.score, -developer.followers, developer.developer_id)


class EntityStore:
    """
    Developers keyed by GitHub id, merged last-writer-wins on every run.
    """

    def __init__(self, path: Union[str, Path] = "developers.json"):
        self.path = Path(path)

    def load(self) -> List[Developer]:
        data = read_json(self.path, default=None)
        if data is None:
            logger.info(f"No result file at {self.path}, starting empty")
            return []
        if not isinstance(data, list):
            raise PersistenceError(f"Result file {self.path} is not a JSON array")
        try:
            developers = [Developer.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Result file {self.path} is corrupt: {e}") from e

        logger.info(f"Loaded {len(developers)} existing developers")
        return developers

    def save(self, developers: List[Developer]):
        atomic_write_json(self.path, [d.to_dict() for d in developers])
        logger.info(f"Saved {len(developers)} developers to {self.path}")

    def merge_and_save(
        self,
        new_developers: List[Developer],
        sort_key: Callable[[Developer], Any] = by_followers,
    ) -> MergeResult:
        """
        Merge freshly fetched developers into the stored collection.

        A known id is replaced only when a tracked profile attribute changed
        or new project data arrived. Project data is kept when the incoming
        record was never enriched.

        Args:
            new_developers: Developers fetched during this run
            sort_key: Ordering of the persisted collection

        Returns:
            MergeResult with the full sorted collection and change counts
        """
        merged: Dict[int, Developer] = {
            d.developer_id: d for d in self.load()
        }
        inserted = 0
        updated = 0

        for developer in new_developers:
            existing = merged.get(developer.developer_id)
            if existing is None:
                merged[developer.developer_id] = developer
                inserted += 1
                continue

            candidate = developer
            if developer.projects is None and existing.projects is not None:
                candidate = replace(
                    developer,
                    projects=list(existing.projects),
                    enriched_at=existing.enriched_at,
                    total_stars=existing.total_stars,
                    total_forks=existing.total_forks,
                )
                candidate.recompute_score()

            new_projects = (
                developer.projects is not None
                and developer.projects != existing.projects
            )
            if candidate.has_changed_from(existing) or new_projects:
                merged[developer.developer_id] = candidate
                updated += 1

        result = sorted(merged.values(), key=sort_key)
        logger.info(f"Merge completed: {inserted} new developers, {updated} updated")

        self.save(result)
        return MergeResult(developers=result, inserted=inserted, updated=updated)
