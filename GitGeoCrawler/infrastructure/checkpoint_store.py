"""
JSON file store for the crawl checkpoint.
"""

import logging
from pathlib import Path
from typing import Union

from core.entities import Checkpoint
from core.errors import PersistenceError
from infrastructure.json_files import atomic_write_json, read_json

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    Persists one Checkpoint per crawl lineage. A missing file is a first run.
    """

    def __init__(self, path: Union[str, Path] = "run_progress.json"):
        self.path = Path(path)

    def load(self) -> Checkpoint:
        """
        Load the checkpoint, or a fresh one if none was saved yet.

        Raises:
            PersistenceError: If the file exists but is unreadable or corrupt
        """
        data = read_json(self.path, default=None)
        if data is None:
            logger.info(f"No checkpoint at {self.path}, starting a new crawl")
            return Checkpoint()

        if not isinstance(data, dict):
            raise PersistenceError(f"Checkpoint {self.path} is not a JSON object")
        try:
            checkpoint = Checkpoint.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Checkpoint {self.path} is corrupt: {e}") from e

        logger.info(
            f"Loaded checkpoint: {len(checkpoint.completed_work_items)} items completed, "
            f"{len(checkpoint.failed_work_items)} failed"
        )
        return checkpoint

    def save(self, checkpoint: Checkpoint):
        """Atomically overwrite the checkpoint file."""
        atomic_write_json(self.path, checkpoint.to_dict())
        logger.debug(
            f"Saved checkpoint: {len(checkpoint.completed_work_items)} completed, "
            f"{checkpoint.requests_this_run}/{checkpoint.request_budget_per_run} requests"
        )

    def reset(self):
        """Delete the checkpoint (explicit operator reset)."""
        try:
            self.path.unlink()
            logger.info(f"Checkpoint {self.path} deleted")
        except FileNotFoundError:
            logger.info(f"No checkpoint at {self.path} to delete")
        except OSError as e:
            raise PersistenceError(f"Could not delete {self.path}: {e}") from e
