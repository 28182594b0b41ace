"""
Generation Manager

Owns the per-workspace lifecycle (none) -> BUILDING -> ACTIVE -> ARCHIVED.
At most one generation per workspace is ACTIVE; activation archives the
previous ACTIVE and promotes the new one in a single transaction.
"""

from __future__ import annotations
from typing import List, Optional
import logging

from ..contracts.base import BuildError, ErrorCode, StateError, Timestamp, normalize_workspace_id
from ..contracts.entities import Generation, GenerationStatus
from ..storage import RelationStore

logger = logging.getLogger(__name__)


class GenerationManager:

    def __init__(self, store: RelationStore):
        self._store = store

    def get_active(self, workspace_id: str) -> Optional[int]:
        """Highest ACTIVE version, or None before the first activation."""
        return self._store.get_active_version(workspace_id)

    def get(self, workspace_id: str, version: int) -> Optional[Generation]:
        return self._store.get_generation(workspace_id, version)

    def list_generations(self, workspace_id: str) -> List[Generation]:
        return self._store.list_generations(workspace_id)

    def create_new(self, workspace_id: str) -> int:
        """
        Insert version = (active or 0) + 1 as BUILDING.

        A BUILDING row already at that version is left over from a failed
        build; its partial rows are cleared and the version is reused.
        """
        workspace_id = normalize_workspace_id(workspace_id)
        with self._store.transaction():
            version = (self.get_active(workspace_id) or 0) + 1
            existing = self._store.get_generation(workspace_id, version)
            if existing is None:
                self._store.insert_generation(workspace_id, version, GenerationStatus.BUILDING)
                logger.debug("Generation %s created for workspace %s", version, workspace_id)
                return version
            if existing.status is not GenerationStatus.BUILDING:
                raise BuildError(
                    ErrorCode.BUILD_FAILED,
                    f"generation {version} already exists as {existing.status.value}",
                    workspace_id=workspace_id,
                    version=version,
                )
            removed = self._store.clear_generation_rows(workspace_id, version)
            logger.warning(
                "Reclaiming stale BUILDING generation %s for workspace %s (%d partial edges removed)",
                version, workspace_id, removed,
            )
            return version

    def activate(self, workspace_id: str, version: int):
        """Archive the current ACTIVE generation and promote `version`."""
        workspace_id = normalize_workspace_id(workspace_id)
        with self._store.transaction():
            if self._store.get_generation(workspace_id, version) is None:
                raise StateError(
                    ErrorCode.GENERATION_NOT_FOUND,
                    f"generation {version} not found",
                    workspace_id=workspace_id,
                )
            archived = self._store.archive_active_generations(workspace_id)
            self._store.set_generation_status(
                workspace_id, version, GenerationStatus.ACTIVE, built_at=Timestamp.now()
            )
        logger.info(
            "Generation %s active for workspace %s (%d archived)", version, workspace_id, archived
        )
