"""Named graph versions with rollback."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from marathon.domain.models import GraphSnapshot, utcnow

if TYPE_CHECKING:
    from marathon.services.graph_store import GraphStore

logger = logging.getLogger(__name__)

INITIAL_VERSION = "1.0.0"


class WorkflowVersion(BaseModel):
    """A labelled, immutable snapshot of a graph."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    version: str
    timestamp: datetime = Field(default_factory=utcnow)
    created_by: str = "current-user"
    description: str = ""
    snapshot: GraphSnapshot
    rollback_point: bool = False


def increment_version(version: str) -> str:
    """Bump the patch component: ``1.0.0`` -> ``1.0.1``."""
    major, minor, patch = (int(part) for part in version.split("."))
    return f"{major}.{minor}.{patch + 1}"


def _version_key(version: str) -> tuple[int, ...]:
    return tuple(int(part) for part in version.split("."))


class VersionHistory:
    """Version list for one graph.

    ``current`` follows the last created or rolled-back version; new versions
    are numbered after the highest existing one so labels stay unique.
    """

    def __init__(self, current: str = INITIAL_VERSION) -> None:
        self.current = current
        self._versions: list[WorkflowVersion] = []

    def create_version(
        self,
        store: GraphStore,
        description: str = "",
        *,
        rollback_point: bool = False,
        created_by: str = "current-user",
    ) -> WorkflowVersion:
        latest = max([self.current, *(v.version for v in self._versions)], key=_version_key)
        version = WorkflowVersion(
            id=f"version-{uuid.uuid4().hex[:8]}",
            version=increment_version(latest),
            created_by=created_by,
            description=description,
            snapshot=store.snapshot(),
            rollback_point=rollback_point,
        )
        self._versions.append(version)
        self.current = version.version
        logger.info("Created version %s: %s", version.version, description)
        return version

    def get(self, version_id: str) -> WorkflowVersion | None:
        for version in self._versions:
            if version.id == version_id:
                return version
        return None

    def rollback(self, store: GraphStore, version_id: str) -> WorkflowVersion | None:
        """Restore a version into ``store`` as an undoable edit."""
        version = self.get(version_id)
        if version is None:
            return None
        store.apply(version.snapshot)
        self.current = version.version
        logger.info("Rolled back to version %s", version.version)
        return version

    def list(self) -> list[WorkflowVersion]:
        """Versions, oldest first."""
        return list(self._versions)

    def rollback_points(self) -> list[WorkflowVersion]:
        return [v for v in self._versions if v.rollback_point]

    def __len__(self) -> int:
        return len(self._versions)
