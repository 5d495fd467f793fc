"""Serializable assigner state and its JSON file store."""

from __future__ import annotations

import os
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger()


class AssignerPhase(StrEnum):
    PLANNING = "planning"
    ASSIGNING = "assigning"
    SNAPSHOT_DONE = "snapshot_done"


class LeaseState(BaseModel):
    reader_id: str
    split_id: str
    collection_id: str


class AssignerCheckpoint(BaseModel):
    """Everything needed to rebuild an assigner on top of re-planned splits.

    Splits themselves are not stored; planning is deterministic, so only
    their ids are recorded and matched up again on restore.
    """

    phase: AssignerPhase = AssignerPhase.PLANNING
    collections: dict[str, list[str]] = Field(default_factory=dict)
    finished: list[str] = Field(default_factory=list)
    leases: list[LeaseState] = Field(default_factory=list)
    # split id -> encoded key position reported on completion
    positions: dict[str, Any] = Field(default_factory=dict)
    failed: dict[str, str] = Field(default_factory=dict)
    completion_emitted: bool = False


class FileCheckpointStore:
    """Stores a single assigner checkpoint as a JSON file.

    Writes go to a sibling temp file and are renamed into place, so a crash
    mid-write leaves the previous checkpoint intact.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> AssignerCheckpoint | None:
        if not self._path.exists():
            return None
        checkpoint = AssignerCheckpoint.model_validate_json(self._path.read_text())
        logger.info(
            "checkpoint.loaded",
            path=str(self._path),
            phase=checkpoint.phase.value,
            finished=len(checkpoint.finished),
        )
        return checkpoint

    def save(self, checkpoint: AssignerCheckpoint) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(checkpoint.model_dump_json(indent=2))
        os.replace(tmp, self._path)
        logger.debug("checkpoint.saved", path=str(self._path))
