"""Append-only decision audit trail."""

from __future__ import annotations

from coach_pipeline.decisions.models import DecisionLogWrite
from coach_pipeline.decisions.repository import DecisionRepository


class DecisionLogger:
    """Single responsibility: append entries. No update or delete is exposed."""

    def __init__(self, repository: DecisionRepository) -> None:
        self._repository = repository

    def append(self, entry: DecisionLogWrite) -> int:
        return self._repository.append_log(entry)
