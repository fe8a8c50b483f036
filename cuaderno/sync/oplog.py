"""Append-only JSONL log of the transfers made by sync passes.

Each line is one ``SyncOperation``. The CLI reads it back through
``recent()`` for ``cuaderno log`` and ``summary()`` for ``cuaderno status``;
the engine calls ``prune()`` after every successful pass.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Literal

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

LOG_FILE_NAME = ".sync-log.jsonl"

OpType = Literal["pull", "push", "delete_local", "conflict", "resolve"]
OpStatus = Literal["success", "failed", "conflict"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOperation(BaseModel):
    """One line of the log."""

    op_type: OpType
    entity_id: str
    status: OpStatus
    entity_kind: str | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status == "failed"


@dataclass
class LogSummary:
    """What ``cuaderno status`` shows about past passes."""

    total: int
    last_activity: datetime | None
    failures_last_day: int


class SyncOperationLog:
    """Operation log stored at ``<data_dir>/.sync-log.jsonl``."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self.log_file = self.base_dir / LOG_FILE_NAME

    def record(
        self,
        op_type: OpType,
        entity_id: str,
        status: OpStatus,
        *,
        entity_kind: str | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SyncOperation:
        """Append one operation.

        Raises:
            OSError: If the log file cannot be written
        """
        operation = SyncOperation(
            op_type=op_type,
            entity_id=entity_id,
            status=status,
            entity_kind=entity_kind,
            error=error,
            metadata=metadata or {},
        )
        self.base_dir.mkdir(parents=True, exist_ok=True)
        with open(self.log_file, "a") as f:
            f.write(operation.model_dump_json() + "\n")

        logger.debug(f"Logged {op_type} of {entity_id} ({status})")
        return operation

    def _iter(self) -> Iterator[SyncOperation]:
        if not self.log_file.exists():
            return
        with open(self.log_file) as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    yield SyncOperation.model_validate_json(line)
                except ValidationError as e:
                    logger.warning(f"Skipping invalid log entry: {e.error_count()} errors")

    def recent(
        self,
        limit: int = 50,
        *,
        entity_id: str | None = None,
        failed_only: bool = False,
    ) -> list[SyncOperation]:
        """
        Newest operations first.

        Args:
            limit: Maximum number of operations to return
            entity_id: Only operations on this entity (prefix match, so the
                short ids shown by ``cuaderno tree`` work)
            failed_only: Only failed operations

        Returns:
            Matching operations, newest first
        """
        matches = [
            op
            for op in self._iter()
            if (entity_id is None or op.entity_id.startswith(entity_id))
            and (not failed_only or op.failed)
        ]
        return matches[::-1][:limit]

    def summary(self) -> LogSummary:
        day_ago = _utcnow() - timedelta(hours=24)
        total, last, failures = 0, None, 0
        for op in self._iter():
            total += 1
            last = op.timestamp
            if op.failed and op.timestamp > day_ago:
                failures += 1
        return LogSummary(total=total, last_activity=last, failures_last_day=failures)

    def prune(self, keep_days: int = 7) -> int:
        """Forget successful operations older than ``keep_days``.

        Failures and conflicts stay until the file is removed.

        Returns:
            Number of operations removed
        """
        operations = list(self._iter())
        cutoff = _utcnow() - timedelta(days=keep_days)
        kept = [op for op in operations if op.status != "success" or op.timestamp > cutoff]
        if len(kept) == len(operations):
            return 0

        with open(self.log_file, "w") as f:
            f.writelines(op.model_dump_json() + "\n" for op in kept)
        removed = len(operations) - len(kept)
        logger.info(f"Pruned {removed} old operations from the sync log")
        return removed
