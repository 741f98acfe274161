"""Change events delivered by the progress change feed."""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


class Topic(str, Enum):
    """Watched tables. The value doubles as the NOTIFY channel name."""
    PROGRESS_ENTRIES = "progress_entries"
    CLASS_AVERAGES = "class_averages"


class OperationKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "OperationKind":
        if not isinstance(value, str):
            return cls.UNKNOWN
        try:
            return cls(value.lower())
        except ValueError:
            return cls.UNKNOWN


class ChangeEvent(BaseModel):
    """A row change on a watched table. Transient, never persisted."""

    table: str
    operation: OperationKind = OperationKind.UNKNOWN
    class_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_notification(cls, channel: str, raw: Union[str, Dict[str, Any]]) -> "ChangeEvent":
        """
        Build an event from a NOTIFY payload.

        The payload is the JSON written by ``notify_row_change()``; anything that
        does not parse still yields an event for ``channel`` with operation
        ``unknown`` so the caches are invalidated anyway.
        """
        payload: Dict[str, Any]
        if isinstance(raw, dict):
            payload = raw
        else:
            try:
                decoded = json.loads(raw) if raw else {}
                payload = decoded if isinstance(decoded, dict) else {"value": decoded}
            except json.JSONDecodeError:
                logger.warning(f"Undecodable notification on {channel}: {raw!r}")
                payload = {"raw": raw}

        record = payload.get("new") or payload.get("old") or {}
        class_id = record.get("class_id") if isinstance(record, dict) else None

        table = payload.get("table")
        if not isinstance(table, str) or not table:
            table = channel

        return cls(
            table=table,
            operation=OperationKind.parse(payload.get("operation")),
            class_id=str(class_id) if class_id is not None else None,
            payload=payload,
        )
