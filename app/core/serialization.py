from __future__ import annotations
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

HEARTBEAT = ": heartbeat\n\n"
CONNECTED = ": connected\n\n"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc(dt: datetime) -> str:
    """ISO-8601 with millisecond precision and a Z suffix, e.g. 2025-01-02T03:04:05.678Z."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class NotificationEvent:
    name: str
    icon: str
    notif: str
    path: str
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[str] = None

    def with_id(self, id: Any, created_at: Optional[datetime] = None) -> "NotificationEvent":
        return replace(self, id=str(id), created_at=created_at or self.created_at)

    def to_message(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {}
        if self.id is not None:
            msg["_id"] = self.id
        msg.update(
            {
                "name": self.name,
                "icon": self.icon,
                "notif": self.notif,
                "path": self.path,
                "data-creation": iso_utc(self.created_at),
            }
        )
        return msg


def format_sse(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"
