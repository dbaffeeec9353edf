"""Project store: durable record of each project's sandbox.

The orchestrator only writes ``external_sandbox_id``, ``public_endpoint`` and
``current_source``; other fields belong to whoever owns the project.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from threading import Lock
from typing import Any, Optional

logger = logging.getLogger("flowpod.store")

ORCHESTRATOR_FIELDS = ("external_sandbox_id", "public_endpoint", "current_source")


@dataclass
class ProjectRecord:
    project_id: str
    name: str = ""
    external_sandbox_id: Optional[str] = None
    public_endpoint: Optional[str] = None
    current_source: Optional[str] = None
    phone_number: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "ProjectRecord":
        known = {f.name for f in fields(cls)}
        extra = dict(data.get("extra") or {})
        extra.update({k: v for k, v in data.items() if k not in known})
        return cls(**{k: v for k, v in data.items() if k in known and k != "extra"}, extra=extra)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WebhookEvent:
    project_id: str
    event_type: str
    data: dict[str, Any]
    created_at: float = field(default_factory=time.time)


class ProjectStore(ABC):
    """get/set access to project records."""

    @abstractmethod
    def get(self, project_id: str) -> Optional[ProjectRecord]:
        pass

    @abstractmethod
    def update(self, project_id: str, **values: Any) -> ProjectRecord:
        """Set fields on a project, creating the record if needed."""
        pass

    @abstractmethod
    def list_projects(self) -> list[ProjectRecord]:
        pass

    @abstractmethod
    def record_event(self, project_id: str, event_type: str, data: dict[str, Any]) -> WebhookEvent:
        pass

    @abstractmethod
    def events(self, project_id: str, limit: int = 50) -> list[WebhookEvent]:
        pass

    def clear_sandbox(self, project_id: str) -> None:
        if self.get(project_id) is not None:
            self.update(project_id, external_sandbox_id=None, public_endpoint=None)

    def find_by_phone_number(self, phone_number: str) -> Optional[ProjectRecord]:
        wanted = _normalize_number(phone_number)
        if not wanted:
            return None
        for record in self.list_projects():
            if record.phone_number and _normalize_number(record.phone_number) == wanted:
                return record
        return None


def _normalize_number(value: Optional[str]) -> str:
    digits = "".join(ch for ch in str(value or "") if ch.isdigit())
    if digits.startswith("00"):
        digits = digits[2:]
    return digits


class InMemoryProjectStore(ProjectStore):
    def __init__(self, max_events: int = 500):
        self.max_events = max_events
        self._projects: dict[str, ProjectRecord] = {}
        self._events: dict[str, list[WebhookEvent]] = {}
        self._lock = Lock()

    def get(self, project_id: str) -> Optional[ProjectRecord]:
        with self._lock:
            rec = self._projects.get(project_id)
            return ProjectRecord.from_dict(rec.to_dict()) if rec else None

    def update(self, project_id: str, **values: Any) -> ProjectRecord:
        known = {f.name for f in fields(ProjectRecord)} - {"project_id"}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown project fields: {', '.join(sorted(unknown))}")
        with self._lock:
            rec = self._projects.get(project_id) or ProjectRecord(project_id=project_id)
            for key, value in values.items():
                setattr(rec, key, value)
            self._projects[project_id] = rec
            self._save()
            return ProjectRecord.from_dict(rec.to_dict())

    def list_projects(self) -> list[ProjectRecord]:
        with self._lock:
            return [ProjectRecord.from_dict(r.to_dict()) for r in self._projects.values()]

    def record_event(self, project_id: str, event_type: str, data: dict[str, Any]) -> WebhookEvent:
        event = WebhookEvent(project_id=project_id, event_type=event_type or "unknown", data=data)
        with self._lock:
            bucket = self._events.setdefault(project_id, [])
            bucket.append(event)
            del bucket[: max(0, len(bucket) - self.max_events)]
            self._save()
        return event

    def events(self, project_id: str, limit: int = 50) -> list[WebhookEvent]:
        with self._lock:
            return list(self._events.get(project_id, [])[-limit:])

    def _save(self) -> None:
        pass


class JsonFileProjectStore(InMemoryProjectStore):
    """Project store persisted to a single JSON file."""

    def __init__(self, path: str | Path, max_events: int = 500):
        super().__init__(max_events=max_events)
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning("Ignoring unreadable project store %s: %s", self.path, e)
            return
        for pid, raw in (data.get("projects") or {}).items():
            self._projects[pid] = ProjectRecord.from_dict({**raw, "project_id": pid})
        for pid, items in (data.get("events") or {}).items():
            self._events[pid] = [WebhookEvent(**item) for item in items]

    def _save(self) -> None:
        data = {
            "projects": {pid: rec.to_dict() for pid, rec in self._projects.items()},
            "events": {pid: [asdict(e) for e in items] for pid, items in self._events.items()},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
        tmp.replace(self.path)
