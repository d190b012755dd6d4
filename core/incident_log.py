"""
Incident Log for Questline.

Out-of-band record of cascade failures and degraded generation, kept for
operator re-drive. Entries are appended to <data_dir>/incidents.jsonl;
resolutions are appended as separate entries and folded in on query.
"""
import json
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from core.logger import format_fields, get_logger
from interface.notifiers.base import BaseNotifier, Notification, NotificationPriority

logger = get_logger("incident_log")

INCIDENT_LOG_FILE = "incidents.jsonl"


class IncidentKind(str, Enum):
    CASCADE_FAILED = "cascade_failed"                      # 级联中途失败，任务写入已生效
    TASK_GENERATION_DEGRADED = "task_generation_degraded"  # 里程碑没有任务，可重试
    ROADMAP_FAILED = "roadmap_failed"                      # 路线图生成失败或超时


_PRIORITY = {
    IncidentKind.CASCADE_FAILED: NotificationPriority.HIGH,
    IncidentKind.TASK_GENERATION_DEGRADED: NotificationPriority.NORMAL,
    IncidentKind.ROADMAP_FAILED: NotificationPriority.HIGH,
}


@dataclass
class Incident:
    """A single incident entry."""
    incident_id: str
    kind: str
    entity: str
    entity_id: str
    message: str
    user_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""
    resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class IncidentReporter:
    """Append-only incident store plus notifier fan-out."""

    def __init__(
        self,
        path: Optional[Path] = None,
        notifiers: Optional[Sequence[BaseNotifier]] = None,
    ):
        self.path = path
        self.notifiers = list(notifiers or [])
        self._memory: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    @classmethod
    def for_data_dir(
        cls, data_dir: Optional[Path], notifiers: Optional[Sequence[BaseNotifier]] = None
    ) -> "IncidentReporter":
        path = data_dir / INCIDENT_LOG_FILE if data_dir is not None else None
        return cls(path, notifiers)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    def _append(self, entry: Dict[str, Any]) -> None:
        with self._lock:
            if self.path is None:
                self._memory.append(entry)
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def _entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            if self.path is None:
                return [dict(e) for e in self._memory]
            if not self.path.exists():
                return []
            entries = []
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(json.loads(line))
                    except json.JSONDecodeError:
                        logger.warning(f"Skipping corrupt incident line in {self.path}")
            return entries

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------
    def record(
        self,
        kind: IncidentKind,
        entity: str,
        entity_id: str,
        message: str,
        user_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Incident:
        """Persist an incident and hand it to every available notifier."""
        incident = Incident(
            incident_id=uuid.uuid4().hex[:12],
            kind=IncidentKind(kind).value,
            entity=entity,
            entity_id=entity_id,
            message=message,
            user_id=user_id,
            context=context or {},
            timestamp=datetime.now().isoformat(),
        )
        self._append(incident.to_dict())
        logger.warning(
            f"Incident {incident.kind}: {message} "
            + format_fields(entity=entity, entity_id=entity_id, user_id=user_id)
        )
        self._notify(incident)
        return incident

    def resolve(self, entity_id: str, kind: Optional[IncidentKind] = None) -> int:
        """Mark open incidents for ``entity_id`` resolved; returns how many."""
        open_ids = [
            i.incident_id
            for i in self.query(kind=kind, entity_id=entity_id)
        ]
        for incident_id in open_ids:
            self._append({
                "type": "resolution",
                "incident_id": incident_id,
                "timestamp": datetime.now().isoformat(),
            })
        return len(open_ids)

    def query(
        self,
        kind: Optional[IncidentKind] = None,
        entity_id: Optional[str] = None,
        include_resolved: bool = False,
        limit: int = 100,
    ) -> List[Incident]:
        """
        Query incidents, newest last.

        Args:
            kind: Filter by incident kind
            entity_id: Filter by affected entity
            include_resolved: Also return incidents that have been resolved
            limit: Maximum number of results (default: 100, 经验值)
        """
        entries = self._entries()
        resolved = {e["incident_id"] for e in entries if e.get("type") == "resolution"}
        wanted_kind = IncidentKind(kind).value if kind else None

        results = []
        for entry in entries:
            if entry.get("type") == "resolution":
                continue
            if wanted_kind and entry.get("kind") != wanted_kind:
                continue
            if entity_id and entry.get("entity_id") != entity_id:
                continue
            is_resolved = entry.get("incident_id") in resolved
            if is_resolved and not include_resolved:
                continue
            entry = {k: v for k, v in entry.items() if k in Incident.__dataclass_fields__}
            entry["resolved"] = is_resolved
            results.append(Incident(**entry))

        return results[-limit:] if limit else results

    def _notify(self, incident: Incident) -> None:
        notification = Notification(
            title=f"Questline incident: {incident.kind}",
            message=incident.message,
            priority=_PRIORITY[IncidentKind(incident.kind)],
            action_required=True,
            data={"entity": incident.entity, "entity_id": incident.entity_id},
        )
        for notifier in self.notifiers:
            if not notifier.is_available():
                continue
            # 通知失败只记录，不能影响触发它的级联
            try:
                notifier.send(notification)
            except Exception:
                logger.exception(f"Notifier {notifier.get_name()} raised while sending")
