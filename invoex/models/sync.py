"""
Sync run accounting
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SyncStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class PhaseCounters:
    """Outcome counters for one sync phase"""
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    aborted: bool = False
    errors: List[str] = field(default_factory=list)

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'created': self.created,
            'updated': self.updated,
            'skipped': self.skipped,
            'failed': self.failed,
            'aborted': self.aborted,
            'errors': list(self.errors),
        }


@dataclass
class SyncRunReport:
    """One invocation of the sync workflow; persisted append-only"""
    window_start: datetime
    window_end: datetime
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: SyncStatus = SyncStatus.RUNNING
    phases: Dict[str, PhaseCounters] = field(default_factory=dict)
    id: Optional[str] = None

    def phase(self, name: str) -> PhaseCounters:
        if name not in self.phases:
            self.phases[name] = PhaseCounters()
        return self.phases[name]

    @property
    def errors(self) -> List[str]:
        return [f"{name}: {error}" for name, counters in self.phases.items() for error in counters.errors]

    def finish(self, completed_at: datetime) -> None:
        self.completed_at = completed_at
        phases = list(self.phases.values())
        if phases and all(p.aborted for p in phases):
            self.status = SyncStatus.FAILED
        elif any(p.aborted or p.failed for p in phases):
            self.status = SyncStatus.PARTIAL
        else:
            self.status = SyncStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'window_start': self.window_start.isoformat(),
            'window_end': self.window_end.isoformat(),
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'status': self.status.value,
            'phases': {name: counters.to_dict() for name, counters in self.phases.items()},
        }
