"""
State change listeners.

LoggingStateChangeListener writes one log line per state change.
AuditTrail keeps every change in memory and exports it as a DataFrame/CSV.

Listeners run inside the entity lock, so they only log or append.
"""

import logging
import threading
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, List, Optional

import pandas as pd

from fsm import current_entity

logger = logging.getLogger(__name__)

AUDIT_COLUMNS = ["timestamp", "entity_id", "previous_state", "new_state", "event"]


class LoggingStateChangeListener:
    """Logs every state change."""

    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.INFO):
        self._log = log or logger
        self._level = level

    def __call__(self, previous_state: Optional[Enum], new_state: Enum,
                 event: Optional[Enum]) -> None:
        if previous_state is None:
            self._log.log(self._level, f"State changed to: {new_state.name}")
        else:
            self._log.log(self._level,
                          f"State changed from: {previous_state.name}, to: {new_state.name}")


@dataclass(frozen=True)
class AuditEntry:
    timestamp: float
    entity_id: Any
    previous_state: Optional[str]
    new_state: str
    event: Optional[str]


class AuditTrail:
    """
    Records state changes for later inspection.

    The entity id is taken from fsm.current_entity(), which the state machine
    sets while its listeners run.
    """

    def __init__(self, clock=time.time):
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()
        self._clock = clock

    def __call__(self, previous_state: Optional[Enum], new_state: Enum,
                 event: Optional[Enum]) -> None:
        entry = AuditEntry(
            timestamp=self._clock(),
            entity_id=current_entity(),
            previous_state=previous_state.name if previous_state is not None else None,
            new_state=new_state.name,
            event=event.name if event is not None else None,
        )
        with self._lock:
            self._entries.append(entry)

    @property
    def entries(self) -> List[AuditEntry]:
        """Return a copy of the recorded entries."""
        with self._lock:
            return self._entries.copy()

    def entries_for(self, entity_id: Any) -> List[AuditEntry]:
        return [e for e in self.entries if e.entity_id == entity_id]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def to_frame(self) -> pd.DataFrame:
        """All entries as a DataFrame, one row per state change."""
        rows = [asdict(e) for e in self.entries]
        df = pd.DataFrame(rows, columns=AUDIT_COLUMNS)
        if not df.empty:
            df["timestamp"] = pd.to_datetime(df["timestamp"], unit="s")
        return df

    def to_csv(self, path: str) -> int:
        """Write entries to path. Returns the number of rows written."""
        df = self.to_frame()
        df.to_csv(path, index=False)
        logger.info(f"Wrote {len(df)} audit rows to {path}")
        return len(df)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
