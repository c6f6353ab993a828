"""Audit trail collaborator.

Committing operations call :meth:`AuditTrail.record` once per entity they
affect and :meth:`AuditTrail.flush` once per commit. Entries are appended to
the ``audit_log`` collection and saved through the same persistence
collaborator as the business collections.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Callable, List, Optional

from . import log
from .constants import AuditAction, CollectionKey
from .data_manager import AuditEntry


class AuditTrail:
    """Append-only audit log backed by a store exposing ``load``/``save``."""

    def __init__(self, store: Any, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self._entries: Optional[List[AuditEntry]] = None
        self._dirty = False

    def _ensure_entries(self) -> List[AuditEntry]:
        if self._entries is None:
            loaded = self._store.load(CollectionKey.AUDIT_LOG)
            self._entries = list(loaded or [])
        return self._entries

    def entries(self) -> List[AuditEntry]:
        return list(self._ensure_entries())

    def record(
        self,
        action_type: AuditAction | str,
        entity_type: str,
        entity_id: Optional[str],
        details: str,
    ) -> AuditEntry:
        entries = self._ensure_entries()
        moment = self._clock()
        action = action_type.value if isinstance(action_type, AuditAction) else str(action_type)
        entry = AuditEntry(
            entry_id=f"LOG-{moment.strftime('%Y%m%d%H%M%S%f')}-{len(entries) + 1}",
            timestamp_iso=moment.isoformat(),
            action_type=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )
        entries.append(entry)
        self._dirty = True
        log.info("AUDIT %s %s %s: %s", action, entity_type, entity_id or "-", details)
        return entry

    def flush(self) -> None:
        """Save the log if anything was recorded since the last flush."""

        if self._dirty and self._entries is not None:
            self._store.save(CollectionKey.AUDIT_LOG, self._entries)
            self._dirty = False
