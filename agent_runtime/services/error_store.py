"""Storage contract for aggregated error records."""
from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Tuple

from agent_runtime.core.models import ErrorRecord


class ErrorStore(Protocol):
    """Persistence used by the error handler; backends own their schema."""

    async def save(self, record: ErrorRecord) -> None: ...

    async def get(self, error_id: str) -> Optional[ErrorRecord]: ...

    async def find(self, key: Tuple) -> Optional[ErrorRecord]: ...

    async def list(self, include_resolved: bool = True) -> List[ErrorRecord]: ...


class InMemoryErrorStore:
    """Process-local store; records live as long as the runtime."""

    def __init__(self) -> None:
        self._records: Dict[str, ErrorRecord] = {}
        self._by_key: Dict[Tuple, str] = {}

    async def save(self, record: ErrorRecord) -> None:
        self._records[record.id] = record
        if record.resolved:
            if self._by_key.get(record.key) == record.id:
                del self._by_key[record.key]
        else:
            self._by_key[record.key] = record.id

    async def get(self, error_id: str) -> Optional[ErrorRecord]:
        return self._records.get(error_id)

    async def find(self, key: Tuple) -> Optional[ErrorRecord]:
        error_id = self._by_key.get(key)
        return self._records.get(error_id) if error_id else None

    async def list(self, include_resolved: bool = True) -> List[ErrorRecord]:
        records = sorted(self._records.values(), key=lambda record: record.first_seen)
        if include_resolved:
            return records
        return [record for record in records if not record.resolved]

    def __len__(self) -> int:
        return len(self._records)
