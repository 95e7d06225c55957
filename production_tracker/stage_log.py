"""Append-only stage history of a tracked unit.

Entries are stored on the unit as a JSON list; :class:`StageLog` is the
in-memory view used while planning a transition.
"""

from dataclasses import dataclass, asdict, replace
from datetime import datetime
from typing import Iterator, Optional


def _parse_ts(value):
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_ts(value):
    return value.isoformat() if value is not None else None


@dataclass
class StageLogEntry:
    stage: str
    status: str
    started_at: datetime
    employee_id: Optional[str] = None
    approved_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    note: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.completed_at is None

    def to_dict(self) -> dict:
        data = asdict(self)
        data['started_at'] = _format_ts(self.started_at)
        data['completed_at'] = _format_ts(self.completed_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'StageLogEntry':
        return cls(
            stage=data['stage'],
            status=data['status'],
            started_at=_parse_ts(data.get('started_at')),
            employee_id=data.get('employee_id'),
            approved_by=data.get('approved_by'),
            completed_at=_parse_ts(data.get('completed_at')),
            note=data.get('note'),
        )


class StageLog:
    """Ordered transition records, oldest first.

    Only two mutations exist: :meth:`append` and :meth:`close_last`. Nothing
    is ever removed or reordered.
    """

    def __init__(self, entries=None):
        self._entries = list(entries or [])

    @classmethod
    def from_json(cls, raw) -> 'StageLog':
        return cls(StageLogEntry.from_dict(item) for item in (raw or []))

    def to_json(self) -> list:
        return [entry.to_dict() for entry in self._entries]

    def copy(self) -> 'StageLog':
        return StageLog(replace(entry) for entry in self._entries)

    def append(self, entry: StageLogEntry) -> None:
        self._entries.append(entry)

    def close_last(self, approved_by: Optional[str], completed_at: datetime) -> bool:
        """Stamp the last entry as closed.

        Returns False, leaving the log untouched, when there is nothing open
        to close.
        """
        if not self._entries or not self._entries[-1].is_open:
            return False
        last = self._entries[-1]
        last.approved_by = approved_by
        last.completed_at = completed_at
        return True

    @property
    def last(self) -> Optional[StageLogEntry]:
        return self._entries[-1] if self._entries else None

    def open_entries(self) -> list:
        return [entry for entry in self._entries if entry.is_open]

    def __iter__(self) -> Iterator[StageLogEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index):
        return self._entries[index]
