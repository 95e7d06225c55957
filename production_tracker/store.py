"""Persistence gateway for tracked units.

:meth:`TrackingStore.apply_all` is the only way a unit's stage changes. It
commits a whole batch of updates or nothing, and refuses the batch if any
row moved on since it was read.
"""

import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import ConcurrentUpdateError, TrackingStoreError
from .models import TrackedUnit, utcnow
from .stage_log import StageLog, StageLogEntry
from .states import Stage, Status

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitUpdate:
    production_id: str
    device_serial: str
    version: int
    stage: str
    status: str
    state_logs: list
    updated_at: datetime


def _value(item):
    return getattr(item, 'value', item)


def _reading(method):
    """Turn database errors raised by a read into TrackingStoreError."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as e:
            self.session.rollback()
            raise TrackingStoreError(f"Reading tracking records failed: {e}") from e

    return wrapper


class TrackingStore:
    def __init__(self, session):
        self.session = session

    def _active(self):
        return self.session.query(TrackedUnit).filter_by(is_deleted=False)

    @_reading
    def find_by_serials(self, serials: Iterable[str], stage=None, status=None) -> list:
        """Return the units among ``serials`` that match the filter.

        Missing, deleted and non-matching serials are silently left out;
        callers compare cardinalities to detect them.
        """
        serials = list(serials)
        if not serials:
            return []
        query = self._active().filter(TrackedUnit.device_serial.in_(serials))
        if stage is not None:
            query = query.filter(TrackedUnit.stage == _value(stage))
        if status is not None:
            query = query.filter(TrackedUnit.status == _value(status))
        return query.order_by(TrackedUnit.device_serial).all()

    @_reading
    def find_any_by_serials(self, serials: Iterable[str]) -> list:
        """Like :meth:`find_by_serials` but soft-deleted units are included."""
        serials = list(serials)
        if not serials:
            return []
        return (
            self.session.query(TrackedUnit)
            .filter(TrackedUnit.device_serial.in_(serials))
            .order_by(TrackedUnit.device_serial)
            .all()
        )

    @_reading
    def find_by_serial(self, serial: str) -> Optional[TrackedUnit]:
        return self._active().filter_by(device_serial=serial).first()

    @_reading
    def find_by_batch(self, batch_id: str, stage=None, statuses=None) -> list:
        query = self._active().filter_by(production_batch_id=batch_id)
        if stage is not None:
            query = query.filter(TrackedUnit.stage == _value(stage))
        if statuses:
            query = query.filter(TrackedUnit.status.in_([_value(s) for s in statuses]))
        return query.order_by(TrackedUnit.device_serial).all()

    def create_units(self, batch_id: Optional[str], serials: Iterable[str],
                     employee_id: Optional[str] = None) -> list:
        now = utcnow()
        units = []
        for serial in serials:
            stage_log = StageLog()
            stage_log.append(StageLogEntry(
                stage=Stage.PENDING.value,
                status=Status.PENDING.value,
                started_at=now,
                employee_id=employee_id,
            ))
            unit = TrackedUnit(
                device_serial=serial,
                production_batch_id=batch_id,
                stage=Stage.PENDING.value,
                status=Status.PENDING.value,
                state_logs=stage_log.to_json(),
                created_at=now,
                updated_at=now,
            )
            self.session.add(unit)
            units.append(unit)
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise TrackingStoreError(f'Could not create units for batch {batch_id}: {e.orig}') from e
        log.info('Scheduled %d units for batch %s', len(units), batch_id)
        return units

    def apply_all(self, updates: Iterable[UnitUpdate]) -> None:
        updates = list(updates)
        stale = []
        try:
            for item in updates:
                result = self.session.execute(
                    update(TrackedUnit)
                    .where(
                        TrackedUnit.production_id == item.production_id,
                        TrackedUnit.version == item.version,
                        TrackedUnit.is_deleted == False,  # noqa: E712
                    )
                    .values(
                        stage=item.stage,
                        status=item.status,
                        state_logs=item.state_logs,
                        version=TrackedUnit.version + 1,
                        updated_at=item.updated_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    stale.append(item.device_serial)
            if stale:
                self.session.rollback()
                raise ConcurrentUpdateError(stale)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise TrackingStoreError(f'Commit of {len(updates)} tracking updates failed: {e}') from e

    @_reading
    def count_by_stage(self, batch_id=None) -> dict:
        query = self.session.query(TrackedUnit.stage, func.count(TrackedUnit.production_id)).filter(
            TrackedUnit.is_deleted == False  # noqa: E712
        )
        if batch_id is not None:
            query = query.filter(TrackedUnit.production_batch_id == batch_id)
        return dict(query.group_by(TrackedUnit.stage).all())

    def soft_delete(self, serial: str) -> bool:
        try:
            result = self.session.execute(
                update(TrackedUnit)
                .where(TrackedUnit.device_serial == serial, TrackedUnit.is_deleted == False)  # noqa: E712
                .values(is_deleted=True, version=TrackedUnit.version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise TrackingStoreError(f'Could not delete {serial}: {e}') from e
        return result.rowcount == 1
