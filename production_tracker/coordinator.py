"""Bulk and single-unit production commands.

Every command follows the same shape: resolve the serials against the store
using the command's precondition, validate each unit against the transition
table, commit all updates at once, then notify observers.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .broadcaster import ProductionUpdate
from .errors import (
    ConcurrentUpdateError,
    ErrorCode,
    HTTP_STATUS,
    SerialError,
    TrackingStoreError,
)
from .models import utcnow
from .states import Action, Stage, Status
from .transitions import reject_action

log = logging.getLogger(__name__)

FIRMWARE_STATUSES = (Status.FIRMWARE_UPLOAD, Status.FIRMWARE_UPLOADING)


@dataclass
class OperationResult:
    success: bool
    message: str
    error_code: Optional[ErrorCode] = None
    errors: list = field(default_factory=list)
    data: Optional[dict] = None

    @classmethod
    def ok(cls, message, data=None):
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, error_code, message, errors=()):
        return cls(success=False, message=message, error_code=error_code, errors=list(errors))

    @property
    def http_status(self) -> int:
        return 200 if self.success else HTTP_STATUS[self.error_code]

    def to_dict(self) -> dict:
        body = {'success': self.success, 'message': self.message}
        if self.error_code is not None:
            body['errorCode'] = self.error_code.value
        if self.errors:
            body['errors'] = [e.to_dict() for e in self.errors]
        if self.data is not None:
            body['data'] = self.data
        return body


def normalize_serials(serials):
    """Strip and de-duplicate serials, keeping request order.

    Returns ``(serials, problem)``; ``problem`` is a message when the input
    cannot be used.
    """
    if isinstance(serials, str) or not isinstance(serials, (list, tuple, set, frozenset)):
        return [], 'device_serials must be a list of strings'
    cleaned = []
    for serial in serials:
        if not isinstance(serial, str) or not serial.strip():
            return [], 'device_serials must contain only non-empty strings'
        serial = serial.strip()
        if serial not in cleaned:
            cleaned.append(serial)
    if not cleaned:
        return [], 'device_serials must not be empty'
    return cleaned, None


def _read_failed(error):
    log.error('Reading tracking records failed: %s', error)
    return OperationResult.fail(ErrorCode.INTERNAL_ERROR, str(error))


def _state_label(stage, status):
    parts = [getattr(p, 'value', p) for p in (stage, status) if p is not None]
    return '/'.join(parts) or 'any state'


class ProductionTracker:
    def __init__(self, store, engine, broadcaster, clock=utcnow):
        self.store = store
        self.engine = engine
        self.broadcaster = broadcaster
        self.clock = clock

    # -- bulk commands --------------------------------------------------

    def approve_pending(self, serials, employee_id) -> OperationResult:
        return self._bulk(serials, Action.APPROVE, employee_id, 'approved for assembly',
                          stage=Stage.PENDING, status=Status.PENDING)

    def reject_for_qc(self, serials, reason, note, employee_id) -> OperationResult:
        return self._bulk(serials, reject_action(reason), employee_id, 'rejected by QC',
                          note=note, stage=Stage.QC)

    def cancel_pending(self, serials, note, employee_id) -> OperationResult:
        return self._bulk(serials, Action.CANCEL, employee_id, 'cancelled',
                          note=note, stage=Stage.PENDING, status=Status.PENDING)

    def approve_tested(self, serials, note, employee_id) -> OperationResult:
        return self._bulk(serials, Action.PASS, employee_id, 'approved after testing',
                          note=note, stage=Stage.QC, status=Status.TESTING)

    def _bulk(self, serials, action, employee_id, verb, note=None, stage=None, status=None):
        serials, problem = normalize_serials(serials)
        if problem:
            return OperationResult.fail(ErrorCode.BAD_REQUEST, problem)

        try:
            units = self.store.find_by_serials(serials, stage=stage, status=status)
        except TrackingStoreError as e:
            return _read_failed(e)
        if len(units) != len(serials):
            found = {unit.device_serial for unit in units}
            missing = [s for s in serials if s not in found]
            required = _state_label(stage, status)
            log.info('%s rejected: %d serial(s) not found in %s', action.value, len(missing), required)
            return OperationResult.fail(
                ErrorCode.NOT_FOUND,
                f'{len(missing)} of {len(serials)} serials not found in {required}',
                [SerialError(serial=s, reason=f'not found in {required}') for s in missing],
            )

        errors = [e for e in (self.engine.validate(unit, action) for unit in units) if e]
        if errors:
            log.info('%s rejected: %d invalid transition(s)', action.value, len(errors))
            return OperationResult.fail(
                ErrorCode.INVALID_TRANSITION,
                f'{len(errors)} of {len(serials)} serials cannot be {verb}',
                errors,
            )

        now = self.clock()
        updates = [self.engine.plan(unit, action, employee_id, now, note) for unit in units]
        return self._commit(updates, f'{len(updates)} serial(s) {verb}')

    # -- single unit commands -------------------------------------------

    def advance_serial(self, serial, employee_id) -> OperationResult:
        return self._single(serial, Action.ADVANCE, employee_id, 'advanced')

    def report_firmware_failure(self, serial, note, employee_id) -> OperationResult:
        return self._single(serial, Action.FIRMWARE_FAILURE, employee_id,
                            'sent back for fixing', note=note)

    def _single(self, serial, action, employee_id, verb, note=None):
        if not isinstance(serial, str) or not serial.strip():
            return OperationResult.fail(ErrorCode.BAD_REQUEST, 'device_serial is required')
        serial = serial.strip()
        try:
            unit = self.store.find_by_serial(serial)
        except TrackingStoreError as e:
            return _read_failed(e)
        if unit is None:
            return OperationResult.fail(
                ErrorCode.NOT_FOUND, f'Serial {serial} not found',
                [SerialError(serial=serial, reason='not found')],
            )
        error = self.engine.validate(unit, action)
        if error is not None:
            return OperationResult.fail(ErrorCode.INVALID_TRANSITION, error.reason, [error])
        update = self.engine.plan(unit, action, employee_id, self.clock(), note)
        return self._commit([update], f'{serial} {verb} to {update.stage}/{update.status}')

    def _commit(self, updates, message):
        try:
            self.store.apply_all(updates)
        except ConcurrentUpdateError as e:
            log.warning('%s', e)
            return OperationResult.fail(
                ErrorCode.CONFLICT, str(e),
                [SerialError(serial=s, reason='changed by another operation') for s in e.serials],
            )
        except TrackingStoreError as e:
            log.exception('Tracking commit failed')
            return OperationResult.fail(ErrorCode.INTERNAL_ERROR, str(e))

        log.info(message)
        for update in updates:
            self.broadcaster.publish(ProductionUpdate.from_update(update))
        return OperationResult.ok(message, data={
            'device_serials': [u.device_serial for u in updates],
        })

    # -- queries ----------------------------------------------------------

    def get_tracking_by_batch(self, batch_id) -> dict:
        grouped = {stage.value: [] for stage in Stage}
        for unit in self.store.find_by_batch(batch_id):
            grouped.setdefault(unit.stage, []).append(unit.to_dict())
        return grouped

    def stage_totals(self, batch_id=None) -> dict:
        counts = self.store.count_by_stage(batch_id)
        return {stage.value: counts.get(stage.value, 0) for stage in Stage}

    def get_unit(self, serial):
        return self.store.find_by_serial(serial)

    def schedule_units(self, batch_id, serials, employee_id=None) -> OperationResult:
        serials, problem = normalize_serials(serials)
        if problem:
            return OperationResult.fail(ErrorCode.BAD_REQUEST, problem)
        try:
            existing = self.store.find_any_by_serials(serials)
        except TrackingStoreError as e:
            return _read_failed(e)
        if existing:
            return OperationResult.fail(
                ErrorCode.BAD_REQUEST,
                f'{len(existing)} serial(s) are already tracked',
                [SerialError(serial=u.device_serial, stage=u.stage, status=u.status,
                             reason='already tracked (deleted)' if u.is_deleted else 'already tracked')
                 for u in existing],
            )
        try:
            units = self.store.create_units(batch_id, serials, employee_id=employee_id)
        except TrackingStoreError as e:
            log.exception('Scheduling batch %s failed', batch_id)
            return OperationResult.fail(ErrorCode.INTERNAL_ERROR, str(e))
        return OperationResult.ok(f'{len(units)} unit(s) scheduled for batch {batch_id}', data={
            'device_serials': [u.device_serial for u in units],
        })

    def get_serials_needing_firmware(self, batch_id) -> list:
        units = self.store.find_by_batch(batch_id, stage=Stage.ASSEMBLY, statuses=FIRMWARE_STATUSES)
        return [{'device_serial': u.device_serial, 'status': u.status} for u in units]

    def delete_unit(self, serial) -> OperationResult:
        try:
            deleted = self.store.soft_delete(serial)
        except TrackingStoreError as e:
            log.exception('Delete of %s failed', serial)
            return OperationResult.fail(ErrorCode.INTERNAL_ERROR, str(e))
        if not deleted:
            return OperationResult.fail(ErrorCode.NOT_FOUND, f'Serial {serial} not found')
        return OperationResult.ok(f'{serial} deleted')

    # -- observers ----------------------------------------------------------

    def subscribe_to_updates(self, channel=None):
        return self.broadcaster.subscribe(channel)

    def unsubscribe(self, channel) -> bool:
        return self.broadcaster.unsubscribe(channel)
