"""Production state machine.

States are ``(stage, status)`` pairs. Every legal move is a row in
:data:`TRANSITIONS`; anything missing from the table is rejected.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .errors import InvalidTransition, SerialError
from .stage_log import StageLog, StageLogEntry
from .states import Action, Stage, Status
from .store import UnitUpdate

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    stage: Stage
    status: Status
    # states passed through on the way, each recorded as an already closed entry
    via: tuple = ()
    # the new entry is closed as soon as it is written
    closed_on_entry: bool = False


TRANSITIONS = {
    (Stage.PENDING, Status.PENDING, Action.APPROVE):
        Transition(Stage.ASSEMBLY, Status.IN_PROGRESS),
    (Stage.PENDING, Status.PENDING, Action.CANCEL):
        Transition(Stage.PENDING, Status.FAILED, closed_on_entry=True),
    (Stage.ASSEMBLY, Status.IN_PROGRESS, Action.ADVANCE):
        Transition(Stage.ASSEMBLY, Status.FIRMWARE_UPLOAD),
    (Stage.ASSEMBLY, Status.FIRMWARE_UPLOAD, Action.ADVANCE):
        Transition(Stage.ASSEMBLY, Status.FIRMWARE_UPLOADING),
    (Stage.ASSEMBLY, Status.FIRMWARE_UPLOADING, Action.ADVANCE):
        Transition(Stage.QC, Status.FIRMWARE_UPLOADED),
    (Stage.ASSEMBLY, Status.FIRMWARE_UPLOADING, Action.FIRMWARE_FAILURE):
        Transition(Stage.ASSEMBLY, Status.FIXING_PRODUCT),
    (Stage.ASSEMBLY, Status.FIXING_LABEL, Action.ADVANCE):
        Transition(Stage.QC, Status.TESTING),
    (Stage.ASSEMBLY, Status.FIXING_PRODUCT, Action.ADVANCE):
        Transition(Stage.ASSEMBLY, Status.FIRMWARE_UPLOAD),
    (Stage.ASSEMBLY, Status.FIXING_ALL, Action.ADVANCE):
        Transition(Stage.ASSEMBLY, Status.FIRMWARE_UPLOAD),
    (Stage.QC, Status.FIRMWARE_UPLOADED, Action.ADVANCE):
        Transition(Stage.QC, Status.TESTING),
    (Stage.QC, Status.TESTING, Action.PASS):
        Transition(Stage.COMPLETED, Status.PENDING_PACKAGING,
                   via=((Stage.QC, Status.COMPLETED),)),
    (Stage.QC, Status.TESTING, Action.ADVANCE):
        Transition(Stage.COMPLETED, Status.PENDING_PACKAGING,
                   via=((Stage.QC, Status.COMPLETED),)),
    (Stage.QC, Status.TESTING, Action.REJECT_LABEL):
        Transition(Stage.ASSEMBLY, Status.FIXING_LABEL),
    (Stage.QC, Status.TESTING, Action.REJECT_PRODUCT):
        Transition(Stage.ASSEMBLY, Status.FIXING_PRODUCT),
    (Stage.QC, Status.TESTING, Action.REJECT_ALL):
        Transition(Stage.ASSEMBLY, Status.FIXING_ALL),
    (Stage.COMPLETED, Status.PENDING_PACKAGING, Action.ADVANCE):
        Transition(Stage.COMPLETED, Status.COMPLETED),
}

REJECT_REASONS = {
    'blur_error': Action.REJECT_LABEL,
    'product_error': Action.REJECT_PRODUCT,
}


def reject_action(reason: Optional[str]) -> Action:
    """Map a QC reject reason code to its reject action.

    Unrecognised codes, including an empty one, fall back to
    ``reject_all`` so older clients keep working.
    """
    return REJECT_REASONS.get((reason or '').strip().lower(), Action.REJECT_ALL)


def lookup(stage, status, action: Action) -> Optional[Transition]:
    try:
        key = (Stage(stage), Status(status), action)
    except ValueError:
        return None
    return TRANSITIONS.get(key)


def is_consistent(unit) -> bool:
    """True when the unit's stage/status match its last log entry and at
    most that entry is open."""
    stage_log = StageLog.from_json(unit.state_logs)
    last = stage_log.last
    if last is None:
        return False
    if (last.stage, last.status) != (unit.stage, unit.status):
        return False
    open_entries = stage_log.open_entries()
    return not open_entries or open_entries == [last]


class TransitionEngine:
    """Validates and plans transitions without touching the unit itself."""

    def validate(self, unit, action: Action) -> Optional[SerialError]:
        if lookup(unit.stage, unit.status, action) is not None:
            return None
        return SerialError(
            serial=unit.device_serial,
            stage=unit.stage,
            status=unit.status,
            reason=f'cannot {action.value} from {unit.stage}/{unit.status}',
        )

    def plan(self, unit, action: Action, employee_id, now: datetime,
             note: Optional[str] = None) -> UnitUpdate:
        transition = lookup(unit.stage, unit.status, action)
        if transition is None:
            raise InvalidTransition(self.validate(unit, action))

        stage_log = StageLog.from_json(unit.state_logs).copy()
        stage_log.close_last(employee_id, now)

        for stage, status in transition.via:
            stage_log.append(StageLogEntry(
                stage=stage.value,
                status=status.value,
                started_at=now,
                employee_id=employee_id,
                approved_by=employee_id,
                completed_at=now,
                note=note,
            ))
            # the note belongs to the approval step only
            note = None

        closed = transition.closed_on_entry
        stage_log.append(StageLogEntry(
            stage=transition.stage.value,
            status=transition.status.value,
            started_at=now,
            employee_id=employee_id,
            approved_by=employee_id if closed else None,
            completed_at=now if closed else None,
            note=note,
        ))

        log.debug('%s: %s/%s -> %s/%s (%s)', unit.device_serial, unit.stage,
                  unit.status, transition.stage.value, transition.status.value,
                  action.value)
        return UnitUpdate(
            production_id=unit.production_id,
            device_serial=unit.device_serial,
            version=unit.version,
            stage=transition.stage.value,
            status=transition.status.value,
            state_logs=stage_log.to_json(),
            updated_at=now,
        )
