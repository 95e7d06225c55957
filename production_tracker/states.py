from enum import Enum


class Stage(str, Enum):
    PENDING = 'pending'
    ASSEMBLY = 'assembly'
    QC = 'qc'
    FIXING = 'fixing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


class Status(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    FIRMWARE_UPLOAD = 'firmware_upload'
    FIRMWARE_UPLOADING = 'firmware_uploading'
    FIRMWARE_UPLOADED = 'firmware_uploaded'
    FIRMWARE_FAILED = 'firmware_failed'
    TESTING = 'testing'
    PENDING_PACKAGING = 'pending_packaging'
    FIXING_LABEL = 'fixing_label'
    FIXING_PRODUCT = 'fixing_product'
    FIXING_ALL = 'fixing_all'
    COMPLETED = 'completed'
    FAILED = 'failed'


class Action(str, Enum):
    APPROVE = 'approve'
    CANCEL = 'cancel'
    ADVANCE = 'advance'
    PASS = 'pass'
    FIRMWARE_FAILURE = 'firmware_failure'
    REJECT_LABEL = 'reject_label'
    REJECT_PRODUCT = 'reject_product'
    REJECT_ALL = 'reject_all'


TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.FAILED, Stage.CANCELLED})
