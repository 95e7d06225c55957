import uuid
from datetime import datetime, UTC
from . import db
from .states import Stage, Status


def utcnow():
    return datetime.now(UTC)


class TrackedUnit(db.Model):
    __tablename__ = 'tracked_unit'

    production_id = db.Column(db.String(36), primary_key=True, default=lambda: uuid.uuid4().hex)
    device_serial = db.Column(db.String(64), unique=True, nullable=False, index=True)
    production_batch_id = db.Column(db.String(64), nullable=True, index=True)
    stage = db.Column(db.String(32), nullable=False, default=Stage.PENDING.value, index=True)
    status = db.Column(db.String(32), nullable=False, default=Status.PENDING.value, index=True)
    state_logs = db.Column(db.JSON, nullable=False, default=list)
    version = db.Column(db.Integer, nullable=False, default=1)  # bumped on every applied update
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'production_id': self.production_id,
            'device_serial': self.device_serial,
            'production_batch_id': self.production_batch_id,
            'stage': self.stage,
            'status': self.status,
            'state_logs': list(self.state_logs or []),
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<TrackedUnit {self.device_serial} {self.stage}/{self.status}>'
