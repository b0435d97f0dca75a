"""Durable background job rows.

Each row carries an ``idempotency_tag``; enqueueing an existing tag returns
the existing row instead of creating a second job.
"""

from pbm import db
from pbm.utils.clock import new_id, utcnow

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_SUCCEEDED = "succeeded"
JOB_DEAD = "dead"


class Job(db.Model):
    __tablename__ = "job"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    kind = db.Column(db.String(64), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    idempotency_tag = db.Column(db.String(255), nullable=False, unique=True)
    status = db.Column(db.String(16), nullable=False, default=JOB_QUEUED, index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=8)
    run_after = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    locked_at = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    finished_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "kind": self.kind,
            "payload": self.payload,
            "idempotency_tag": self.idempotency_tag,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }
