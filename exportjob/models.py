from datetime import datetime
from exportjob import db


class ExportJob(db.Model):
    """Persisted export job: the serialized JobSpec plus JobRunner bookkeeping"""
    __tablename__ = 'export_jobs'

    id = db.Column(db.Integer, primary_key=True)
    source_id = db.Column(db.String(255), nullable=False, index=True)
    passphrase_encrypted = db.Column(db.Text, nullable=False)  # Encrypted with the install secret
    destination_kind = db.Column(db.String(20), nullable=False)  # 'remote_endpoint' or 'local_target'
    destination_ref = db.Column(db.String(1000))  # Upload URL, only for remote endpoints
    status = db.Column(db.String(20), nullable=False, default='queued')  # queued, running, retry_scheduled, succeeded, failed, cancelled
    attempts = db.Column(db.Integer, nullable=False, default=0)
    failure_kind = db.Column(db.String(40))
    error_message = db.Column(db.Text)
    artifact_path = db.Column(db.String(1000))  # Local deliverable, kept for external handoff
    artifact_size_bytes = db.Column(db.BigInteger)
    cancellation_requested = db.Column(db.Boolean, default=False, nullable=False)
    schedule_id = db.Column(db.Integer, db.ForeignKey('scheduled_exports.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)  # First enqueue, start of lifespan
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    next_attempt_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)

    # Relationships
    history = db.relationship('ExportAttempt', back_populates='job', cascade='all, delete-orphan',
                              lazy='dynamic', order_by='ExportAttempt.attempt_number')
    schedule = db.relationship('ScheduledExport', back_populates='jobs')

    @property
    def is_finished(self):
        return self.status in ('succeeded', 'failed', 'cancelled')

    def __repr__(self):
        return f'<ExportJob {self.id} source={self.source_id} status={self.status} attempts={self.attempts}>'


class ExportAttempt(db.Model):
    """One run of an export job and its log"""
    __tablename__ = 'export_attempts'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('export_jobs.id'), nullable=False)
    attempt_number = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, succeeded, failed_retryable, failed_permanent
    failure_kind = db.Column(db.String(40))
    error_message = db.Column(db.Text)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    artifact_path = db.Column(db.String(1000))
    artifact_size_bytes = db.Column(db.BigInteger)
    logs = db.Column(db.Text)

    # Relationship
    job = db.relationship('ExportJob', back_populates='history')

    def __repr__(self):
        return f'<ExportAttempt job_id={self.job_id} #{self.attempt_number} status={self.status}>'


class ScheduledExport(db.Model):
    """Recurring export configuration"""
    __tablename__ = 'scheduled_exports'

    id = db.Column(db.Integer, primary_key=True)
    unique_work_name = db.Column(db.String(255), unique=True, nullable=False)
    source_id = db.Column(db.String(255), nullable=False)
    source_name = db.Column(db.String(255), nullable=False)
    passphrase_encrypted = db.Column(db.Text, nullable=False)
    destination_kind = db.Column(db.String(20), nullable=False)
    destination_ref = db.Column(db.String(1000))
    frequency = db.Column(db.String(20), nullable=False)  # daily, weekly, monthly
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationship
    jobs = db.relationship('ExportJob', back_populates='schedule', lazy='dynamic')

    def to_dict(self):
        return {
            'unique_work_name': self.unique_work_name,
            'source_id': self.source_id,
            'source_name': self.source_name,
            'destination_kind': self.destination_kind,
            'destination_ref': self.destination_ref,
            'frequency': self.frequency,
            'enabled': self.enabled,
        }

    def __repr__(self):
        return f'<ScheduledExport {self.unique_work_name} frequency={self.frequency}>'


class EncryptionKey(db.Model):
    """Salt of the install secret"""
    __tablename__ = 'encryption_key'

    id = db.Column(db.Integer, primary_key=True)
    salt = db.Column(db.Text, nullable=False)  # Base64-encoded KDF salt
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<EncryptionKey id={self.id}>'
