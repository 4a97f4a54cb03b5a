from datetime import datetime
from sitekeeper import db


class Option(db.Model):
    """Key-value option with optional expiry (run lock, cached license data)"""
    __tablename__ = 'options'

    key = db.Column(db.String(191), primary_key=True)
    value = db.Column(db.Text, nullable=True)  # JSON string
    expires_at = db.Column(db.DateTime, nullable=True)  # null = never expires
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def is_expired(self, now=None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.utcnow())

    def __repr__(self):
        return f'<Option {self.key} expires_at={self.expires_at}>'


class BackupRun(db.Model):
    """One orchestrator run, including runs rejected by the lock"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(20), nullable=False)  # running, success, failed, rejected
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    archive_name = db.Column(db.String(255))
    file_size_bytes = db.Column(db.BigInteger)
    s3_key = db.Column(db.String(500))
    upload_method = db.Column(db.String(20))  # single, multipart
    part_count = db.Column(db.Integer)
    error_kind = db.Column(db.String(50))
    details = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    def to_dict(self, include_logs=False):
        data = {
            'id': self.id,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'archive_name': self.archive_name,
            'file_size_bytes': self.file_size_bytes,
            's3_key': self.s3_key,
            'upload_method': self.upload_method,
            'part_count': self.part_count,
            'error_kind': self.error_kind,
            'details': self.details,
        }
        if include_logs:
            data['logs'] = self.logs
        return data

    def __repr__(self):
        return f'<BackupRun id={self.id} status={self.status}>'
