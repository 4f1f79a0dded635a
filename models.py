from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
import json

db = SQLAlchemy()

UNASSIGNED_DEPARTMENT = 'unassigned'

# ProjectMember.status
STATUS_UNSENT = 'unsent'
# unsent row claimed by a dispatch whose send is in flight
STATUS_SENDING = 'sending'
STATUS_PENDING = 'pending'
STATUS_REPLIED = 'replied'
SENT_STATUSES = (STATUS_PENDING, STATUS_REPLIED)

# Project.status
PROJECT_ACTIVE = 'active'
PROJECT_ARCHIVED = 'archived'

# AggregateJob.status
JOB_RUNNING = 'running'
JOB_DONE = 'done'
JOB_FAILED = 'failed'


class User(db.Model):
    """Administrator account, also holds the per-user mail server settings"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)

    email_address = db.Column(db.String(120))
    smtp_host = db.Column(db.String(120))
    smtp_port = db.Column(db.Integer)
    smtp_username = db.Column(db.String(120))
    smtp_password = db.Column(db.String(256))
    imap_host = db.Column(db.String(120))
    imap_port = db.Column(db.Integer)
    imap_username = db.Column(db.String(120))
    imap_password = db.Column(db.String(256))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def has_email_config(self):
        return bool(self.smtp_host and self.smtp_username)

    @property
    def has_imap_config(self):
        return bool(self.imap_host and self.imap_username)

    @property
    def sender_address(self):
        return self.email_address or self.smtp_username

    def email_config_dict(self):
        # passwords are write-only
        return {
            'email_address': self.email_address or '',
            'smtp_host': self.smtp_host or '',
            'smtp_port': self.smtp_port,
            'smtp_username': self.smtp_username or '',
            'imap_host': self.imap_host or '',
            'imap_port': self.imap_port,
            'imap_username': self.imap_username or '',
            'has_config': self.has_email_config,
        }


class Department(db.Model):
    __tablename__ = 'departments'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    code = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'code': self.code}


class Teacher(db.Model):
    """Teacher directory entry"""
    __tablename__ = 'teachers'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), nullable=False)
    email = db.Column(db.String(100), unique=True, nullable=False)
    department_id = db.Column(db.Integer, db.ForeignKey('departments.id'), nullable=True)
    phone = db.Column(db.String(20))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    department = db.relationship('Department', backref=db.backref('teachers', lazy=True))

    @property
    def department_name(self):
        return self.department.name if self.department else UNASSIGNED_DEPARTMENT

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'department_id': self.department_id,
            'department_name': self.department_name,
            'phone': self.phone or '',
        }


class Project(db.Model):
    """Data-collection campaign: recipients, mail template, optional Excel template"""
    __tablename__ = 'projects'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    code = db.Column(db.String(50), unique=True, nullable=False)
    email_subject_template = db.Column(db.String(255), nullable=False)
    email_body_template = db.Column(db.Text, nullable=False)
    excel_template_path = db.Column(db.String(255))
    excel_template_name = db.Column(db.String(255))
    # header names of the Excel template, stored as JSON
    template_fields = db.Column(db.Text)
    status = db.Column(db.String(20), default=PROJECT_ACTIVE, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_polled_at = db.Column(db.DateTime)
    # set while an aggregate job is queued or running
    aggregating = db.Column(db.Boolean, default=False, nullable=False)

    owner = db.relationship('User', backref=db.backref('projects', lazy=True))

    def get_template_fields(self):
        if self.template_fields:
            return json.loads(self.template_fields)
        return []

    def set_template_fields(self, fields):
        self.template_fields = json.dumps(fields, ensure_ascii=False)

    @property
    def total_sent(self):
        return ProjectMember.query.filter(
            ProjectMember.project_id == self.id,
            ProjectMember.status.in_(SENT_STATUSES),
        ).count()

    @property
    def replied_count(self):
        return ProjectMember.query.filter_by(project_id=self.id, status=STATUS_REPLIED).count()

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'status': self.status,
            'email_subject_template': self.email_subject_template,
            'email_body_template': self.email_body_template,
            'excel_template_filename': self.excel_template_name or '',
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'member_count': ProjectMember.query.filter_by(project_id=self.id).count(),
            'total_sent': self.total_sent,
            'replied_count': self.replied_count,
        }


class ProjectMember(db.Model):
    """One teacher's place in a project: unsent -> (sending) -> pending -> replied"""
    __tablename__ = 'project_members'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('teachers.id'), nullable=False)
    status = db.Column(db.String(20), default=STATUS_UNSENT, nullable=False)
    added_at = db.Column(db.DateTime, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime)
    reminded_at = db.Column(db.DateTime)
    reminder_count = db.Column(db.Integer, default=0, nullable=False)
    reply_time = db.Column(db.DateTime)

    project = db.relationship('Project', backref=db.backref('members', lazy=True))
    teacher = db.relationship('Teacher', backref=db.backref('memberships', lazy=True))

    __table_args__ = (
        db.UniqueConstraint('project_id', 'teacher_id', name='uq_project_teacher'),
    )

    def to_tracking_dict(self):
        return {
            'teacher_id': self.teacher_id,
            'name': self.teacher.name,
            'email': self.teacher.email,
            'department': self.teacher.department_name,
            'status': self.status,
            'reply_time': self.reply_time.strftime('%Y-%m-%d %H:%M:%S') if self.reply_time else None,
            'reminder_count': self.reminder_count,
        }


class SentEmail(db.Model):
    """Outbound mail, kept so replies can be matched by In-Reply-To"""
    __tablename__ = 'sent_emails'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('teachers.id'), nullable=False)
    message_id = db.Column(db.String(255), unique=True, nullable=False)
    kind = db.Column(db.String(20), default='dispatch', nullable=False)
    sent_at = db.Column(db.DateTime, default=datetime.utcnow)


class Reply(db.Model):
    """Inbound mail correlated to a project member"""
    __tablename__ = 'replies'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('teachers.id'), nullable=False)
    message_id = db.Column(db.String(255), nullable=False)
    from_email = db.Column(db.String(120))
    subject = db.Column(db.String(255))
    in_reply_to = db.Column(db.String(255))
    received_at = db.Column(db.DateTime)
    body = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('project_id', 'message_id', name='uq_project_message'),
    )


class ReplyAttachment(db.Model):
    __tablename__ = 'reply_attachments'

    id = db.Column(db.Integer, primary_key=True)
    reply_id = db.Column(db.Integer, db.ForeignKey('replies.id'), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('teachers.id'), nullable=False)
    original_filename = db.Column(db.String(255))
    stored_path = db.Column(db.String(255), nullable=False)
    content_type = db.Column(db.String(100))
    file_size = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    reply = db.relationship('Reply', backref=db.backref('attachments', lazy=True))


class AggregateJob(db.Model):
    """Background spreadsheet build for a project"""
    __tablename__ = 'aggregate_jobs'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    status = db.Column(db.String(20), default=JOB_RUNNING, nullable=False)
    file_path = db.Column(db.String(255))
    row_count = db.Column(db.Integer)
    error = db.Column(db.Text)
    started_at = db.Column(db.DateTime, default=datetime.utcnow)
    finished_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'job_id': self.id,
            'status': self.status,
            'row_count': self.row_count,
            'error': self.error,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }
