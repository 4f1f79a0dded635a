import io
import itertools
from datetime import datetime

import pytest

from app import create_app
from errors import TransportError
from models import db, Department
from utils.email_utils import EmailSender
from utils.excel_utils import create_template_from_fields
from utils.imap_utils import EmailReceiver


class FakeSender:
    """Records outgoing mail instead of talking to an SMTP server"""

    _ids = itertools.count(1)

    def __init__(self):
        self.sent = []
        self.fail_for = set()

    def send_email(self, to_email, subject, content, attachment_path=None, attachment_name=None):
        if to_email in self.fail_for:
            raise TransportError(f'550 mailbox unavailable: {to_email}')
        message_id = f'<{next(self._ids)}.fake@mail.test>'
        self.sent.append({
            'to': to_email,
            'subject': subject,
            'content': content,
            'attachment_path': attachment_path,
            'attachment_name': attachment_name,
            'message_id': message_id,
        })
        return message_id

    def recipients(self):
        return [m['to'] for m in self.sent]


class FakeReceiver:
    """Serves a fixed list of parsed messages"""

    def __init__(self):
        self.messages = []
        self.calls = []
        self.error = None

    def fetch_messages(self, since=None, lookback_days=30):
        self.calls.append(since)
        if self.error is not None:
            raise self.error
        return list(self.messages)


class DeferredExecutor:
    """Holds submitted jobs until the test runs them"""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        self.pending.append((fn, args, kwargs))

    def run_all(self):
        while self.pending:
            fn, args, kwargs = self.pending.pop(0)
            fn(*args, **kwargs)


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def receiver():
    return FakeReceiver()


@pytest.fixture
def executor():
    return DeferredExecutor()


@pytest.fixture
def app(tmp_path, sender, receiver, executor):
    app = create_app('config.TestingConfig', overrides={
        'UPLOAD_DIR': str(tmp_path),
        'TEMPLATE_DIR': str(tmp_path / 'templates'),
        'REPLY_DIR': str(tmp_path / 'replies'),
        'AGGREGATE_DIR': str(tmp_path / 'aggregated'),
    })

    # incomplete settings still raise ConfigurationError from the real classes
    def sender_factory(user):
        return sender if user.has_email_config else EmailSender.from_user(user)

    def receiver_factory(user):
        return receiver if user.has_imap_config else EmailReceiver.from_user(user)

    app.extensions['email_sender_factory'] = sender_factory
    app.extensions['email_receiver_factory'] = receiver_factory
    app.extensions['aggregate_executor'] = executor

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, username='admin', password='secret123'):
    client.post('/api/register', json={'username': username, 'password': password})
    resp = client.post('/api/login', json={'username': username, 'password': password})
    return {'Authorization': f"Bearer {resp.get_json()['token']}"}


MAIL_SETTINGS = {
    'email_address': 'office@uni.test',
    'smtp_host': 'smtp.uni.test',
    'smtp_port': 465,
    'smtp_username': 'office@uni.test',
    'smtp_password': 'smtp-pass',
    'imap_host': 'imap.uni.test',
    'imap_port': 993,
    'imap_username': 'office@uni.test',
    'imap_password': 'imap-pass',
}


@pytest.fixture
def bare_headers(client):
    """Logged-in user without mail settings"""
    return login(client, 'newcomer')


@pytest.fixture
def headers(client):
    """Logged-in user with complete SMTP and IMAP settings"""
    headers = login(client)
    client.put('/api/user/email-config', json=MAIL_SETTINGS, headers=headers)
    return headers


def create_teacher(client, headers, name, email, department_id=None):
    resp = client.post('/api/teachers', json={
        'name': name, 'email': email, 'department_id': department_id,
    }, headers=headers)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()['data']['id']


def create_project(client, headers, code='SURVEY24', teacher_ids=(), template_fields=None, tmp_path=None):
    data = {
        'name': 'Annual Survey',
        'code': code,
        'email_subject_template': 'Please fill in {{project_name}}',
        'email_body_template': 'Dear {{teacher_name}},\nplease return the attached form.',
        'teacher_ids': [str(tid) for tid in teacher_ids],
    }
    if template_fields:
        path = create_template_from_fields(template_fields, str(tmp_path / f'{code}_template.xlsx'))
        with open(path, 'rb') as fh:
            data['excel_template'] = (io.BytesIO(fh.read()), 'template.xlsx')
    resp = client.post('/api/projects', data=data, headers=headers, content_type='multipart/form-data')
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()['data']['id']


def reply_message(from_email, subject='Re: Please fill in', references=(), message_id=None,
                  date=None, attachments=()):
    """A message dict in the shape EmailReceiver.fetch_messages returns"""
    references = list(references)
    return {
        'message_id': message_id or f'<reply-{from_email}-{len(references)}@mail.test>',
        'subject': subject,
        'from_email': from_email,
        'in_reply_to': references[0] if references else '',
        'references': references,
        'date': date or datetime(2026, 10, 1, 9, 30),
        'body': 'Done, see attachment.',
        'attachments': list(attachments),
    }


@pytest.fixture
def teachers(client, headers):
    """Three teachers, one of them without a department"""
    with client.application.app_context():
        cs = Department(name='Computer Science', code='CS')
        db.session.add(cs)
        db.session.commit()
        cs_id = cs.id
    return [
        create_teacher(client, headers, 'Zhang Wei', 'zhang@uni.test', cs_id),
        create_teacher(client, headers, 'Li Na', 'li@uni.test', cs_id),
        create_teacher(client, headers, 'Chen Jie', 'chen@uni.test'),
    ]
