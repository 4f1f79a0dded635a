"""
Dispatch and reply tracking for project members.

A member moves unsent -> pending (mail sent) -> replied (correlated reply
found). While its mail is on the wire an unsent row is held as `sending`, so
concurrent dispatches in other processes skip it. Reminders are re-sends to
pending members and never change state.
"""
import os
import re
import threading
import hashlib
import weakref
from collections import namedtuple
from datetime import datetime

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from models import (db, Teacher, Project, ProjectMember, SentEmail, Reply, ReplyAttachment,
                    STATUS_UNSENT, STATUS_SENDING, STATUS_PENDING, STATUS_REPLIED, SENT_STATUSES,
                    PROJECT_ACTIVE)
from errors import ValidationError, TransportError
from utils.excel_utils import sanitize_attachment_name
from utils.logger import get_logger

logger = get_logger(__name__)

SendResult = namedtuple('SendResult', ['sent', 'failed'])

REMINDER_PREFIX = 'Reminder: '
TEMPLATE_VAR = re.compile(r'\{\{\s*(\w+)\s*\}\}')
CODE_CHARS = 'A-Za-z0-9_-'

# entries vanish once no caller holds the lock
_project_locks = weakref.WeakValueDictionary()
_locks_guard = threading.Lock()


def project_lock(project_id):
    """Per-project lock serialising sends within this process"""
    with _locks_guard:
        return _project_locks.setdefault(project_id, threading.Lock())


def get_sender(user):
    return current_app.extensions['email_sender_factory'](user)


def get_receiver(user):
    return current_app.extensions['email_receiver_factory'](user)


def render_template_vars(text, teacher_name, project_name, project_code=''):
    """Fill {{teacher_name}}, {{project_name}}, {{project_code}} (any case); unknown names are kept"""
    values = {
        'teacher_name': teacher_name,
        'project_name': project_name,
        'project_code': project_code or '',
    }

    def replace(match):
        value = values.get(match.group(1).lower())
        return match.group(0) if value is None else value

    return TEMPLATE_VAR.sub(replace, text or '')


def subject_names_code(subject, code):
    """True when `code` is a whole token of `subject`: [SURVEY24] names SURVEY24, not SURVEY"""
    if not code:
        return False
    pattern = rf'(?<![{CODE_CHARS}]){re.escape(code)}(?![{CODE_CHARS}])'
    return re.search(pattern, subject or '', re.IGNORECASE) is not None


def compose_email(project, teacher, reminder=False):
    subject = render_template_vars(project.email_subject_template, teacher.name, project.name, project.code)
    body = render_template_vars(project.email_body_template, teacher.name, project.name, project.code)
    # replies keep the subject, so the code lets us match them later
    if project.code and not subject_names_code(subject, project.code):
        subject = f'[{project.code}] {subject}'
    if reminder:
        subject = REMINDER_PREFIX + subject
    return subject, body


def add_members(project, teacher_ids):
    """Add teachers to a project; returns how many were new"""
    if not teacher_ids:
        raise ValidationError('No teacher IDs provided')

    ids = list(dict.fromkeys(int(tid) for tid in teacher_ids))
    found = {t.id for t in Teacher.query.filter(Teacher.id.in_(ids)).all()}
    unknown = [tid for tid in ids if tid not in found]
    if unknown:
        raise ValidationError(f'Unknown teacher id(s): {", ".join(str(i) for i in unknown)}')

    existing = {
        m.teacher_id for m in ProjectMember.query.filter(
            ProjectMember.project_id == project.id,
            ProjectMember.teacher_id.in_(ids),
        ).all()
    }
    added = 0
    for tid in ids:
        if tid in existing:
            continue
        db.session.add(ProjectMember(project_id=project.id, teacher_id=tid, status=STATUS_UNSENT))
        added += 1
    db.session.commit()

    logger.info('Project %d: added %d member(s), %d already present', project.id, added, len(ids) - added)
    return added


def _set_status(member_id, from_status, values):
    """Conditional UPDATE; returns True when this call moved the row"""
    updated = ProjectMember.query.filter_by(id=member_id, status=from_status).update(
        values, synchronize_session=False)
    db.session.commit()
    return updated == 1


def _send_to_members(project, sender, members, reminder=False):
    kind = 'reminder' if reminder else 'dispatch'
    sent, failed = 0, []
    transport_error = None

    for member in members:
        member_id = member.id
        teacher = member.teacher
        if not reminder and not _set_status(member_id, STATUS_UNSENT, {'status': STATUS_SENDING}):
            logger.info('Project %d: %s already taken by another dispatch', project.id, teacher.email)
            continue

        subject, body = compose_email(project, teacher, reminder=reminder)
        try:
            message_id = sender.send_email(
                teacher.email, subject, body,
                attachment_path=project.excel_template_path,
                attachment_name=project.excel_template_name,
            )
        except (TransportError, ValidationError) as e:
            logger.warning('Project %d: %s to %s failed: %s', project.id, kind, teacher.email, e)
            failed.append(teacher.name)
            if isinstance(e, TransportError):
                transport_error = e
            if not reminder:
                _set_status(member_id, STATUS_SENDING, {'status': STATUS_UNSENT})
            continue
        except Exception:
            if not reminder:
                db.session.rollback()
                _set_status(member_id, STATUS_SENDING, {'status': STATUS_UNSENT})
            raise

        now = datetime.now()
        if reminder:
            member.reminder_count = (member.reminder_count or 0) + 1
            member.reminded_at = now
        else:
            ProjectMember.query.filter_by(id=member_id, status=STATUS_SENDING).update(
                {'status': STATUS_PENDING, 'sent_at': now}, synchronize_session=False)
        db.session.add(SentEmail(project_id=project.id, teacher_id=teacher.id,
                                 message_id=message_id, kind=kind, sent_at=now))
        db.session.commit()
        sent += 1

    if sent == 0 and transport_error is not None:
        raise transport_error
    return SendResult(sent, failed)


def dispatch(project, user):
    """
    Mail every unsent member. Idempotent: pending and replied members are never re-sent,
    and each row is claimed in the database before its mail goes out.
    """
    sender = get_sender(user)

    with project_lock(project.id):
        members = ProjectMember.query.filter_by(project_id=project.id, status=STATUS_UNSENT).all()
        if not members:
            logger.info('Project %d: no unsent members to dispatch', project.id)
            return SendResult(0, [])

        logger.info('Project %d: dispatching to %d member(s)', project.id, len(members))
        result = _send_to_members(project, sender, members)

    logger.info('Project %d: dispatch finished, %d/%d sent', project.id, result.sent, len(members))
    return result


def remind(project, user, target_ids=None):
    """Re-send the template to pending members (all, or those in target_ids)"""
    sender = get_sender(user)

    query = ProjectMember.query.filter_by(project_id=project.id, status=STATUS_PENDING)
    if target_ids:
        query = query.filter(ProjectMember.teacher_id.in_([int(tid) for tid in target_ids]))

    with project_lock(project.id):
        members = query.all()
        if not members:
            logger.info('Project %d: no pending members to remind', project.id)
            return SendResult(0, [])

        logger.info('Project %d: reminding %d member(s)', project.id, len(members))
        result = _send_to_members(project, sender, members, reminder=True)

    logger.info('Project %d: reminder run finished, %d/%d sent', project.id, result.sent, len(members))
    return result


def _message_key(message):
    if message.get('message_id'):
        return message['message_id']
    raw = f"{message.get('from_email')}|{message.get('date')}|{message.get('subject')}"
    return '<' + hashlib.sha1(raw.encode('utf-8')).hexdigest() + '@local>'


def correlate(project, message):
    """Find the member of `project` a message answers, or None"""
    ref_ids = message.get('references') or []
    if ref_ids:
        sent = SentEmail.query.filter(SentEmail.message_id.in_(ref_ids)).first()
        if sent is not None:
            if sent.project_id != project.id:
                return None
            member = ProjectMember.query.filter_by(project_id=project.id, teacher_id=sent.teacher_id).first()
            if member is not None and member.status in SENT_STATUSES:
                return member
            return None

    sender = (message.get('from_email') or '').lower()
    if not sender:
        return None
    teacher = Teacher.query.filter(func.lower(Teacher.email) == sender).first()
    if teacher is None:
        return None
    member = ProjectMember.query.filter_by(project_id=project.id, teacher_id=teacher.id).first()
    if member is None or member.status not in SENT_STATUSES:
        return None

    if subject_names_code(message.get('subject'), project.code):
        return member

    open_projects = ProjectMember.query.join(Project).filter(
        ProjectMember.teacher_id == teacher.id,
        ProjectMember.status.in_(SENT_STATUSES),
        Project.status == PROJECT_ACTIVE,
    ).count()
    if open_projects == 1:
        return member

    logger.info('Ambiguous reply from %s (%d active projects), skipped', sender, open_projects)
    return None


def _store_attachments(project, reply, teacher_id, attachments):
    reply_dir = current_app.config['REPLY_DIR']
    os.makedirs(reply_dir, exist_ok=True)
    stamp = datetime.now().strftime('%Y%m%d%H%M%S%f')

    for idx, att in enumerate(attachments):
        safe_name = sanitize_attachment_name(att['filename'])
        stored_path = os.path.join(reply_dir, f'{project.id}_{teacher_id}_{stamp}_{idx}_{safe_name}')
        with open(stored_path, 'wb') as f:
            f.write(att['data'])
        db.session.add(ReplyAttachment(
            reply_id=reply.id,
            project_id=project.id,
            teacher_id=teacher_id,
            original_filename=att['filename'],
            stored_path=stored_path,
            content_type=att.get('content_type'),
            file_size=len(att['data']),
        ))


def _store_reply(project, teacher_id, message, key):
    """Insert the Reply row; None when a concurrent poll stored the same message first"""
    reply = Reply(
        project_id=project.id,
        teacher_id=teacher_id,
        message_id=key,
        from_email=message.get('from_email'),
        subject=(message.get('subject') or '')[:255],
        in_reply_to=message.get('in_reply_to'),
        received_at=message.get('date'),
        body=message.get('body'),
    )
    db.session.add(reply)
    try:
        db.session.flush()
    except IntegrityError:
        # earlier messages are already committed, only this insert is undone
        db.session.rollback()
        logger.info('Project %d: message %s already stored by another poll', project.id, key)
        return None
    return reply


def poll_replies(project, user):
    """
    Scan the owner's mailbox for replies to this project.
    Safe to repeat: stored messages are skipped and only pending members move to replied.
    """
    receiver = get_receiver(user)
    started = datetime.now()

    messages = receiver.fetch_messages(
        since=project.last_polled_at,
        lookback_days=current_app.config['MAIL_LOOKBACK_DAYS'],
    )

    new_replies = []
    for message in messages:
        member = correlate(project, message)
        if member is None:
            continue

        key = _message_key(message)
        if Reply.query.filter_by(project_id=project.id, message_id=key).first() is not None:
            continue

        reply = _store_reply(project, member.teacher_id, message, key)
        if reply is None:
            continue
        _store_attachments(project, reply, member.teacher_id, message.get('attachments') or [])

        reply_time = message.get('date') or datetime.now()
        updated = ProjectMember.query.filter_by(id=member.id, status=STATUS_PENDING).update(
            {'status': STATUS_REPLIED, 'reply_time': reply_time}, synchronize_session=False)
        db.session.commit()

        if updated:
            new_replies.append({
                'teacher_id': member.teacher_id,
                'name': member.teacher.name,
                'reply_time': reply_time.strftime('%Y-%m-%d %H:%M:%S'),
            })

    project.last_polled_at = started
    db.session.commit()

    logger.info('Project %d: scanned %d message(s), %d new repl(ies)', project.id, len(messages), len(new_replies))
    return new_replies


def tracking(project):
    members = (ProjectMember.query.join(Teacher)
               .filter(ProjectMember.project_id == project.id)
               .order_by(Teacher.name)
               .all())
    details = [m.to_tracking_dict() for m in members]
    return {
        'total_sent': sum(1 for m in members if m.status in SENT_STATUSES),
        'replied_count': sum(1 for m in members if m.status == STATUS_REPLIED),
        'member_count': len(members),
        'details': details,
    }
