import os
from datetime import datetime

from flask import current_app

from models import (db, Project, ProjectMember, Teacher, ReplyAttachment, AggregateJob,
                    STATUS_REPLIED, SENT_STATUSES, JOB_RUNNING, JOB_DONE, JOB_FAILED)
from errors import NotReadyError
from utils.excel_utils import is_excel_file, parse_reply_excel, write_workbook
from utils.logger import get_logger

logger = get_logger(__name__)

BASE_COLUMNS = ['No.', 'Name', 'Email', 'Department', 'Status', 'Reply Time', 'Reminders']


class DataSummary:
    """Builds the per-project reply spreadsheet in the background"""

    def latest_job(self, project_id):
        return (AggregateJob.query.filter_by(project_id=project_id)
                .order_by(AggregateJob.id.desc()).first())

    def start_aggregation(self, project):
        """Queue a build and return its job without waiting for it"""
        # at most one queued or running job per project
        claimed = Project.query.filter_by(id=project.id, aggregating=False).update(
            {'aggregating': True}, synchronize_session=False)
        if not claimed:
            db.session.rollback()
            running = self.latest_job(project.id)
            logger.info('Project %d: aggregation job %d already running', project.id, running.id)
            return running

        job = AggregateJob(project_id=project.id, status=JOB_RUNNING, started_at=datetime.now())
        db.session.add(job)
        db.session.commit()

        app = current_app._get_current_object()
        executor = app.extensions['aggregate_executor']
        try:
            executor.submit(self._run_job, app, job.id)
        except Exception as e:
            job.status = JOB_FAILED
            job.error = str(e)
            job.finished_at = datetime.now()
            self._release(project.id)
            db.session.commit()
            raise
        logger.info('Project %d: aggregation job %d queued', project.id, job.id)
        return job

    def _run_job(self, app, job_id):
        with app.app_context():
            job = db.session.get(AggregateJob, job_id)
            try:
                path, rows = self.generate_task_summary(job.project_id)
            except Exception as e:
                db.session.rollback()
                logger.exception('Aggregation job %d failed', job_id)
                job = db.session.get(AggregateJob, job_id)
                job.status = JOB_FAILED
                job.error = str(e)
                job.finished_at = datetime.now()
                self._release(job.project_id)
                db.session.commit()
                return

            job.status = JOB_DONE
            job.file_path = path
            job.row_count = rows
            job.finished_at = datetime.now()
            self._release(job.project_id)
            db.session.commit()
            logger.info('Aggregation job %d done: %d rows -> %s', job_id, rows, path)

    def _release(self, project_id):
        Project.query.filter_by(id=project_id).update({'aggregating': False}, synchronize_session=False)

    def _latest_reply_data(self, project_id, teacher_id, field_names):
        attachments = (ReplyAttachment.query
                       .filter_by(project_id=project_id, teacher_id=teacher_id)
                       .order_by(ReplyAttachment.id.desc())
                       .all())
        for att in attachments:
            if not is_excel_file(att.original_filename) and not is_excel_file(att.stored_path):
                continue
            if not os.path.exists(att.stored_path):
                logger.warning('Attachment missing on disk: %s', att.stored_path)
                continue
            data = parse_reply_excel(att.stored_path, field_names)
            if data:
                return data
        return {}

    def generate_task_summary(self, project_id):
        """Write one row per member, repliers' Excel data filled in. Returns (path, row count)."""
        project = db.session.get(Project, project_id)
        members = (ProjectMember.query.join(Teacher)
                   .filter(ProjectMember.project_id == project_id)
                   .order_by(Teacher.name)
                   .all())

        field_names = project.get_template_fields()
        reply_data = {}
        for member in members:
            if member.status == STATUS_REPLIED:
                reply_data[member.teacher_id] = self._latest_reply_data(
                    project_id, member.teacher_id, field_names or None)

        if not field_names:
            # no template: columns in order of first appearance
            for data in reply_data.values():
                for key in data:
                    if key not in field_names:
                        field_names.append(key)

        # reply fields never overwrite the member columns
        field_columns = {f: (f'{f} (reply)' if f in BASE_COLUMNS else f) for f in field_names}

        data_rows = []
        for idx, member in enumerate(members, 1):
            teacher = member.teacher
            row = {
                'No.': idx,
                'Name': teacher.name,
                'Email': teacher.email,
                'Department': teacher.department_name,
                'Status': member.status,
                'Reply Time': member.reply_time.strftime('%Y-%m-%d %H:%M') if member.reply_time else '',
                'Reminders': member.reminder_count or 0,
            }
            answers = reply_data.get(member.teacher_id, {})
            for field_name in field_names:
                row[field_columns[field_name]] = answers.get(field_name, '')
            data_rows.append(row)

        columns = BASE_COLUMNS + [field_columns[f] for f in field_names]

        export_dir = current_app.config['AGGREGATE_DIR']
        os.makedirs(export_dir, exist_ok=True)
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
        filepath = os.path.join(export_dir, f'project_{project_id}_{timestamp}.xlsx')
        write_workbook(data_rows, columns, filepath)
        return filepath, len(data_rows)

    def aggregate_status(self, project):
        job = self.latest_job(project.id)
        if job is None:
            return {'status': 'none'}
        return job.to_dict()

    def download_path(self, project):
        job = self.latest_job(project.id)
        if job is None:
            raise NotReadyError('No aggregate has been generated for this project yet')
        if job.status == JOB_RUNNING:
            raise NotReadyError('Aggregation is still running, try again shortly')
        if job.status == JOB_FAILED:
            raise NotReadyError(f'Last aggregation failed: {job.error}. Run aggregate again')
        if not job.file_path or not os.path.exists(job.file_path):
            raise NotReadyError('Aggregated file is missing, run aggregate again')
        return job.file_path

    def get_summary_statistics(self, project):
        members = ProjectMember.query.filter_by(project_id=project.id).all()
        total_sent = sum(1 for m in members if m.status in SENT_STATUSES)
        replied = sum(1 for m in members if m.status == STATUS_REPLIED)

        departments = {}
        for m in members:
            stats = departments.setdefault(m.teacher.department_name, {'members': 0, 'replied': 0})
            stats['members'] += 1
            if m.status == STATUS_REPLIED:
                stats['replied'] += 1

        return {
            'member_count': len(members),
            'total_sent': total_sent,
            'replied_count': replied,
            'pending_count': total_sent - replied,
            'reply_rate': round((replied / total_sent * 100), 2) if total_sent > 0 else 0,
            'departments': departments,
        }


# global instance
data_summary = DataSummary()
