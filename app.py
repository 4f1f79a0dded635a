from flask import Flask, Blueprint, current_app, request, jsonify, send_file
from models import (db, Department, Teacher, Project, ProjectMember, SentEmail, Reply,
                    ReplyAttachment, PROJECT_ACTIVE)
from errors import ServiceError, ValidationError, NotFoundError
from schemas import (parse, Credentials, TeacherIn, ProjectIn, ProjectStatusIn, MembersIn,
                     RemindIn, EmailConfigIn)
from auth import token_required, register_user, authenticate_user, create_access_token
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename
from sqlalchemy.exc import SQLAlchemyError
# utilities
from utils.email_utils import EmailSender
from utils.imap_utils import EmailReceiver
from utils.excel_utils import parse_excel_template
from utils.data_summary import data_summary
from utils import tracking
from utils.logger import setup_logging, get_logger

logger = get_logger(__name__)

api = Blueprint('api', __name__)


def create_app(config_object='config.Config', overrides=None):
    app = Flask(__name__)
    app.config.from_object(config_object)
    if overrides:
        app.config.update(overrides)

    setup_logging(app.config['LOG_LEVEL'])

    db.init_app(app)

    # storage directories
    for key in ('TEMPLATE_DIR', 'REPLY_DIR', 'AGGREGATE_DIR'):
        os.makedirs(app.config[key], exist_ok=True)

    # mail transport and background work, replaceable per app
    app.extensions['email_sender_factory'] = (
        lambda user: EmailSender.from_user(user, timeout=app.config['SMTP_TIMEOUT']))
    app.extensions['email_receiver_factory'] = (
        lambda user: EmailReceiver.from_user(user, max_process=app.config['MAIL_MAX_PROCESS']))
    app.extensions['aggregate_executor'] = ThreadPoolExecutor(
        max_workers=app.config['AGGREGATE_WORKERS'], thread_name_prefix='aggregate')

    app.register_blueprint(api, url_prefix='/api')
    register_error_handlers(app)

    with app.app_context():
        db.create_all()

    if app.config.get('ENABLE_EMAIL_SCHEDULER'):
        from utils.scheduler import start_email_scheduler
        app.extensions['email_scheduler'] = start_email_scheduler(app)

    return app


def register_error_handlers(app):
    @app.errorhandler(ServiceError)
    def handle_service_error(e):
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({'success': False, 'error': e.description, 'type': e.name}), e.code

    @app.errorhandler(SQLAlchemyError)
    def handle_db_error(e):
        db.session.rollback()
        logger.exception('Database error')
        return jsonify({'success': False, 'error': 'Database error', 'type': 'DatabaseError'}), 500


# allowed Excel template types
ALLOWED_EXTENSIONS = {'xlsx', 'xls'}


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def remove_file(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning('Could not remove %s: %s', path, e)


def request_data():
    """JSON body, or form fields for form posts"""
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict()
    return data


def get_owned_project(user, project_id):
    project = Project.query.filter_by(id=project_id, created_by=user.id).first()
    if project is None:
        raise NotFoundError('Project not found or access denied')
    return project


@api.route('/ping')
def ping():
    return jsonify({'message': 'pong'})


# ==========================================
# 1. Auth
# ==========================================

@api.route('/register', methods=['POST'])
def register():
    creds = parse(Credentials, request_data())
    user = register_user(creds.username, creds.password)
    logger.info('Registered user %s', user.username)
    return jsonify({'success': True, 'data': {'id': user.id, 'username': user.username}}), 201


@api.route('/login', methods=['POST'])
def login():
    creds = parse(Credentials, request_data())
    user = authenticate_user(creds.username, creds.password)
    return jsonify({'success': True, 'token': create_access_token(user.id),
                    'user': {'id': user.id, 'username': user.username}})


# ==========================================
# 2. Teachers & departments
# ==========================================

@api.route('/departments')
@token_required
def list_departments(current_user):
    departments = Department.query.order_by(Department.name).all()
    return jsonify({'success': True, 'data': [d.to_dict() for d in departments]})


def _check_department(department_id):
    if department_id is not None and db.session.get(Department, department_id) is None:
        raise ValidationError(f'Unknown department id: {department_id}')


@api.route('/teachers')
@token_required
def list_teachers(current_user):
    query = Teacher.query.outerjoin(Department)
    department = request.args.get('department')
    if department:
        query = query.filter(Department.name == department)
    teachers = query.order_by(Teacher.name).all()
    return jsonify({'success': True, 'data': [t.to_dict() for t in teachers]})


@api.route('/teachers', methods=['POST'])
@token_required
def add_teacher(current_user):
    data = parse(TeacherIn, request_data())
    _check_department(data.department_id)
    if Teacher.query.filter_by(email=data.email).first():
        raise ValidationError('A teacher with this email already exists')

    teacher = Teacher(name=data.name, email=data.email, department_id=data.department_id, phone=data.phone)
    db.session.add(teacher)
    db.session.commit()
    return jsonify({'success': True, 'data': teacher.to_dict()}), 201


@api.route('/teachers/<int:teacher_id>', methods=['PUT'])
@token_required
def update_teacher(current_user, teacher_id):
    teacher = db.session.get(Teacher, teacher_id)
    if teacher is None:
        raise NotFoundError('Teacher not found')
    data = parse(TeacherIn, request_data())
    _check_department(data.department_id)

    # email may not collide with another teacher
    existing = Teacher.query.filter_by(email=data.email).first()
    if existing and existing.id != teacher_id:
        raise ValidationError('This email is already used by another teacher')

    teacher.name = data.name
    teacher.email = data.email
    teacher.department_id = data.department_id
    teacher.phone = data.phone
    db.session.commit()
    return jsonify({'success': True, 'data': teacher.to_dict()})


@api.route('/teachers/<int:teacher_id>', methods=['DELETE'])
@token_required
def delete_teacher(current_user, teacher_id):
    teacher = db.session.get(Teacher, teacher_id)
    if teacher is None:
        raise NotFoundError('Teacher not found')

    stored_paths = [a.stored_path for a in ReplyAttachment.query.filter_by(teacher_id=teacher_id).all()]
    ReplyAttachment.query.filter_by(teacher_id=teacher_id).delete()
    Reply.query.filter_by(teacher_id=teacher_id).delete()
    SentEmail.query.filter_by(teacher_id=teacher_id).delete()
    ProjectMember.query.filter_by(teacher_id=teacher_id).delete()
    db.session.delete(teacher)
    db.session.commit()

    for path in stored_paths:
        remove_file(path)
    return jsonify({'success': True, 'message': 'deleted'})


# ==========================================
# 3. Projects
# ==========================================

@api.route('/projects')
@token_required
def list_projects(current_user):
    projects = (Project.query.filter_by(created_by=current_user.id)
                .order_by(Project.created_at.desc()).all())
    return jsonify({'success': True, 'data': [p.to_dict() for p in projects]})


@api.route('/projects/<int:project_id>')
@token_required
def get_project(current_user, project_id):
    project = get_owned_project(current_user, project_id)
    return jsonify({'success': True, 'data': project.to_dict()})


@api.route('/projects', methods=['POST'])
@token_required
def create_project(current_user):
    """Create a project from a multipart form with an optional Excel template"""
    form = request.form.to_dict()
    form['teacher_ids'] = request.form.getlist('teacher_ids')
    data = parse(ProjectIn, form)

    if Project.query.filter_by(code=data.code).first():
        raise ValidationError(f'Project code {data.code} already exists')

    project = Project(
        name=data.name,
        code=data.code,
        email_subject_template=data.email_subject_template,
        email_body_template=data.email_body_template,
        status=PROJECT_ACTIVE,
        created_by=current_user.id,
    )

    template_path = None
    file = request.files.get('excel_template')
    if file and file.filename:
        if not allowed_file(file.filename):
            raise ValidationError('Excel template must be an .xlsx or .xls file')
        template_dir = current_app.config['TEMPLATE_DIR']
        save_name = f"{int(datetime.now().timestamp())}_{secure_filename(file.filename) or 'template.xlsx'}"
        template_path = os.path.join(template_dir, save_name)
        file.save(template_path)

        fields = parse_excel_template(template_path)
        if not fields:
            remove_file(template_path)
            raise ValidationError('Excel template has no header row')
        project.excel_template_path = template_path
        project.excel_template_name = os.path.basename(file.filename)
        project.set_template_fields(fields)

    # unknown teacher ids roll back the whole project, uploaded template included
    added = 0
    try:
        db.session.add(project)
        db.session.flush()
        if data.teacher_ids:
            added = tracking.add_members(project, data.teacher_ids)
        db.session.commit()
    except Exception:
        db.session.rollback()
        if template_path:
            remove_file(template_path)
        raise
    logger.info('Created project %d (%s)', project.id, project.code)
    return jsonify({'success': True, 'data': {'id': project.id}, 'added_count': added}), 201


@api.route('/projects/<int:project_id>/status', methods=['PUT'])
@token_required
def set_project_status(current_user, project_id):
    project = get_owned_project(current_user, project_id)
    data = parse(ProjectStatusIn, request_data())
    project.status = data.status
    db.session.commit()
    return jsonify({'success': True, 'data': project.to_dict()})


@api.route('/projects/<int:project_id>/members', methods=['POST'])
@token_required
def add_project_members(current_user, project_id):
    project = get_owned_project(current_user, project_id)
    data = parse(MembersIn, request_data())
    added = tracking.add_members(project, data.teacher_ids)
    return jsonify({'success': True, 'message': 'Members added successfully', 'added_count': added})


@api.route('/projects/<int:project_id>/dispatch', methods=['POST'])
@token_required
def dispatch_project(current_user, project_id):
    """Send the template mail to members that have not been mailed yet"""
    project = get_owned_project(current_user, project_id)
    result = tracking.dispatch(project, current_user)

    msg = f'Sent {result.sent} email(s).'
    if result.failed:
        msg += f" Failed for {len(result.failed)}: {', '.join(result.failed[:5])}"
        if len(result.failed) > 5:
            msg += ' ...'
    return jsonify({
        'success': True,
        'message': msg,
        'sent_count': result.sent,
        'failed': result.failed,
        'total_sent': project.total_sent,
        'replied_count': project.replied_count,
    })


@api.route('/projects/<int:project_id>/fetch-emails', methods=['POST'])
@token_required
def fetch_project_emails(current_user, project_id):
    project = get_owned_project(current_user, project_id)
    new_replies = tracking.poll_replies(project, current_user)
    return jsonify({
        'success': True,
        'message': f'Processed {len(new_replies)} new repl(ies)',
        'new_replies': new_replies,
    })


@api.route('/projects/<int:project_id>/tracking')
@token_required
def get_project_tracking(current_user, project_id):
    project = get_owned_project(current_user, project_id)
    return jsonify({'success': True, 'data': tracking.tracking(project)})


@api.route('/projects/<int:project_id>/remind', methods=['POST'])
@token_required
def remind_teachers(current_user, project_id):
    project = get_owned_project(current_user, project_id)
    data = parse(RemindIn, request.get_json(silent=True))
    result = tracking.remind(project, current_user, data.target_ids)
    return jsonify({
        'success': True,
        'message': f'Sent {result.sent} reminder(s)',
        'count': result.sent,
        'failed': result.failed,
    })


@api.route('/projects/<int:project_id>/summary')
@token_required
def get_project_summary(current_user, project_id):
    project = get_owned_project(current_user, project_id)
    return jsonify({'success': True, 'data': data_summary.get_summary_statistics(project)})


# ==========================================
# 4. Aggregation & download
# ==========================================

@api.route('/projects/<int:project_id>/aggregate', methods=['POST'])
@token_required
def aggregate_project(current_user, project_id):
    project = get_owned_project(current_user, project_id)
    job = data_summary.start_aggregation(project)
    return jsonify({'success': True, 'message': 'Aggregation started', 'job': job.to_dict()}), 202


@api.route('/projects/<int:project_id>/aggregate-status')
@token_required
def aggregate_status(current_user, project_id):
    project = get_owned_project(current_user, project_id)
    return jsonify({'success': True, 'job': data_summary.aggregate_status(project)})


@api.route('/projects/<int:project_id>/download')
@token_required
def download_aggregated(current_user, project_id):
    project = get_owned_project(current_user, project_id)
    file_path = data_summary.download_path(project)
    return send_file(file_path, as_attachment=True,
                     download_name=f'project_{project.code}_aggregated.xlsx')


# ==========================================
# 5. User email configuration
# ==========================================

@api.route('/user/email-config')
@token_required
def get_email_config(current_user):
    return jsonify({'success': True, 'data': current_user.email_config_dict()})


@api.route('/user/email-config', methods=['PUT'])
@token_required
def update_email_config(current_user):
    data = parse(EmailConfigIn, request_data())

    current_user.email_address = data.email_address
    current_user.smtp_host = data.smtp_host
    current_user.smtp_port = data.smtp_port
    current_user.smtp_username = data.smtp_username
    current_user.imap_host = data.imap_host
    current_user.imap_port = data.imap_port
    current_user.imap_username = data.imap_username
    # empty password keeps the stored one
    if data.smtp_password:
        current_user.smtp_password = data.smtp_password
    if data.imap_password:
        current_user.imap_password = data.imap_password

    db.session.commit()
    return jsonify({'success': True, 'message': 'Email configuration updated',
                    'data': current_user.email_config_dict()})


if __name__ == '__main__':
    app = create_app()
    app.run(debug=False, host='0.0.0.0', port=int(os.getenv('PORT', '5000')))
