from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from models import db, Project, PROJECT_ACTIVE
from errors import ServiceError
from utils.tracking import poll_replies
from utils.logger import get_logger

logger = get_logger(__name__)


def poll_all_projects(app):
    """Poll replies for every active project whose owner has IMAP settings"""
    with app.app_context():
        projects = Project.query.filter_by(status=PROJECT_ACTIVE).all()
        processed, failed = 0, 0
        for project in projects:
            if not project.owner.has_imap_config:
                continue
            project_id = project.id
            try:
                poll_replies(project, project.owner)
                processed += 1
            except ServiceError as e:
                db.session.rollback()
                logger.warning('Scheduled poll for project %d failed: %s', project_id, e)
                failed += 1
            except Exception:
                db.session.rollback()
                # later projects are still polled
                logger.exception('Scheduled poll for project %d crashed', project_id)
                failed += 1
        logger.info('Scheduled email fetch completed: %d projects processed, %d failed', processed, failed)


def start_email_scheduler(app):
    interval = app.config['EMAIL_FETCH_INTERVAL']
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        poll_all_projects,
        IntervalTrigger(minutes=interval),
        args=[app],
        id='fetch_replies',
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info('Email fetch scheduler started, every %d minute(s)', interval)
    return scheduler
