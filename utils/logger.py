import logging
import sys

LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'


def setup_logging(level='INFO'):
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    if not any(getattr(h, '_mail_tracker', False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._mail_tracker = True
        root.addHandler(handler)
    root.setLevel(level)


def get_logger(name):
    return logging.getLogger(name)
