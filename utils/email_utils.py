import smtplib
import re
import os
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.mime.application import MIMEApplication
from email.header import Header
from email.utils import make_msgid, formatdate

from errors import ConfigurationError, TransportError, ValidationError
from utils.logger import get_logger

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


def is_valid_email(address):
    """Simple address format check"""
    return bool(address) and EMAIL_PATTERN.match(address) is not None


class EmailSender:
    def __init__(self, smtp_host, smtp_port, username, password, from_address=None, timeout=30):
        self.smtp_server = smtp_host
        self.smtp_port = int(smtp_port or 465)
        self.username = username
        self.password = password
        self.from_address = from_address or username
        self.timeout = timeout

    @classmethod
    def from_user(cls, user, timeout=30):
        if not user.has_email_config:
            raise ConfigurationError('Email configuration incomplete: set the SMTP host and username first')
        return cls(user.smtp_host, user.smtp_port, user.smtp_username, user.smtp_password,
                   from_address=user.sender_address, timeout=timeout)

    def build_message(self, to_email, subject, content, attachment_path=None, attachment_name=None):
        domain = self.from_address.split('@')[-1] if '@' in self.from_address else None
        message_id = make_msgid(domain=domain)

        msg = MIMEMultipart()
        msg['From'] = self.from_address
        msg['To'] = to_email
        msg['Subject'] = Header(subject, 'utf-8')
        msg['Date'] = formatdate(localtime=True)
        msg['Message-ID'] = message_id

        msg.attach(MIMEText(content, 'plain', 'utf-8'))

        if attachment_path:
            if os.path.exists(attachment_path):
                filename = attachment_name or os.path.basename(attachment_path)
                with open(attachment_path, 'rb') as file:
                    attach_part = MIMEApplication(file.read(), Name=filename)
                attach_part.add_header('Content-Disposition', 'attachment', filename=('utf-8', '', filename))
                msg.attach(attach_part)
            else:
                logger.warning('Attachment %s not found, sending without it', attachment_path)

        return msg, message_id

    def send_email(self, to_email, subject, content, attachment_path=None, attachment_name=None):
        """
        Send one message and return its Message-ID.
        Raises TransportError on any SMTP failure.
        """
        if not self.smtp_server or not self.username:
            raise ConfigurationError('Mail server not configured')

        if not is_valid_email(to_email):
            raise ValidationError(f'Invalid recipient address: {to_email}')

        msg, message_id = self.build_message(to_email, subject, content, attachment_path, attachment_name)

        logger.debug('Sending "%s" to %s via %s:%s', subject, to_email, self.smtp_server, self.smtp_port)
        try:
            if self.smtp_port == 465:
                server = smtplib.SMTP_SSL(self.smtp_server, self.smtp_port, timeout=self.timeout)
            else:
                # 587 / 25: plain connection upgraded with STARTTLS
                server = smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout)
                server.starttls()
            try:
                server.login(self.username, self.password or '')
                server.send_message(msg)
            finally:
                server.quit()
        except smtplib.SMTPAuthenticationError as e:
            raise TransportError(f'SMTP authentication failed for {self.username}: {e}') from e
        except smtplib.SMTPServerDisconnected as e:
            raise TransportError(f'SMTP server disconnected: {e}') from e
        except smtplib.SMTPException as e:
            raise TransportError(f'SMTP error: {e}') from e
        except OSError as e:
            raise TransportError(f'Cannot reach SMTP server {self.smtp_server}:{self.smtp_port}: {e}') from e

        logger.info('Email sent to %s', to_email)
        return message_id
