import imaplib
import email
import re
from email.header import decode_header, make_header
from email.utils import parsedate_to_datetime
from datetime import datetime, timedelta

from errors import ConfigurationError, TransportError
from utils.logger import get_logger

logger = get_logger(__name__)

MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
          "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


def imap_date(date_obj):
    """IMAP SEARCH date (05-Nov-2024), independent of the system locale"""
    return f"{date_obj.day}-{MONTHS[date_obj.month - 1]}-{date_obj.year}"


def decode_bytes(data, charset=None):
    """Decode mail bytes; unknown charsets such as 'unknown-8bit' fall back to utf-8"""
    try:
        return data.decode(charset or 'utf-8', errors='ignore')
    except LookupError:
        return data.decode('utf-8', errors='ignore')


def decode_str(s):
    """Decode an RFC 2047 encoded header into text"""
    if not s:
        return ""
    parts = decode_header(s)
    # make_header turns unknown-8bit words into U+FFFD
    if any(encoding and encoding.lower() == 'unknown-8bit' for _, encoding in parts):
        return _join_header_parts(parts)
    try:
        return str(make_header(parts))
    except (UnicodeError, LookupError):
        return _join_header_parts(parts)


def _join_header_parts(parts):
    return ''.join(
        decode_bytes(value, encoding) if isinstance(value, bytes) else value
        for value, encoding in parts
    )


def extract_email(from_header):
    """Pull the bare address out of a From header"""
    if not from_header:
        return ""
    match = re.search(r'[\w\.\+-]+@[\w\.-]+\.\w+', str(from_header))
    return match.group(0).lower() if match else str(from_header).lower()


def extract_message_ids(value):
    """All <...> ids in an In-Reply-To or References header"""
    if not value:
        return []
    return re.findall(r'<[^<>\s]+>', str(value))


def parse_message(raw_bytes):
    """Turn a raw RFC822 message into the dict the tracker consumes"""
    msg = email.message_from_bytes(raw_bytes)

    try:
        email_date = parsedate_to_datetime(msg.get("Date"))
        # naive local time, same clock as datetime.now()
        if email_date.tzinfo is not None:
            email_date = email_date.astimezone().replace(tzinfo=None)
    except (TypeError, ValueError):
        email_date = datetime.now()

    attachments = []
    body_parts = []
    for part in msg.walk():
        if part.is_multipart():
            continue
        content_disposition = str(part.get("Content-Disposition", ""))
        filename = part.get_filename()
        if "attachment" in content_disposition or filename:
            if filename:
                attachments.append({
                    'filename': decode_str(filename),
                    'content_type': part.get_content_type(),
                    'data': part.get_payload(decode=True) or b'',
                })
        elif part.get_content_type() == 'text/plain':
            payload = part.get_payload(decode=True) or b''
            body_parts.append(decode_bytes(payload, part.get_content_charset()))

    references = extract_message_ids(msg.get("In-Reply-To")) + extract_message_ids(msg.get("References"))

    return {
        'message_id': (msg.get("Message-ID") or '').strip(),
        'subject': decode_str(msg.get("Subject")),
        'from_email': extract_email(msg.get("From")),
        'in_reply_to': (msg.get("In-Reply-To") or '').strip(),
        'references': references,
        'date': email_date,
        'body': '\n'.join(body_parts),
        'attachments': attachments,
    }


class EmailReceiver:
    def __init__(self, imap_host, imap_port, username, password, max_process=200):
        self.imap_server = imap_host
        self.imap_port = int(imap_port or 993)
        self.username = username
        self.password = password
        self.max_process = max_process
        self.mail = None

    @classmethod
    def from_user(cls, user, max_process=200):
        if not user.has_imap_config:
            raise ConfigurationError('Email configuration incomplete: set the IMAP host and username first')
        return cls(user.imap_host, user.imap_port, user.imap_username, user.imap_password,
                   max_process=max_process)

    def connect(self):
        try:
            self.mail = imaplib.IMAP4_SSL(self.imap_server, self.imap_port)
            self.mail.login(self.username, self.password or '')
        except (imaplib.IMAP4.error, OSError) as e:
            self.mail = None
            raise TransportError(f'IMAP connection to {self.imap_server}:{self.imap_port} failed: {e}') from e

    def disconnect(self):
        if self.mail is None:
            return
        try:
            self.mail.close()
            self.mail.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug('IMAP logout failed: %s', e)
        finally:
            self.mail = None

    def fetch_messages(self, since=None, lookback_days=30):
        """
        Fetch inbox messages received on or after `since` (date granularity,
        as IMAP SEARCH SINCE is). Newest first, capped at max_process.
        """
        if since is None:
            since = datetime.now() - timedelta(days=lookback_days)

        self.connect()
        try:
            typ, _ = self.mail.select('INBOX', readonly=True)
            if typ != 'OK':
                raise TransportError('Cannot select INBOX')

            search_criteria = f'(SINCE "{imap_date(since)}")'
            typ, data = self.mail.search(None, search_criteria)
            if typ != 'OK':
                raise TransportError(f'IMAP search failed: {typ}')

            email_ids = data[0].split()
            logger.info('IMAP search since %s found %d messages', imap_date(since), len(email_ids))

            results = []
            for idx, e_id in enumerate(reversed(email_ids)):
                if idx >= self.max_process:
                    logger.warning('Reached processing cap (%d messages), stopping scan', self.max_process)
                    break
                # BODY.PEEK keeps the \Seen flag untouched
                typ, msg_data = self.mail.fetch(e_id, '(BODY.PEEK[])')
                if typ != 'OK' or not msg_data or not isinstance(msg_data[0], tuple):
                    logger.warning('Skipping message %s: fetch returned %s', e_id, typ)
                    continue
                try:
                    results.append(parse_message(msg_data[0][1]))
                except Exception:
                    logger.exception('Skipping message %s: cannot be parsed', e_id)
            return results
        except imaplib.IMAP4.error as e:
            raise TransportError(f'IMAP error: {e}') from e
        finally:
            self.disconnect()
