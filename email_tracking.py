import email
import imaplib
import logging
import smtplib
import time
from dataclasses import dataclass
from email.message import Message
from email.mime.text import MIMEText
from email.policy import default as default_policy
from typing import Callable, Optional

from scheduling_utils import AttemptDeadline, bounded_timeout
from status_errors import FatalConfigError, TransportError
from status_models import Application, StatusSnapshot

TRACKING_ADDRESS = "passportstatus@ustraveldocs.com"
EMAIL_SETTLE_SECONDS = 25
MIN_FETCH_SECONDS = 5
MAIL_TIMEOUT_SECONDS = 60
CLIENT_ID = '("name" "IMAPClient" "version" "3.1.0")'


@dataclass(frozen=True)
class MailSettings:
    account: str
    password: str
    smtp_server: str = "smtp.163.com"
    smtp_port: int = 465
    imap_server: str = "imap.163.com"
    imap_port: int = 993
    tracking_address: str = TRACKING_ADDRESS

    def is_configured(self) -> bool:
        return bool(self.account.strip() and self.password.strip())


def extract_inline_text(message: Message) -> str:
    """Return the first non-attachment text part of ``message``."""
    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        if part.get_content_maintype() != "text":
            continue
        payload = part.get_payload(decode=True) or b""
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="replace").strip()
        except LookupError:
            return payload.decode("utf-8", errors="replace").strip()
    raise TransportError("Tracking reply has no inline text body")


def _socket_timeout(deadline: Optional[AttemptDeadline], action: str) -> float:
    timeout = bounded_timeout(MAIL_TIMEOUT_SECONDS, deadline)
    if timeout <= 0:
        raise TransportError(f"Attempt deadline expired before {action}")
    return timeout


class EmailTrackingClient:
    """Asks the passport tracking robot for a status and reads its reply.

    The exchange is single-shot: after a fixed settle delay the newest message
    in the inbox is taken as the reply. Nothing checks that it really is.
    """

    def __init__(
        self,
        settings: MailSettings,
        *,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP_SSL,
        imap_factory: Callable[..., imaplib.IMAP4] = imaplib.IMAP4_SSL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._smtp_factory = smtp_factory
        self._imap_factory = imap_factory
        self._sleep = sleep

    def track(self, app: Application, deadline: Optional[AttemptDeadline] = None) -> StatusSnapshot:
        if not self.settings.is_configured():
            raise FatalConfigError("MAIL_ACCOUNT and MAIL_PASSWORD are required for passport tracking")

        self.send_request(app, deadline)

        if deadline is not None and deadline.remaining() < EMAIL_SETTLE_SECONDS + MIN_FETCH_SECONDS:
            raise TransportError("Attempt deadline expires before the tracking reply can settle")
        logging.info("Waiting %s seconds for the tracking reply", EMAIL_SETTLE_SECONDS)
        self._sleep(EMAIL_SETTLE_SECONDS)

        body = self.fetch_latest_reply(deadline)
        logging.info("Passport tracking reply received for application %s", app.application_id)
        return StatusSnapshot(status=body, code=200)

    def send_request(self, app: Application, deadline: Optional[AttemptDeadline] = None) -> None:
        settings = self.settings
        timeout = _socket_timeout(deadline, "sending the tracking request")
        msg = MIMEText(app.passport_number, "plain", "utf-8")
        msg["Subject"] = app.passport_number
        msg["From"] = settings.account
        msg["To"] = settings.tracking_address

        try:
            with self._smtp_factory(
                settings.smtp_server,
                settings.smtp_port,
                timeout=timeout,
            ) as server:
                server.login(settings.account, settings.password)
                server.sendmail(settings.account, [settings.tracking_address], msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            raise TransportError(f"SMTP authentication failed for {settings.account}: {exc}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportError(f"Failed to send tracking request: {exc}") from exc

        logging.info("Tracking request sent to %s", settings.tracking_address)

    def fetch_latest_reply(self, deadline: Optional[AttemptDeadline] = None) -> str:
        settings = self.settings
        timeout = _socket_timeout(deadline, "reading the tracking reply")
        try:
            conn = self._imap_factory(
                settings.imap_server,
                settings.imap_port,
                timeout=timeout,
            )
        except (OSError, ValueError) as exc:
            raise TransportError(f"Unable to reach IMAP server {settings.imap_server}: {exc}") from exc

        try:
            conn.login(settings.account, settings.password)
            self._send_client_id(conn)

            typ, data = conn.select("INBOX")
            if typ != "OK":
                raise TransportError(f"Unable to select INBOX: {data!r}")
            count = int(data[0] or 0)
            if count == 0:
                raise TransportError("Inbox is empty; no tracking reply to read")

            typ, msg_data = conn.fetch(str(count), "(RFC822)")
            if typ != "OK":
                raise TransportError(f"Unable to fetch message {count}: {msg_data!r}")
            raw = next((item[1] for item in msg_data if isinstance(item, tuple)), None)
            if not raw:
                raise TransportError(f"Message {count} came back empty")
        except imaplib.IMAP4.error as exc:
            raise TransportError(f"IMAP session failed: {exc}") from exc
        except (OSError, ValueError) as exc:
            raise TransportError(f"IMAP session failed: {exc}") from exc
        finally:
            try:
                conn.logout()
            except (imaplib.IMAP4.error, OSError):
                logging.debug("IMAP logout raised; ignoring to continue cleanup.")

        message = email.message_from_bytes(raw, policy=default_policy)
        logging.info("Latest message: subject=%r date=%s", message.get("Subject", ""), message.get("Date", ""))
        return extract_inline_text(message)

    def _send_client_id(self, conn: imaplib.IMAP4) -> None:
        # 163.com refuses SELECT until the client identifies itself (RFC 2971).
        try:
            typ, _ = conn.xatom("ID", CLIENT_ID)
        except imaplib.IMAP4.error as exc:
            logging.debug("IMAP server rejected ID command: %s", exc)
            return
        if typ != "OK":
            logging.debug("IMAP ID command returned %s", typ)
