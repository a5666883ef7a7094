from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
import imaplib
from pathlib import Path
import smtplib
import sys
from typing import List

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from email_tracking import (
    EMAIL_SETTLE_SECONDS,
    MIN_FETCH_SECONDS,
    TRACKING_ADDRESS,
    EmailTrackingClient,
    MailSettings,
)
from scheduling_utils import AttemptDeadline
from status_errors import FatalConfigError, TransportError
from status_models import Application

APP = Application(location="BEJ", application_id="AA001", passport_number="E12345678", surname_prefix="ZHANG")
SETTINGS = MailSettings(account="tracker@163.com", password="auth-code")


def _reply_bytes() -> bytes:
    msg = MIMEMultipart()
    msg["Subject"] = "Passport status"
    msg["From"] = TRACKING_ADDRESS
    attachment = MIMEApplication(b"%PDF-1.4 receipt", Name="receipt.pdf")
    attachment.add_header("Content-Disposition", "attachment", filename="receipt.pdf")
    msg.attach(attachment)
    msg.attach(MIMEText("  Your passport is ready for pickup.  ", "plain", "utf-8"))
    return msg.as_bytes()


class FakeSMTP:
    instances: List["FakeSMTP"] = []

    def __init__(self, host, port, timeout=None, fail_login: bool = False) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.fail_login = fail_login
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def login(self, user, password):
        if self.fail_login:
            raise smtplib.SMTPAuthenticationError(535, b"authentication failed")

    def sendmail(self, from_addr, to_addrs, msg):
        self.sent.append((from_addr, to_addrs, msg))


class FakeIMAP:
    def __init__(self, messages=None, fail_login: bool = False) -> None:
        self.messages = list(messages or [])
        self.fail_login = fail_login
        self.commands = []
        self.host = None
        self.logged_out = False

    def __call__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        return self

    def login(self, user, password):
        if self.fail_login:
            raise imaplib.IMAP4.error("LOGIN failed")
        return "OK", [b"LOGIN completed"]

    def xatom(self, name, *args):
        self.commands.append(name)
        return "OK", [b"ID completed"]

    def select(self, mailbox):
        self.commands.append("SELECT")
        return "OK", [str(len(self.messages)).encode()]

    def fetch(self, message_set, parts):
        self.commands.append(("FETCH", message_set))
        raw = self.messages[int(message_set) - 1]
        return "OK", [(f"{message_set} (RFC822 {{{len(raw)}}}".encode(), raw), b")"]

    def logout(self):
        self.logged_out = True
        return "BYE", []


@pytest.fixture(autouse=True)
def _reset_smtp() -> None:
    FakeSMTP.instances.clear()


def _client(imap: FakeIMAP, *, fail_smtp_login: bool = False, settings: MailSettings = SETTINGS):
    sleeps: List[float] = []

    def smtp_factory(host, port, timeout=None):
        return FakeSMTP(host, port, timeout=timeout, fail_login=fail_smtp_login)

    client = EmailTrackingClient(settings, smtp_factory=smtp_factory, imap_factory=imap, sleep=sleeps.append)
    return client, sleeps


def test_track_returns_inline_text_of_latest_reply() -> None:
    imap = FakeIMAP(messages=[b"Subject: old\r\n\r\nstale", _reply_bytes()])
    client, sleeps = _client(imap)

    snapshot = client.track(APP)

    assert snapshot.status == "Your passport is ready for pickup."
    assert snapshot.code == 200
    assert sleeps == [EMAIL_SETTLE_SECONDS]
    assert ("FETCH", "2") in imap.commands
    assert imap.commands.index("ID") < imap.commands.index("SELECT")
    assert imap.logged_out


def test_request_mail_carries_passport_number() -> None:
    client, _ = _client(FakeIMAP(messages=[_reply_bytes()]))
    client.track(APP)

    smtp = FakeSMTP.instances[0]
    assert (smtp.host, smtp.port) == ("smtp.163.com", 465)
    from_addr, to_addrs, body = smtp.sent[0]
    assert from_addr == "tracker@163.com"
    assert to_addrs == [TRACKING_ADDRESS]
    assert "Subject: E12345678" in body


def test_smtp_login_failure_is_a_transport_error() -> None:
    imap = FakeIMAP(messages=[_reply_bytes()])
    client, sleeps = _client(imap, fail_smtp_login=True)

    with pytest.raises(TransportError, match="SMTP authentication failed"):
        client.track(APP)
    assert sleeps == []
    assert imap.commands == []


def test_imap_login_failure_still_logs_out() -> None:
    imap = FakeIMAP(messages=[_reply_bytes()], fail_login=True)
    client, _ = _client(imap)

    with pytest.raises(TransportError, match="IMAP session failed"):
        client.track(APP)
    assert imap.logged_out


def test_empty_inbox_is_reported() -> None:
    client, _ = _client(FakeIMAP(messages=[]))
    with pytest.raises(TransportError, match="Inbox is empty"):
        client.track(APP)


def test_short_deadline_stops_before_waiting() -> None:
    client, sleeps = _client(FakeIMAP(messages=[_reply_bytes()]))
    with pytest.raises(TransportError, match="deadline"):
        client.track(APP, deadline=AttemptDeadline(EMAIL_SETTLE_SECONDS - 5))
    assert sleeps == []


def test_deadline_reserves_time_for_the_fetch() -> None:
    client, sleeps = _client(FakeIMAP(messages=[_reply_bytes()]))
    with pytest.raises(TransportError, match="deadline"):
        client.track(APP, deadline=AttemptDeadline(EMAIL_SETTLE_SECONDS + MIN_FETCH_SECONDS - 3))
    assert sleeps == []


class DrainingDeadline:
    def __init__(self, seconds: float) -> None:
        self.left = seconds

    def remaining(self) -> float:
        return self.left

    @property
    def expired(self) -> bool:
        return self.left <= 0


def test_deadline_spent_during_settle_is_a_transport_error() -> None:
    deadline = DrainingDeadline(EMAIL_SETTLE_SECONDS + MIN_FETCH_SECONDS + 1)
    imap = FakeIMAP(messages=[_reply_bytes()])

    def drain(seconds: float) -> None:
        deadline.left = 0.0

    client = EmailTrackingClient(
        SETTINGS,
        smtp_factory=lambda host, port, timeout=None: FakeSMTP(host, port, timeout=timeout),
        imap_factory=imap,
        sleep=drain,
    )

    with pytest.raises(TransportError, match="deadline expired before reading"):
        client.track(APP, deadline=deadline)
    assert imap.host is None
    assert FakeSMTP.instances[0].timeout > 0


def test_expired_deadline_never_opens_smtp() -> None:
    client, _ = _client(FakeIMAP(messages=[_reply_bytes()]))
    with pytest.raises(TransportError, match="deadline expired before sending"):
        client.send_request(APP, deadline=DrainingDeadline(0.0))
    assert FakeSMTP.instances == []


def test_unconfigured_mailbox_is_fatal() -> None:
    client, _ = _client(FakeIMAP(), settings=MailSettings(account="", password=""))
    with pytest.raises(FatalConfigError):
        client.track(APP)
    assert FakeSMTP.instances == []
