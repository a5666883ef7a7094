import json
import logging
from dataclasses import dataclass
from typing import Optional

import requests

from status_errors import DataError, TransportError
from status_formatter import format_passport_status, format_visa_status
from status_models import Application, StatusSnapshot

NOTIFICATION_TIMEOUT_SECONDS = 30

DEFAULT_REGION_LABEL = "US visa status check"
DEFAULT_COUNTRY_LABEL = "US visa status check"
PASSPORT_TRACKING_LABEL = "US passport status check"
STATUS_CHANGED_CODE = "2"

# Wire key -> attribute name.
PAYLOAD_FIELDS = {
    "sys": "sys",
    "consDist": "cons_dist",
    "monCountry": "mon_country",
    "apptTime": "appt_time",
    "status": "status",
    "userName": "user_name",
    "remark": "remark",
}


@dataclass(frozen=True)
class NotificationPayload:
    sys: str
    cons_dist: str
    mon_country: str
    appt_time: str
    status: str
    user_name: str
    remark: str

    def to_json(self) -> str:
        return json.dumps(
            {wire: getattr(self, attr) for wire, attr in PAYLOAD_FIELDS.items()},
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str) -> "NotificationPayload":
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise DataError(f"Notification payload is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise DataError("Notification payload must be a JSON object")
        missing = [wire for wire in PAYLOAD_FIELDS if wire not in data]
        if missing:
            raise DataError("Notification payload missing keys: " + ", ".join(missing))
        return cls(**{attr: str(data[wire]) for wire, attr in PAYLOAD_FIELDS.items()})


def build_status_payload(app: Application, snapshot: StatusSnapshot) -> NotificationPayload:
    return NotificationPayload(
        sys=app.location,
        cons_dist=DEFAULT_REGION_LABEL,
        mon_country=DEFAULT_COUNTRY_LABEL,
        appt_time=snapshot.last_updated,
        status=STATUS_CHANGED_CODE,
        user_name=app.application_id,
        remark=format_visa_status(snapshot, app),
    )


def build_passport_payload(app: Application, snapshot: StatusSnapshot) -> NotificationPayload:
    return NotificationPayload(
        sys=app.location,
        cons_dist=DEFAULT_REGION_LABEL,
        mon_country=DEFAULT_COUNTRY_LABEL,
        appt_time=PASSPORT_TRACKING_LABEL,
        status=STATUS_CHANGED_CODE,
        user_name=app.application_id,
        remark=format_passport_status(snapshot, app),
    )


class NotificationDispatcher:
    """Posts notification payloads to the configured webhook, once, without retry."""

    def __init__(self, url: str, *, session: Optional[requests.Session] = None) -> None:
        self.url = url
        self.session = session or requests.Session()

    def send(self, payload: NotificationPayload) -> None:
        try:
            response = self.session.post(
                self.url,
                data=payload.to_json().encode("utf-8"),
                headers={"Content-Type": "application/json"},
                timeout=NOTIFICATION_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise TransportError(f"Notification webhook unreachable: {exc}") from exc

        logging.debug("Notification webhook response (%s): %s", response.status_code, response.text)
        if not 200 <= response.status_code < 300:
            raise TransportError(
                f"Notification webhook rejected payload for {payload.user_name}: HTTP {response.status_code}"
            )
        logging.info("Notification sent for application %s", payload.user_name)
