import json
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from status_errors import DataError
from status_formatter import format_passport_status, format_visa_status
from status_models import Application, CaptchaTask, StatusSnapshot

RECORD = {
    "location": "BEJ",
    "application_id": "AA001",
    "passport_number": "E12345678",
    "first_5_letters_of_surname": "zhang",
}


def test_application_parses_registry_record() -> None:
    app = Application.from_record(json.dumps(RECORD))
    assert app == Application(
        location="BEJ", application_id="AA001", passport_number="E12345678", surname_prefix="ZHANG"
    )
    assert app.to_record()["first_5_letters_of_surname"] == "ZHANG"


def test_application_accepts_bytes_and_trims_surname() -> None:
    record = {**RECORD, "first_5_letters_of_surname": "Washington"}
    app = Application.from_record(json.dumps(record).encode("utf-8"))
    assert app.surname_prefix == "WASHI"


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        json.dumps(["AA001"]),
        json.dumps({**RECORD, "application_id": ""}),
        json.dumps({k: v for k, v in RECORD.items() if k != "passport_number"}),
        json.dumps({**RECORD, "location": 7}),
    ],
)
def test_malformed_records_raise_data_error(raw: str) -> None:
    with pytest.raises(DataError):
        Application.from_record(raw)


def test_snapshot_equality_is_field_wise() -> None:
    first = StatusSnapshot(status="Issued", created="05-Mar-2024", last_updated="20-Mar-2024", code=200)
    assert first == StatusSnapshot(**first.to_dict())
    assert first != StatusSnapshot(**{**first.to_dict(), "status_content": "changed"})


def test_captcha_task_solved_flag() -> None:
    task = CaptchaTask(image=b"png")
    assert not task.solved
    task.text = "k7Qd"
    assert task.solved


def test_visa_status_text_renders_dates() -> None:
    app = Application.from_record(RECORD)
    snapshot = StatusSnapshot(
        status="Issued",
        status_content="Your visa is in final processing.",
        created="05-Mar-2024",
        last_updated="20-Mar-2024",
        code=200,
    )
    text = format_visa_status(snapshot, app)
    assert "Visa status: Issued" in text
    assert "March 5, 2024" in text
    assert "March 20, 2024" in text
    assert "Application ID: AA001" in text
    assert "E12345678" in text


def test_unparseable_dates_pass_through() -> None:
    app = Application.from_record(RECORD)
    text = format_visa_status(StatusSnapshot(status="Refused", created="sometime", code=200), app)
    assert "Created: sometime" in text


def test_passport_status_text() -> None:
    app = Application.from_record(RECORD)
    text = format_passport_status(StatusSnapshot(status="Ready for pickup", code=200), app)
    assert "Current passport status: Ready for pickup" in text
    assert "Passport number: E12345678" in text
