from datetime import datetime

from status_models import Application, StatusSnapshot

CEAC_DATE_FORMAT = "%d-%b-%Y"


def _readable_date(raw: str) -> str:
    """Render a CEAC date like ``05-Mar-2024`` as ``March 5, 2024``; other text passes through."""
    value = (raw or "").strip()
    try:
        parsed = datetime.strptime(value, CEAC_DATE_FORMAT)
    except ValueError:
        return value
    return f"{parsed.strftime('%B')} {parsed.day}, {parsed.year}"


def format_visa_status(snapshot: StatusSnapshot, app: Application) -> str:
    lines = [
        f"Visa status: {snapshot.status}",
        f"Created: {_readable_date(snapshot.created)}",
        f"Last updated: {_readable_date(snapshot.last_updated)}",
        f"Details: {snapshot.status_content}",
        f"Application ID: {app.application_id}",
        f"Passport number: {app.passport_number}",
    ]
    return "\n\n\n" + "\n".join(lines) + "\n\n\n"


def format_passport_status(snapshot: StatusSnapshot, app: Application) -> str:
    return (
        f"\n\n\nCurrent passport status: {snapshot.status}\n"
        f"Passport number: {app.passport_number}\n"
        f"Application ID: {app.application_id}\n\n\n"
    )
