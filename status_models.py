import json
from dataclasses import asdict, dataclass
from typing import Any, Dict, Union

from status_errors import DataError

SURNAME_PREFIX_LENGTH = 5

RECORD_FIELDS = {
    "location": "location",
    "application_id": "application_id",
    "passport_number": "passport_number",
    "first_5_letters_of_surname": "surname_prefix",
}


@dataclass(frozen=True)
class Application:
    location: str
    application_id: str
    passport_number: str
    surname_prefix: str

    @classmethod
    def from_record(cls, raw: Union[str, bytes, Dict[str, Any]]) -> "Application":
        """Parse a registry record, raising DataError for anything malformed."""
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                raise DataError(f"Application record is not valid JSON: {exc}") from exc

        if not isinstance(raw, dict):
            raise DataError("Application record must be a JSON object")

        values = {}
        for wire_key, attr in RECORD_FIELDS.items():
            value = raw.get(wire_key)
            if not isinstance(value, str) or not value.strip():
                raise DataError(f"Application record field '{wire_key}' is missing or empty")
            values[attr] = value.strip()

        values["surname_prefix"] = values["surname_prefix"].upper()[:SURNAME_PREFIX_LENGTH]
        return cls(**values)

    def to_record(self) -> Dict[str, str]:
        return {
            "location": self.location,
            "application_id": self.application_id,
            "passport_number": self.passport_number,
            "first_5_letters_of_surname": self.surname_prefix,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_record(), ensure_ascii=False)


@dataclass(frozen=True)
class StatusSnapshot:
    status: str = ""
    status_content: str = ""
    created: str = ""
    last_updated: str = ""
    code: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CaptchaTask:
    image: bytes
    text: str = ""

    @property
    def solved(self) -> bool:
        return bool(self.text)
