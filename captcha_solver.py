import base64
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import requests

from scheduling_utils import AttemptDeadline, bounded_timeout
from status_errors import CaptchaSolveError, FatalConfigError
from status_models import CaptchaTask

CAPTCHA_URL = "http://upload.chaojiying.net/Upload/Processing.php"
MAX_SOLVE_ATTEMPTS = 3
SOLVE_BACKOFF_SECONDS = 2
REQUEST_TIMEOUT_SECONDS = 60

SOLVER_HEADERS = {
    "User-Agent": "Mozilla/4.0 (compatible; MSIE 8.0; Windows NT 5.1; Trident/4.0)",
    "Connection": "Keep-Alive",
}


@dataclass(frozen=True)
class CaptchaCredentials:
    username: str
    password: str
    soft_id: str
    code_type: str = "1902"
    min_len: str = "0"

    def missing(self) -> List[str]:
        names = {
            "CJY_USERNAME": self.username,
            "CJY_PASSWORD": self.password,
            "CJY_SOFT_ID": self.soft_id,
            "CJY_CODE_TYPE": self.code_type,
        }
        return [key for key, value in names.items() if not str(value or "").strip()]


class CaptchaSolver:
    """Client for the Chaojiying image recognition endpoint.

    Every call is billed by the service, so a solve makes at most
    ``MAX_SOLVE_ATTEMPTS`` requests and stops at the first usable answer.
    """

    def __init__(
        self,
        url: str = CAPTCHA_URL,
        *,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.url = url
        self.session = session or requests.Session()
        self._sleep = sleep

    def solve(
        self,
        image: bytes,
        credentials: CaptchaCredentials,
        deadline: Optional[AttemptDeadline] = None,
    ) -> str:
        missing = credentials.missing()
        if missing:
            raise FatalConfigError("Captcha solver credentials missing: " + ", ".join(missing))
        if not image:
            raise CaptchaSolveError("Captcha image is empty")

        task = CaptchaTask(image=image)
        form = {
            "user": credentials.username,
            "pass": credentials.password,
            "softid": credentials.soft_id,
            "codetype": credentials.code_type,
            "len_min": credentials.min_len,
            "file_base64": base64.b64encode(task.image).decode("ascii"),
        }

        last_error = "no attempt made"
        for attempt in range(1, MAX_SOLVE_ATTEMPTS + 1):
            if deadline is not None and deadline.expired:
                last_error = "attempt deadline expired"
                break
            try:
                task.text = self._request(form, deadline)
            except CaptchaSolveError as exc:
                last_error = str(exc)
                logging.warning("Captcha solve attempt %s/%s failed: %s", attempt, MAX_SOLVE_ATTEMPTS, exc)
            else:
                logging.info("Captcha solved on attempt %s/%s", attempt, MAX_SOLVE_ATTEMPTS)
                return task.text

            if attempt < MAX_SOLVE_ATTEMPTS:
                self._sleep(SOLVE_BACKOFF_SECONDS)

        raise CaptchaSolveError(
            f"Captcha could not be solved after {MAX_SOLVE_ATTEMPTS} attempts: {last_error}"
        )

    def _request(self, form: dict, deadline: Optional[AttemptDeadline]) -> str:
        timeout = bounded_timeout(REQUEST_TIMEOUT_SECONDS, deadline)
        if timeout <= 0:
            raise CaptchaSolveError("attempt deadline expired")
        try:
            response = self.session.post(
                self.url,
                data=form,
                headers=SOLVER_HEADERS,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise CaptchaSolveError(f"request failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise CaptchaSolveError(f"response is not JSON (HTTP {response.status_code})") from exc

        if not isinstance(body, dict):
            raise CaptchaSolveError("response JSON is not an object")

        err_no = body.get("err_no", 0)
        if err_no not in (0, "0", None):
            raise CaptchaSolveError(f"service error {err_no}: {body.get('err_str', '')}")

        text = body.get("pic_str")
        if not isinstance(text, str) or not text.strip():
            raise CaptchaSolveError("response has no pic_str")
        return text.strip()
