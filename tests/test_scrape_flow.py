from pathlib import Path
import sys
from typing import Dict, List, Optional

import pytest
from selenium.common.exceptions import NoSuchElementException

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from scheduling_utils import AttemptDeadline
from status_errors import CaptchaSolveError, DataError, TransientScrapeError
from status_models import Application
from visa_status_checker import CheckerConfig, VisaStatusChecker

RESULT_PREFIX = "ctl00_ContentPlaceHolder1_ucApplicationStatusView_"
APP = Application(location="BEJ", application_id="AA001", passport_number="E12345678", surname_prefix="ZHANG")


class FakeOption:
    def __init__(self, value: str) -> None:
        self.value = value
        self.selected = False

    def is_selected(self) -> bool:
        return self.selected

    def is_enabled(self) -> bool:
        return True

    def click(self) -> None:
        self.selected = True


class FakeElement:
    def __init__(self, tag_name: str = "input", text: str = "", options: Optional[List[str]] = None) -> None:
        self.tag_name = tag_name
        self.text = text
        self.options = [FakeOption(v) for v in options or []]
        self.typed: List[str] = []
        self.clicked = False
        self.screenshot_as_png = b"\x89PNGcaptcha"

    def is_displayed(self) -> bool:
        return True

    def is_enabled(self) -> bool:
        return True

    def get_dom_attribute(self, name):
        return None

    def get_attribute(self, name):
        return None

    def find_elements(self, by, css):
        return [option for option in self.options if f'"{option.value}"' in css]

    def clear(self) -> None:
        self.typed.clear()

    def send_keys(self, value: str) -> None:
        self.typed.append(value)

    def click(self) -> None:
        self.clicked = True

    def selected_value(self) -> Optional[str]:
        return next((option.value for option in self.options if option.selected), None)


class FakeDriver:
    def __init__(self, elements: Dict[str, FakeElement]) -> None:
        self.elements = elements
        self.visited: List[str] = []
        self.quit_called = False

    def get(self, url: str) -> None:
        self.visited.append(url)

    def execute_script(self, script: str):
        return "complete"

    def find_element(self, by, value):
        if value not in self.elements:
            raise NoSuchElementException(f"no element {value}")
        return self.elements[value]

    @property
    def page_source(self) -> str:
        return "<html><body>status form</body></html>"

    def save_screenshot(self, path: str) -> bool:
        Path(path).write_bytes(b"png")
        return True

    def quit(self) -> None:
        self.quit_called = True


class FakeSolver:
    def __init__(self, answer: str = "k7Qd", error: Optional[Exception] = None) -> None:
        self.answer = answer
        self.error = error
        self.images: List[bytes] = []

    def solve(self, image, credentials, deadline=None) -> str:
        self.images.append(image)
        if self.error is not None:
            raise self.error
        return self.answer


def _page() -> Dict[str, FakeElement]:
    return {
        "Visa_Application_Type": FakeElement("select", options=["NIV", "IV"]),
        "Location_Dropdown": FakeElement("select", options=["BEJ", "SHG", "GUZ"]),
        "Visa_Case_Number": FakeElement(),
        "Passport_Number": FakeElement(),
        "Surname": FakeElement(),
        "c_status_ctl00_contentplaceholder1_defaultcaptcha_CaptchaImage": FakeElement("img"),
        "Captcha": FakeElement(),
        "ctl00_ContentPlaceHolder1_btnSubmit": FakeElement("input"),
        RESULT_PREFIX + "lblStatus": FakeElement("span", text=" Issued "),
        RESULT_PREFIX + "pTranslation": FakeElement("p", text="Your visa is in final processing."),
        RESULT_PREFIX + "lblSubmitDate": FakeElement("span", text="05-Mar-2024"),
        RESULT_PREFIX + "lblStatusDate": FakeElement("span", text="20-Mar-2024"),
    }


@pytest.fixture
def cfg(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> CheckerConfig:
    monkeypatch.chdir(tmp_path)
    for key in ("FIELD_TIMEOUT_SECONDS", "PAGE_LOAD_TIMEOUT_SECONDS", "NOTIFICATION_URL"):
        monkeypatch.delenv(key, raising=False)
    config_path = tmp_path / "config.ini"
    config_path.write_text(
        "[DEFAULT]\n"
        "NOTIFICATION_URL = https://hooks.example.com/notify\n"
        "FIELD_TIMEOUT_SECONDS = 1\n"
        "PAGE_LOAD_TIMEOUT_SECONDS = 2\n"
        "CJY_USERNAME = user\n"
        "CJY_PASSWORD = pass\n"
        "CJY_SOFT_ID = 96001\n",
        encoding="utf-8",
    )
    return CheckerConfig.load(str(config_path))


def _checker(cfg: CheckerConfig, driver: FakeDriver, solver: FakeSolver) -> VisaStatusChecker:
    return VisaStatusChecker(cfg, solver=solver, driver_factory=lambda: driver)


def test_scrape_fills_form_and_reads_result(cfg: CheckerConfig) -> None:
    page = _page()
    driver = FakeDriver(page)
    solver = FakeSolver()

    snapshot = _checker(cfg, driver, solver).scrape(APP, deadline=AttemptDeadline(60))

    assert snapshot.status == "Issued"
    assert snapshot.status_content == "Your visa is in final processing."
    assert snapshot.created == "05-Mar-2024"
    assert snapshot.last_updated == "20-Mar-2024"
    assert snapshot.code == 200

    assert driver.visited == [cfg.status_url]
    assert page["Visa_Application_Type"].selected_value() == "NIV"
    assert page["Location_Dropdown"].selected_value() == "BEJ"
    assert page["Visa_Case_Number"].typed == ["AA001"]
    assert page["Passport_Number"].typed == ["E12345678"]
    assert page["Surname"].typed == ["ZHANG"]
    assert solver.images == [b"\x89PNGcaptcha"]
    assert page["Captcha"].typed == ["k7Qd"]
    assert page["ctl00_ContentPlaceHolder1_btnSubmit"].clicked
    assert driver.quit_called


def test_missing_field_names_the_stage(cfg: CheckerConfig, tmp_path: Path) -> None:
    page = _page()
    del page["Passport_Number"]
    driver = FakeDriver(page)
    solver = FakeSolver()

    with pytest.raises(TransientScrapeError) as excinfo:
        _checker(cfg, driver, solver).scrape(APP, deadline=AttemptDeadline(60))

    assert excinfo.value.stage == "fill passport number"
    assert solver.images == []
    assert driver.quit_called
    assert list((tmp_path / "artifacts").glob("*AA001_failed*.html"))


def test_unknown_location_is_a_data_error(cfg: CheckerConfig) -> None:
    driver = FakeDriver(_page())
    app = Application(location="XXX", application_id="AA001", passport_number="E1", surname_prefix="ZHANG")

    with pytest.raises(DataError, match="XXX"):
        _checker(cfg, driver, FakeSolver()).scrape(app, deadline=AttemptDeadline(60))
    assert driver.quit_called


def test_captcha_failure_propagates_and_closes_browser(cfg: CheckerConfig) -> None:
    page = _page()
    driver = FakeDriver(page)
    solver = FakeSolver(error=CaptchaSolveError("Captcha could not be solved after 3 attempts"))

    with pytest.raises(CaptchaSolveError):
        _checker(cfg, driver, solver).scrape(APP, deadline=AttemptDeadline(60))

    assert page["Captcha"].typed == []
    assert not page["ctl00_ContentPlaceHolder1_btnSubmit"].clicked
    assert driver.quit_called


def test_expired_deadline_stops_before_first_field(cfg: CheckerConfig) -> None:
    page = _page()
    driver = FakeDriver(page)

    with pytest.raises(TransientScrapeError, match="deadline"):
        _checker(cfg, driver, FakeSolver()).scrape(APP, deadline=AttemptDeadline(0))

    assert page["Visa_Case_Number"].typed == []
    assert driver.quit_called


def test_missing_result_field_fails_after_submit(cfg: CheckerConfig) -> None:
    page = _page()
    del page[RESULT_PREFIX + "lblStatusDate"]
    driver = FakeDriver(page)
    snapshots = []

    with pytest.raises(TransientScrapeError) as excinfo:
        snapshots.append(_checker(cfg, driver, FakeSolver()).scrape(APP, deadline=AttemptDeadline(60)))

    assert excinfo.value.stage == "extract result"
    assert snapshots == []
    assert page["ctl00_ContentPlaceHolder1_btnSubmit"].clicked
    assert driver.quit_called
