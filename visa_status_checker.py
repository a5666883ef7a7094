import argparse
import configparser
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlparse

from selenium import webdriver
from selenium.common.exceptions import (
    NoSuchElementException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import Select, WebDriverWait

from application_registry import KEY_PREFIX, RedisApplicationRegistry
from browser_session import chrome_session, install_chromedriver, start_chrome
from captcha_solver import CAPTCHA_URL, CaptchaCredentials, CaptchaSolver
from email_tracking import TRACKING_ADDRESS, EmailTrackingClient, MailSettings
from logging_utils import ARTIFACTS_DIR, configure_logging
from notification_utils import NotificationDispatcher
from scheduling_utils import AttemptDeadline, StatusScheduler, bounded_timeout
from status_errors import DataError, StatusCheckError, TransientScrapeError, TransportError
from status_models import Application, StatusSnapshot
from status_tracker import StatusTracker

STATUS_URL = "https://ceac.state.gov/CEACStatTracker/Status.aspx"

Selector = Tuple[str, str]


@dataclass
class CheckerConfig:
    status_url: str
    visa_application_type: str
    field_timeout_seconds: int
    page_load_timeout_seconds: int
    attempt_deadline_seconds: int
    captcha_url: str
    cjy_username: str
    cjy_password: str
    cjy_soft_id: str
    cjy_code_type: str
    cjy_min_len: str
    mail_account: str
    mail_password: str
    smtp_server: str
    smtp_port: int
    imap_server: str
    imap_port: int
    tracking_address: str
    email_tracking_enabled: bool
    notification_url: str
    redis_url: str
    registry_key_prefix: str
    check_interval_minutes: int
    heartbeat_path: Optional[str]

    @classmethod
    def load(cls, path: str = "config.ini") -> "CheckerConfig":
        parser = configparser.ConfigParser()
        parser.optionxform = str

        if not parser.read(path):
            raise FileNotFoundError(
                f"Unable to load configuration. Expected file at '{path}'. "
                "Run with --setup to create one."
            )

        raw_defaults = {k.upper(): v for k, v in parser["DEFAULT"].items()}

        required = ["NOTIFICATION_URL"]
        missing = [key for key in required if key not in raw_defaults and os.getenv(key) is None]
        if missing:
            raise KeyError(
                "Configuration missing required keys: " + ", ".join(sorted(missing))
            )

        def _get(key: str, fallback: Optional[str] = None) -> str:
            value = os.getenv(key, raw_defaults.get(key, fallback))
            if value is None:
                raise KeyError(f"Missing configuration value for {key}")
            return str(value).strip()

        def _to_bool(value: str) -> bool:
            return str(value).strip().lower() in {"1", "true", "yes", "on"}

        def _get_int(key: str, fallback: int, *, minimum: int = 1) -> int:
            try:
                value = int(_get(key, str(fallback)))
            except ValueError as exc:  # noqa: B904
                raise ValueError(f"Invalid configuration: {key} must be an integer") from exc
            if value < minimum:
                raise ValueError(f"Invalid configuration: {key} must be at least {minimum}")
            return value

        def _get_url(key: str, fallback: Optional[str] = None) -> str:
            value = _get(key, fallback)
            parsed = urlparse(value)
            if parsed.scheme not in {"http", "https", "redis", "rediss", "unix"} or not (parsed.netloc or parsed.path):
                raise ValueError(f"Invalid configuration: {key} is not a valid URL ({value!r})")
            return value

        return cls(
            status_url=_get_url("STATUS_URL", STATUS_URL),
            visa_application_type=_get("VISA_APPLICATION_TYPE", "NIV"),
            field_timeout_seconds=_get_int("FIELD_TIMEOUT_SECONDS", 20),
            page_load_timeout_seconds=_get_int("PAGE_LOAD_TIMEOUT_SECONDS", 60),
            attempt_deadline_seconds=_get_int("ATTEMPT_DEADLINE_SECONDS", 300, minimum=30),
            captcha_url=_get_url("CAPTCHA_URL", CAPTCHA_URL),
            cjy_username=_get("CJY_USERNAME", ""),
            cjy_password=_get("CJY_PASSWORD", ""),
            cjy_soft_id=_get("CJY_SOFT_ID", ""),
            cjy_code_type=_get("CJY_CODE_TYPE", "1902"),
            cjy_min_len=_get("CJY_MIN_LEN", "0"),
            mail_account=_get("MAIL_ACCOUNT", ""),
            mail_password=_get("MAIL_PASSWORD", ""),
            smtp_server=_get("SMTP_SERVER", "smtp.163.com"),
            smtp_port=_get_int("SMTP_PORT", 465),
            imap_server=_get("IMAP_SERVER", "imap.163.com"),
            imap_port=_get_int("IMAP_PORT", 993),
            tracking_address=_get("TRACKING_ADDRESS", TRACKING_ADDRESS),
            email_tracking_enabled=_to_bool(_get("EMAIL_TRACKING_ENABLED", "True")),
            notification_url=_get_url("NOTIFICATION_URL"),
            redis_url=_get_url("REDIS_URL", "redis://localhost:6379/0"),
            registry_key_prefix=_get("REGISTRY_KEY_PREFIX", KEY_PREFIX),
            check_interval_minutes=_get_int("CHECK_INTERVAL_MINUTES", 1),
            heartbeat_path=os.getenv("HEARTBEAT_PATH", raw_defaults.get("HEARTBEAT_PATH")) or None,
        )

    def captcha_credentials(self) -> CaptchaCredentials:
        return CaptchaCredentials(
            username=self.cjy_username,
            password=self.cjy_password,
            soft_id=self.cjy_soft_id,
            code_type=self.cjy_code_type,
            min_len=self.cjy_min_len,
        )

    def mail_settings(self) -> MailSettings:
        return MailSettings(
            account=self.mail_account,
            password=self.mail_password,
            smtp_server=self.smtp_server,
            smtp_port=self.smtp_port,
            imap_server=self.imap_server,
            imap_port=self.imap_port,
            tracking_address=self.tracking_address,
        )

    @staticmethod
    def _mask(value: str, *, keep: int = 2) -> str:
        if not value:
            return ""
        if len(value) <= keep * 2:
            return value[0] + "***" if len(value) > 1 else "*"
        return f"{value[:keep]}***{value[-keep:]}"

    def masked_summary(self) -> str:
        return (
            f"status_url={self.status_url} | captcha_user={self._mask(self.cjy_username)} | "
            f"mail={self._mask(self.mail_account)} | email_tracking={self.email_tracking_enabled} | "
            f"registry={self.registry_key_prefix}* | interval={self.check_interval_minutes}m"
        )


class ScrapeStage(Enum):
    NAVIGATE = "navigate"
    FILL_VISA_TYPE = "fill visa type"
    FILL_LOCATION = "fill location"
    FILL_CASE_NUMBER = "fill case number"
    FILL_PASSPORT_NUMBER = "fill passport number"
    FILL_SURNAME = "fill surname"
    CAPTURE_CAPTCHA = "capture captcha"
    SOLVE_CAPTCHA = "solve captcha"
    SUBMIT_FORM = "submit form"
    EXTRACT_RESULT = "extract result"


class VisaStatusChecker:
    VISA_TYPE_SELECTORS: List[Selector] = [(By.ID, "Visa_Application_Type")]
    LOCATION_SELECTORS: List[Selector] = [(By.ID, "Location_Dropdown")]
    CASE_NUMBER_SELECTORS: List[Selector] = [(By.ID, "Visa_Case_Number")]
    PASSPORT_NUMBER_SELECTORS: List[Selector] = [(By.ID, "Passport_Number")]
    SURNAME_SELECTORS: List[Selector] = [(By.ID, "Surname")]

    CAPTCHA_IMAGE_SELECTORS: List[Selector] = [
        (By.ID, "c_status_ctl00_contentplaceholder1_defaultcaptcha_CaptchaImage"),
    ]
    CAPTCHA_INPUT_SELECTORS: List[Selector] = [(By.ID, "Captcha")]

    SUBMIT_SELECTORS: List[Selector] = [
        (By.ID, "ctl00_ContentPlaceHolder1_btnSubmit"),
        (By.ID, "ctl00_ContentPlaceHolder1_imgFolder"),
    ]

    STATUS_SELECTORS: List[Selector] = [
        (By.ID, "ctl00_ContentPlaceHolder1_ucApplicationStatusView_lblStatus"),
    ]
    DETAIL_SELECTORS: List[Selector] = [
        (By.ID, "ctl00_ContentPlaceHolder1_ucApplicationStatusView_pTranslation"),
    ]
    SUBMIT_DATE_SELECTORS: List[Selector] = [
        (By.ID, "ctl00_ContentPlaceHolder1_ucApplicationStatusView_lblSubmitDate"),
    ]
    STATUS_DATE_SELECTORS: List[Selector] = [
        (By.ID, "ctl00_ContentPlaceHolder1_ucApplicationStatusView_lblStatusDate"),
    ]

    def __init__(
        self,
        cfg: CheckerConfig,
        *,
        solver: CaptchaSolver,
        headless: bool = True,
        driver_factory: Optional[Callable[[], webdriver.Chrome]] = None,
    ) -> None:
        self.cfg = cfg
        self.solver = solver
        self.headless = headless
        self._driver_factory = driver_factory
        self._driver_path: Optional[str] = None
        self._install_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Driver lifecycle helpers
    # ------------------------------------------------------------------
    def _new_driver(self) -> webdriver.Chrome:
        if self._driver_factory is not None:
            return self._driver_factory()
        with self._install_lock:
            if self._driver_path is None:
                self._driver_path = install_chromedriver()
        return start_chrome(
            self._driver_path,
            headless=self.headless,
            page_load_timeout=self.cfg.page_load_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # High level flow
    # ------------------------------------------------------------------
    def scrape(self, app: Application, deadline: Optional[AttemptDeadline] = None) -> StatusSnapshot:
        """Fill the CEAC status form for ``app`` and read the result panel.

        Opens a fresh browser for the attempt and always closes it. Raises a
        StatusCheckError subclass on failure; no partial snapshot is returned.
        """
        deadline = deadline or AttemptDeadline(self.cfg.attempt_deadline_seconds)
        logging.info(
            "Checking visa status: location=%s application=%s passport=%s surname=%s",
            app.location,
            app.application_id,
            CheckerConfig._mask(app.passport_number),
            app.surname_prefix,
        )

        with chrome_session(self._new_driver) as driver:
            try:
                snapshot = self._run_stages(driver, app, deadline)
            except StatusCheckError:
                self._capture_artifact(driver, f"{app.application_id}_failed")
                raise

        logging.info(
            "Visa status for %s: %s (created %s, updated %s)",
            app.application_id,
            snapshot.status,
            snapshot.created,
            snapshot.last_updated,
        )
        return snapshot

    def _run_stages(self, driver: webdriver.Chrome, app: Application, deadline: AttemptDeadline) -> StatusSnapshot:
        stage = ScrapeStage.NAVIGATE
        try:
            self._navigate(driver, deadline)

            stage = ScrapeStage.FILL_VISA_TYPE
            self._select(driver, self.VISA_TYPE_SELECTORS, self.cfg.visa_application_type, stage, deadline)
            self._wait_for_page_ready(driver, deadline)

            stage = ScrapeStage.FILL_LOCATION
            self._select(driver, self.LOCATION_SELECTORS, app.location, stage, deadline)

            stage = ScrapeStage.FILL_CASE_NUMBER
            self._fill(driver, self.CASE_NUMBER_SELECTORS, app.application_id, stage, deadline)

            stage = ScrapeStage.FILL_PASSPORT_NUMBER
            self._fill(driver, self.PASSPORT_NUMBER_SELECTORS, app.passport_number, stage, deadline)

            stage = ScrapeStage.FILL_SURNAME
            self._fill(driver, self.SURNAME_SELECTORS, app.surname_prefix, stage, deadline)

            stage = ScrapeStage.CAPTURE_CAPTCHA
            image = self._wait_for(driver, self.CAPTCHA_IMAGE_SELECTORS, stage, deadline).screenshot_as_png

            stage = ScrapeStage.SOLVE_CAPTCHA
            captcha_text = self.solver.solve(image, self.cfg.captcha_credentials(), deadline)
            self._fill(driver, self.CAPTCHA_INPUT_SELECTORS, captcha_text, stage, deadline)

            stage = ScrapeStage.SUBMIT_FORM
            self._wait_for(driver, self.SUBMIT_SELECTORS, stage, deadline, clickable=True).click()

            stage = ScrapeStage.EXTRACT_RESULT
            return StatusSnapshot(
                status=self._read_text(driver, self.STATUS_SELECTORS, stage, deadline),
                status_content=self._read_text(driver, self.DETAIL_SELECTORS, stage, deadline),
                created=self._read_text(driver, self.SUBMIT_DATE_SELECTORS, stage, deadline),
                last_updated=self._read_text(driver, self.STATUS_DATE_SELECTORS, stage, deadline),
                code=200,
            )
        except WebDriverException as exc:
            raise TransientScrapeError(
                f"Browser error during '{stage.value}': {exc.msg or type(exc).__name__}",
                stage=stage.value,
            ) from exc

    # ------------------------------------------------------------------
    # Core automation steps
    # ------------------------------------------------------------------
    def _navigate(self, driver: webdriver.Chrome, deadline: AttemptDeadline) -> None:
        logging.info("Navigating to status page: %s", self.cfg.status_url)
        try:
            driver.get(self.cfg.status_url)
        except TimeoutException as exc:
            raise TransientScrapeError(
                f"Status page did not load within {self.cfg.page_load_timeout_seconds}s",
                stage=ScrapeStage.NAVIGATE.value,
            ) from exc
        self._wait_for_page_ready(driver, deadline)

    def _select(
        self,
        driver: webdriver.Chrome,
        selectors: List[Selector],
        value: str,
        stage: ScrapeStage,
        deadline: AttemptDeadline,
    ) -> None:
        element = self._wait_for(driver, selectors, stage, deadline)
        try:
            Select(element).select_by_value(value)
        except NoSuchElementException as exc:
            raise DataError(f"Option '{value}' is not offered for '{stage.value}'") from exc
        logging.debug("Selected %s for '%s'", value, stage.value)

    def _fill(
        self,
        driver: webdriver.Chrome,
        selectors: List[Selector],
        value: str,
        stage: ScrapeStage,
        deadline: AttemptDeadline,
    ) -> None:
        element = self._wait_for(driver, selectors, stage, deadline)
        self._enter_text(element, value)

    def _read_text(
        self,
        driver: webdriver.Chrome,
        selectors: List[Selector],
        stage: ScrapeStage,
        deadline: AttemptDeadline,
    ) -> str:
        return (self._wait_for(driver, selectors, stage, deadline).text or "").strip()

    # ------------------------------------------------------------------
    # Supporting helpers
    # ------------------------------------------------------------------
    def _wait_for(
        self,
        driver: webdriver.Chrome,
        selectors: List[Selector],
        stage: ScrapeStage,
        deadline: AttemptDeadline,
        *,
        clickable: bool = False,
    ):
        timeout = bounded_timeout(self.cfg.field_timeout_seconds, deadline)
        if timeout <= 0:
            raise TransientScrapeError(f"Attempt deadline expired before '{stage.value}'", stage=stage.value)

        condition = EC.element_to_be_clickable if clickable else EC.visibility_of_element_located
        try:
            return WebDriverWait(driver, timeout).until(EC.any_of(*(condition(s) for s in selectors)))
        except TimeoutException as exc:
            raise TransientScrapeError(
                f"'{stage.value}' field not interactable within {timeout:.0f}s - "
                "the CEAC page may be slow or its layout may have changed",
                stage=stage.value,
            ) from exc

    def _wait_for_page_ready(self, driver: webdriver.Chrome, deadline: AttemptDeadline) -> None:
        timeout = bounded_timeout(self.cfg.page_load_timeout_seconds, deadline)
        try:
            WebDriverWait(driver, timeout).until(
                lambda d: d.execute_script("return document.readyState") == "complete"
            )
        except TimeoutException as exc:
            raise TransientScrapeError(
                f"Page not ready within {timeout:.0f}s", stage=ScrapeStage.NAVIGATE.value
            ) from exc

    def _enter_text(self, element, value: str) -> None:
        try:
            element.clear()
        except WebDriverException:
            logging.debug("Unable to clear field before typing; continuing anyway.")
        element.send_keys(value)

    def _capture_artifact(self, driver: webdriver.Chrome, label: str) -> None:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        safe_label = label.replace(" ", "_").replace("/", "_")
        base = ARTIFACTS_DIR / f"{timestamp}_{safe_label}_{uuid.uuid4().hex[:8]}"

        try:
            ARTIFACTS_DIR.mkdir(parents=True, exist_ok=True)
            base.with_suffix(".html").write_text(driver.page_source, encoding="utf-8")
        except Exception as exc:  # noqa: BLE001
            logging.debug("Failed to persist page source artifact: %s", exc)

        try:
            driver.save_screenshot(str(base.with_suffix(".png")))
        except Exception as exc:  # noqa: BLE001
            logging.debug("Failed to capture screenshot artifact: %s", exc)


@dataclass
class AppContext:
    """Everything built once at startup and shared by the scheduler and web UI."""

    cfg: CheckerConfig
    registry: RedisApplicationRegistry
    tracker: StatusTracker
    dispatcher: NotificationDispatcher
    checker: VisaStatusChecker
    tracking: EmailTrackingClient
    scheduler: StatusScheduler


def build_context(cfg: CheckerConfig, *, headless: bool = True, interval_minutes: Optional[int] = None) -> AppContext:
    registry = RedisApplicationRegistry.from_url(cfg.redis_url, key_prefix=cfg.registry_key_prefix)
    tracker = StatusTracker()
    dispatcher = NotificationDispatcher(cfg.notification_url)
    checker = VisaStatusChecker(cfg, solver=CaptchaSolver(cfg.captcha_url), headless=headless)
    tracking = EmailTrackingClient(cfg.mail_settings())
    scheduler = StatusScheduler(
        registry=registry,
        checker=checker,
        tracker=tracker,
        dispatcher=dispatcher,
        tracking=tracking,
        key_prefix=cfg.registry_key_prefix,
        interval_seconds=max(1, interval_minutes or cfg.check_interval_minutes) * 60,
        attempt_deadline_seconds=cfg.attempt_deadline_seconds,
        email_tracking_enabled=cfg.email_tracking_enabled,
        heartbeat_path=cfg.heartbeat_path,
    )
    return AppContext(
        cfg=cfg,
        registry=registry,
        tracker=tracker,
        dispatcher=dispatcher,
        checker=checker,
        tracking=tracking,
        scheduler=scheduler,
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="US Visa Status Checker")
    parser.add_argument("--config", default="config.ini", help="Path to config.ini (default: %(default)s)")
    parser.add_argument("--interval", type=int, help="Sweep interval in minutes (default from config.ini)")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit.")
    parser.add_argument("--serve", action="store_true", help="Serve the HTTP API while sweeping in the background.")
    parser.add_argument("--host", default="0.0.0.0", help="HTTP API bind address (default: %(default)s)")
    parser.add_argument("--port", type=int, default=9010, help="HTTP API port (default: %(default)s)")
    parser.add_argument(
        "--no-headless",
        dest="headless",
        action="store_false",
        help="Run Chrome in visible mode (useful for debugging the form flow).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument("--json-logs", action="store_true", help="Emit log lines as JSON.")
    parser.add_argument("--setup", action="store_true", help="Run the interactive configuration wizard.")
    parser.set_defaults(headless=True)
    args = parser.parse_args()

    configure_logging(debug=args.debug, json_logs=args.json_logs)

    if args.setup:
        from config_wizard import run_cli_setup_wizard

        run_cli_setup_wizard(config_path=args.config)
        return

    try:
        cfg = CheckerConfig.load(args.config)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        logging.error("Configuration error: %s", exc)
        raise SystemExit(1) from exc

    context = build_context(cfg, headless=args.headless, interval_minutes=args.interval)
    try:
        context.registry.ping()
    except TransportError as exc:
        logging.error("Cannot reach the application registry at %s: %s", cfg.redis_url, exc)
        raise SystemExit(1) from exc

    interval = max(1, args.interval or cfg.check_interval_minutes)
    print("🚀 US Visa Status Checker Started")
    print("=" * 50)
    print(f"🌐 Status page: {cfg.status_url}")
    print(f"🗂️  Registry: {cfg.redis_url} ({cfg.registry_key_prefix}*)")
    print(f"⏱️  Sweep interval: {interval} minutes")
    print(f"📮 Passport email tracking: {'Enabled' if cfg.email_tracking_enabled else 'Disabled'}")
    print(f"🕶️ Headless mode: {'On' if args.headless else 'Off'}")
    print("=" * 50)

    logging.info("Configuration summary: %s", cfg.masked_summary())
    if cfg.heartbeat_path:
        logging.info("Heartbeat file: %s", cfg.heartbeat_path)

    if args.once:
        report = context.scheduler.run_sweep()
        if report is not None:
            print(f"✅ Sweep finished: {report.as_dict()}")
        return

    try:
        if args.serve:
            from web_ui import create_app

            context.scheduler.start()
            create_app(context).run(host=args.host, port=args.port, threaded=True)
        else:
            context.scheduler.run_forever()
    except KeyboardInterrupt:
        print("\n🛑 Stopping visa status checker (KeyboardInterrupt)")
    finally:
        context.scheduler.stop(timeout=5)
        print("🧹 Scheduler stopped")


if __name__ == "__main__":
    main()
