import logging
import os
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from webdriver_manager.chrome import ChromeDriverManager

from status_errors import TransientScrapeError

# Keep webdriver-manager quiet unless user overrides
os.environ.setdefault("WDM_LOG_LEVEL", "0")


def build_chrome_options(*, headless: bool) -> Options:
    options = Options()
    if headless:
        options.add_argument("--headless=new")

    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-gpu")
    options.add_argument("--disable-extensions")
    options.add_argument("--disable-blink-features=AutomationControlled")
    options.add_argument("--window-size=1920,1080")
    options.add_argument("--log-level=3")

    # Images stay enabled: the captcha is an <img>.
    prefs = {
        "profile.default_content_setting_values": {
            "plugins": 2,
            "popups": 2,
            "geolocation": 2,
            "notifications": 2,
            "media_stream": 2,
        }
    }
    options.add_experimental_option("prefs", prefs)

    user_agent = os.getenv(
        "CHECKER_USER_AGENT",
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    )
    options.add_argument(f"--user-agent={user_agent}")
    options.add_experimental_option("excludeSwitches", ["enable-automation"])
    options.add_experimental_option("useAutomationExtension", False)
    return options


def install_chromedriver() -> str:
    return ChromeDriverManager().install()


def start_chrome(driver_path: Optional[str], *, headless: bool, page_load_timeout: int) -> webdriver.Chrome:
    service = Service(driver_path) if driver_path else Service()
    try:
        driver = webdriver.Chrome(service=service, options=build_chrome_options(headless=headless))
    except WebDriverException as exc:
        logging.error("Failed to start Chrome driver: %s", exc)
        raise TransientScrapeError(f"Chrome could not be started: {exc.msg or exc}", stage="init") from exc

    driver.set_page_load_timeout(page_load_timeout)
    driver.implicitly_wait(0)
    logging.debug("Chrome driver initialized (headless=%s)", headless)
    return driver


@contextmanager
def chrome_session(
    factory: Callable[[], webdriver.Chrome],
) -> Iterator[webdriver.Chrome]:
    """Yield a fresh browser for one attempt and quit it however the attempt ends."""
    driver = factory()
    try:
        yield driver
    finally:
        try:
            driver.quit()
        except Exception:  # noqa: BLE001
            logging.debug("Driver quit raised; ignoring to continue cleanup.")
