import logging
import re
import time
from typing import Iterable, Optional

from courier.engines.playwright_driver import context_options, launch_options
from courier.engines.selenium_driver import PROXY_AUTH_UNSUPPORTED, start_chrome
from courier.errors import Blocked, CredentialRejected, EngineFailure, OTPInvalid
from courier.models import ENGINE_PRIMARY_DRIVER, ENGINE_SECONDARY_DRIVER, Credentials, SessionProfile

logger = logging.getLogger(__name__)

INTERACTIVE_ENGINES = (ENGINE_PRIMARY_DRIVER, ENGINE_SECONDARY_DRIVER)

_HAS_TEXT_RE = re.compile(r'^\s*([A-Za-z0-9_-]*)\s*:has-text\(\s*["\'](.+?)["\']\s*\)\s*$')


def _contains_any(text: str, needles: Iterable[str]) -> Optional[str]:
    for needle in needles:
        if needle and needle in text:
            return needle
    return None


class PortalSession:
    """Login, OTP and upload flow over a handful of browser primitives.

    Subclasses implement ``start``, ``stop``, ``goto``, ``page_text``,
    ``page_title``, ``current_url``, ``is_present``, ``fill``, ``press_enter``,
    ``click``, ``is_enabled``, ``set_file``, ``select_option``, ``screenshot``
    and ``wait_until_loaded``.
    """

    engine_kind = ""

    def __init__(self, config, profile: SessionProfile, timeout_ms: int, sleep=time.sleep, clock=time.monotonic):
        self.config = config
        self.form = config.portal
        self.profile = profile
        self.timeout_ms = int(timeout_ms)
        self._sleep = sleep
        self._clock = clock
        self._started = False

    # primitives

    def start(self):
        raise NotImplementedError

    def stop(self):
        raise NotImplementedError

    def goto(self, url: str):
        raise NotImplementedError

    def page_text(self) -> str:
        raise NotImplementedError

    def page_title(self) -> str:
        raise NotImplementedError

    def current_url(self) -> str:
        raise NotImplementedError

    def is_present(self, selector: str) -> bool:
        raise NotImplementedError

    def fill(self, selector: str, value: str):
        raise NotImplementedError

    def press_enter(self, selector: str):
        raise NotImplementedError

    def click(self, selector: str):
        raise NotImplementedError

    def is_enabled(self, selector: str) -> bool:
        raise NotImplementedError

    def set_file(self, selector: str, path: str):
        raise NotImplementedError

    def select_option(self, selector: str, value: str):
        raise NotImplementedError

    def screenshot(self) -> bytes:
        raise NotImplementedError

    def wait_until_loaded(self, timeout_ms: int):
        raise NotImplementedError

    # flow

    def find_first(self, selectors: Iterable[str]) -> Optional[str]:
        for selector in selectors:
            try:
                if self.is_present(selector):
                    return selector
            except Exception as exc:
                logger.debug("Selector %s lookup failed: %s", selector, exc)
        return None

    def settle(self):
        self.wait_until_loaded(min(self.timeout_ms, 15000))

    def open_login(self):
        if not self._started:
            self.start()
            self._started = True
        self.goto(self.config.target_url)
        self.settle()
        marker = self.form.login_marker
        if marker and marker not in self.page_text() and marker not in self.page_title():
            raise Blocked(f"login page marker {marker!r} not found at {self.current_url()}")

    def login(self, credentials: Credentials):
        username_selector = self.find_first(self.form.username_selectors)
        password_selector = self.find_first(self.form.password_selectors)
        if not username_selector or not password_selector:
            raise EngineFailure("login form fields not found")

        self.fill(username_selector, credentials.username)
        self.fill(password_selector, credentials.password)
        submit_selector = self.find_first(self.form.submit_selectors)
        if submit_selector:
            self.click(submit_selector)
        else:
            self.press_enter(password_selector)
        self.settle()

        rejected = _contains_any(self.page_text(), self.form.credential_error_markers)
        if rejected:
            raise CredentialRejected(f"portal rejected the credentials ({rejected})")
        logger.info("Credentials submitted for %s", credentials.username)

    def otp_required(self) -> bool:
        return self.find_first(self.form.otp_selectors) is not None

    def login_looks_successful(self) -> bool:
        haystack = f"{self.page_title()} {self.current_url()}".lower()
        return any(token.lower() in haystack for token in self.form.login_success_tokens if token)

    def submit_otp(self, code: str):
        otp_selector = self.find_first(self.form.otp_selectors)
        if not otp_selector:
            raise EngineFailure("OTP field not found")
        self.fill(otp_selector, code)
        self.press_enter(otp_selector)
        self.settle()

        invalid = _contains_any(self.page_text(), self.form.otp_invalid_markers)
        if invalid:
            raise OTPInvalid(f"portal rejected the OTP ({invalid})")
        if self.login_looks_successful() or not self.otp_required():
            return
        raise OTPInvalid("OTP was not accepted; verification field still present")

    def open_upload_page(self):
        self.goto(self.form.upload_url)
        self.settle()
        if not self.is_present(self.form.file_input_selector):
            raise EngineFailure(f"upload form not found at {self.current_url()}")

    def select_file(self, path: str):
        self.set_file(self.form.file_input_selector, path)

    def _wait_for(self, predicate, timeout_ms: int, interval_s: float = 0.5) -> bool:
        deadline = self._clock() + max(0, int(timeout_ms)) / 1000.0
        while True:
            if predicate():
                return True
            if self._clock() >= deadline:
                return False
            self._sleep(interval_s)

    def submit_form(self):
        form = self.form
        if form.description_selector and self.is_present(form.description_selector):
            self.fill(form.description_selector, form.description_text)
        if form.agreement_selector and form.agreement_value and self.is_present(form.agreement_selector):
            self.select_option(form.agreement_selector, form.agreement_value)

        confirmation_ms = self.config.confirmation_timeout_ms
        if not self._wait_for(lambda: self.is_present(form.form_submit_selector)
                              and self.is_enabled(form.form_submit_selector), confirmation_ms):
            raise EngineFailure("upload submit button never became enabled")
        self.click(form.form_submit_selector)

        outcome = {}

        def _confirmed():
            text = self.page_text()
            error = _contains_any(text, form.upload_error_markers)
            if error:
                outcome["error"] = error
                return True
            if form.upload_success_markers:
                found = _contains_any(text, form.upload_success_markers)
                if found:
                    outcome["success"] = found
                return bool(found)
            return False

        self._wait_for(_confirmed, confirmation_ms)
        if "error" in outcome:
            raise EngineFailure(f"portal reported an upload error ({outcome['error']})")
        if form.upload_success_markers and "success" not in outcome:
            raise EngineFailure("no upload confirmation before timeout")

    def capture(self, label: str = "") -> bytes:
        return self.screenshot() or b""

    def close(self):
        if not self._started:
            return
        self._started = False
        try:
            self.stop()
        except Exception as exc:
            logger.warning("Portal session cleanup failed: %s", exc)


class PlaywrightPortalSession(PortalSession):
    engine_kind = ENGINE_PRIMARY_DRIVER

    def __init__(self, config, profile: SessionProfile, timeout_ms: int, headless: bool = True, **kwargs):
        super().__init__(config, profile, timeout_ms, **kwargs)
        self.headless = bool(headless)
        self._playwright = None
        self._browser = None
        self.page = None

    def start(self):
        from playwright.sync_api import sync_playwright

        self._playwright = sync_playwright().start()
        try:
            self._browser = self._playwright.chromium.launch(**launch_options(self.timeout_ms, self.headless))
            context = self._browser.new_context(**context_options(self.profile))
            self.page = context.new_page()
            self.page.set_default_timeout(self.timeout_ms)
        except Exception:
            self.stop()
            raise

    def stop(self):
        try:
            if self._browser is not None:
                self._browser.close()
        finally:
            self._browser = None
            self.page = None
            if self._playwright is not None:
                self._playwright.stop()
                self._playwright = None

    def goto(self, url: str):
        self.page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)

    def page_text(self) -> str:
        return self.page.content() or ""

    def page_title(self) -> str:
        return self.page.title() or ""

    def current_url(self) -> str:
        return self.page.url or ""

    def is_present(self, selector: str) -> bool:
        locator = self.page.locator(selector).first
        return locator.count() > 0 and locator.is_visible()

    def fill(self, selector: str, value: str):
        self.page.locator(selector).first.fill(value)

    def press_enter(self, selector: str):
        self.page.locator(selector).first.press("Enter")

    def click(self, selector: str):
        self.page.locator(selector).first.click()

    def is_enabled(self, selector: str) -> bool:
        return self.page.locator(selector).first.is_enabled()

    def set_file(self, selector: str, path: str):
        self.page.locator(selector).first.set_input_files(path)

    def select_option(self, selector: str, value: str):
        self.page.locator(selector).first.select_option(value)

    def screenshot(self) -> bytes:
        return self.page.screenshot(full_page=True)

    def wait_until_loaded(self, timeout_ms: int):
        from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

        try:
            self.page.wait_for_load_state("networkidle", timeout=int(timeout_ms))
        except PlaywrightTimeoutError:
            logger.debug("Page did not reach network idle within %sms", timeout_ms)


def css_or_xpath(selector: str):
    """Map a selector to a Selenium locator; ``tag:has-text("x")`` becomes an XPath."""
    from selenium.webdriver.common.by import By

    match = _HAS_TEXT_RE.match(selector)
    if match:
        tag = match.group(1) or "*"
        text = match.group(2).replace('"', "")
        return By.XPATH, f'//{tag}[contains(normalize-space(.), "{text}")]'
    return By.CSS_SELECTOR, selector


class SeleniumPortalSession(PortalSession):
    engine_kind = ENGINE_SECONDARY_DRIVER

    def __init__(self, config, profile: SessionProfile, timeout_ms: int, headless_flag: str = "--headless=new",
                 **kwargs):
        super().__init__(config, profile, timeout_ms, **kwargs)
        self.headless_flag = headless_flag
        self.driver = None

    def start(self):
        if self.profile.needs_proxy_auth():
            raise EngineFailure(PROXY_AUTH_UNSUPPORTED)
        self.driver = start_chrome(self.profile, self.headless_flag)
        try:
            self.driver.set_page_load_timeout(max(5, self.timeout_ms // 1000))
        except Exception:
            self.stop()
            raise

    def stop(self):
        if self.driver is not None:
            try:
                self.driver.quit()
            finally:
                self.driver = None

    def _element(self, selector: str):
        by, value = css_or_xpath(selector)
        elements = self.driver.find_elements(by, value)
        return elements[0] if elements else None

    def _require(self, selector: str):
        element = self._element(selector)
        if element is None:
            raise EngineFailure(f"element {selector} not found")
        return element

    def goto(self, url: str):
        self.driver.get(url)

    def page_text(self) -> str:
        return self.driver.page_source or ""

    def page_title(self) -> str:
        return self.driver.title or ""

    def current_url(self) -> str:
        return self.driver.current_url or ""

    def is_present(self, selector: str) -> bool:
        element = self._element(selector)
        return bool(element is not None and element.is_displayed())

    def fill(self, selector: str, value: str):
        element = self._require(selector)
        element.clear()
        element.send_keys(value)

    def press_enter(self, selector: str):
        from selenium.webdriver.common.keys import Keys

        self._require(selector).send_keys(Keys.ENTER)

    def click(self, selector: str):
        self._require(selector).click()

    def is_enabled(self, selector: str) -> bool:
        element = self._element(selector)
        return bool(element is not None and element.is_enabled())

    def set_file(self, selector: str, path: str):
        self._require(selector).send_keys(path)

    def select_option(self, selector: str, value: str):
        from selenium.webdriver.support.ui import Select

        Select(self._require(selector)).select_by_value(value)

    def screenshot(self) -> bytes:
        return self.driver.get_screenshot_as_png()

    def wait_until_loaded(self, timeout_ms: int):
        ready = self._wait_for(
            lambda: self.driver.execute_script("return document.readyState") == "complete",
            timeout_ms,
            interval_s=0.25,
        )
        if not ready:
            logger.debug("Document not complete within %sms", timeout_ms)


def open_portal_session(engine_kind: str, config, profile: SessionProfile, timeout_ms: int) -> PortalSession:
    if engine_kind == ENGINE_PRIMARY_DRIVER:
        return PlaywrightPortalSession(config, profile, timeout_ms)
    if engine_kind == ENGINE_SECONDARY_DRIVER:
        return SeleniumPortalSession(config, profile, timeout_ms)
    raise EngineFailure(f"engine {engine_kind or '<none>'} cannot drive an interactive session")
