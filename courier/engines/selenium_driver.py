import threading
import time
from typing import List

from courier.engines.base import EngineAdapter, EngineTask, Evidence, attempt_deadline, remaining_seconds
from courier.models import ENGINE_SECONDARY_DRIVER, EngineAttempt, SessionProfile

HEADLESS_FLAGS = ("--headless=new", "--headless")

CHROME_ARGS = (
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--hide-scrollbars",
    "--ignore-certificate-errors",
    "--no-default-browser-check",
    "--no-first-run",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--window-size=1366,768",
)

PROXY_AUTH_UNSUPPORTED = "authenticated proxy cannot be passed to Chrome via command-line flags"


def chrome_options(profile: SessionProfile, headless_flag: str = "--headless=new"):
    from selenium.webdriver.chrome.options import Options as ChromeOptions

    options = ChromeOptions()
    if headless_flag:
        options.add_argument(headless_flag)
    for argument in CHROME_ARGS:
        options.add_argument(argument)
    options.add_argument(f"--lang={profile.locale_hints.locale}")
    if profile.user_agent:
        options.add_argument(f"--user-agent={profile.user_agent}")
    proxy_arg = profile.chromium_proxy_arg()
    if proxy_arg:
        options.add_argument(proxy_arg)
    options.set_capability("acceptInsecureCerts", True)
    return options


def start_chrome(profile: SessionProfile, headless_flag: str = "--headless=new"):
    import os

    from selenium import webdriver
    from selenium.webdriver.chrome.service import Service as ChromeService

    options = chrome_options(profile, headless_flag)
    try:
        service = ChromeService(log_output=os.devnull)
        return webdriver.Chrome(options=options, service=service)
    except TypeError:
        return webdriver.Chrome(options=options)


def _quit_quietly(driver):
    try:
        driver.quit()
    except Exception:
        pass


def start_chrome_within(profile: SessionProfile, headless_flag: str, timeout_s: float):
    """Start Chrome on a worker thread; a driver that shows up after ``timeout_s`` is quit."""
    state = {"abandoned": False}
    lock = threading.Lock()

    def _start():
        try:
            driver = start_chrome(profile, headless_flag)
        except Exception as exc:
            with lock:
                state["error"] = exc
            return
        with lock:
            if not state["abandoned"]:
                state["driver"] = driver
                return
        _quit_quietly(driver)

    worker = threading.Thread(target=_start, name="courier-chromedriver", daemon=True)
    worker.start()
    worker.join(timeout_s)
    with lock:
        if "driver" in state:
            return state["driver"]
        if "error" in state:
            raise state["error"]
        state["abandoned"] = True
    raise TimeoutError(f"chromedriver did not start within {timeout_s:.1f}s")


class SeleniumAdapter(EngineAdapter):
    kind = ENGINE_SECONDARY_DRIVER

    def can_drive_session(self) -> bool:
        return True

    def attempt(self, profile: SessionProfile, task: EngineTask, timeout_ms: int) -> EngineAttempt:
        started = time.monotonic()
        if profile.needs_proxy_auth():
            return self.failed(PROXY_AUTH_UNSUPPORTED, started)

        deadline = attempt_deadline(started, timeout_ms)
        errors: List[str] = []
        for headless_flag in HEADLESS_FLAGS:
            if time.monotonic() >= deadline:
                errors.append("time budget exhausted")
                break
            driver = None
            try:
                driver = start_chrome_within(profile, headless_flag, remaining_seconds(deadline))
                driver.set_page_load_timeout(remaining_seconds(deadline))
                driver.set_window_size(1366, 768)
                driver.get(task.url)
                page_text = driver.page_source or ""
                screenshot = driver.get_screenshot_as_png() or b""
            except Exception as exc:
                errors.append(f"{headless_flag}: {exc}")
                continue
            finally:
                if driver is not None:
                    _quit_quietly(driver)
            evidence = Evidence(data=screenshot, content_type="image/png", page_text=page_text)
            return self.judged(evidence, task, started, detail=headless_flag)

        return self.failed("selenium: " + " | ".join(errors[-2:]), started)
