import time
from typing import Any, Dict, List

from courier.engines.base import EngineAdapter, EngineTask, Evidence, attempt_deadline, remaining_ms
from courier.models import ENGINE_PRIMARY_DRIVER, EngineAttempt, SessionProfile

CHROMIUM_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--no-default-browser-check",
    "--window-size=1366,768",
]


def launch_options(timeout_ms: int, headless: bool = True) -> Dict[str, Any]:
    return {
        "headless": bool(headless),
        "args": list(CHROMIUM_LAUNCH_ARGS),
        "timeout": int(timeout_ms),
    }


def context_options(profile: SessionProfile) -> Dict[str, Any]:
    headers = profile.headers()
    user_agent = headers.pop("User-Agent", "")
    # Playwright manages these itself; overriding them breaks compression and navigation.
    for name in ("Accept-Encoding", "Upgrade-Insecure-Requests"):
        headers.pop(name, None)
    options: Dict[str, Any] = {
        "ignore_https_errors": True,
        "user_agent": user_agent,
        "locale": profile.locale_hints.locale,
        "timezone_id": profile.locale_hints.timezone_id,
        "extra_http_headers": headers,
        "viewport": {"width": 1366, "height": 768},
    }
    proxy = profile.playwright_proxy()
    if proxy:
        options["proxy"] = proxy
    return options


class PlaywrightAdapter(EngineAdapter):
    kind = ENGINE_PRIMARY_DRIVER

    def __init__(self, scorer=None, headless: bool = True):
        super().__init__(scorer)
        self.headless = bool(headless)

    def can_drive_session(self) -> bool:
        return True

    def attempt(self, profile: SessionProfile, task: EngineTask, timeout_ms: int) -> EngineAttempt:
        from playwright.sync_api import sync_playwright

        started = time.monotonic()
        deadline = attempt_deadline(started, timeout_ms)
        notes: List[str] = []
        try:
            with sync_playwright() as playwright:
                browser = playwright.chromium.launch(**launch_options(remaining_ms(deadline), self.headless))
                try:
                    context = browser.new_context(**context_options(profile))
                    page = context.new_page()
                    page.set_default_timeout(remaining_ms(deadline))
                    response = page.goto(task.url, wait_until="domcontentloaded", timeout=remaining_ms(deadline))
                    if response is not None:
                        notes.append(f"status={response.status}")
                    page_text = page.content()
                    screenshot = page.screenshot(full_page=True, timeout=remaining_ms(deadline))
                finally:
                    browser.close()
        except Exception as exc:
            return self.failed(f"playwright: {exc}", started, detail=" ".join(notes))

        evidence = Evidence(data=screenshot or b"", content_type="image/png", page_text=page_text or "")
        return self.judged(evidence, task, started, detail=" ".join(notes))
