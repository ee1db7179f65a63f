import threading
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from courier.engines.base import EngineTask
from courier.models import LocaleHints, ProxyEndpoint, SessionProfile

HINTS = LocaleHints(region="co", locale="es-CO", accept_language="es-CO,es;q=0.9", timezone_id="America/Bogota")


def _profile(proxy=None):
    return SessionProfile(
        route_via_proxy=proxy is not None,
        identity_headers=(
            ("User-Agent", "Mozilla/5.0 Test"),
            ("Accept", "text/html"),
            ("Accept-Encoding", "gzip"),
            ("Upgrade-Insecure-Requests", "1"),
            ("Accept-Language", HINTS.accept_language),
        ),
        locale_hints=HINTS,
        proxy_endpoint=proxy,
    )


class PlaywrightOptionsTest(unittest.TestCase):
    def test_context_options_follow_profile(self):
        from courier.engines.playwright_driver import context_options

        options = context_options(_profile(ProxyEndpoint(host="proxy.example", port=7777, username="u", password="p")))

        self.assertEqual("Mozilla/5.0 Test", options["user_agent"])
        self.assertEqual("es-CO", options["locale"])
        self.assertEqual("America/Bogota", options["timezone_id"])
        self.assertTrue(options["ignore_https_errors"])
        self.assertEqual({"Accept": "text/html", "Accept-Language": "es-CO,es;q=0.9"}, options["extra_http_headers"])
        self.assertEqual("http://proxy.example:7777", options["proxy"]["server"])
        self.assertEqual("u", options["proxy"]["username"])

    def test_direct_context_has_no_proxy(self):
        from courier.engines.playwright_driver import context_options, launch_options

        self.assertNotIn("proxy", context_options(_profile()))
        launch = launch_options(20000)
        self.assertTrue(launch["headless"])
        self.assertEqual(20000, launch["timeout"])
        self.assertIn("--no-sandbox", launch["args"])


class SeleniumAdapterTest(unittest.TestCase):
    def test_authenticated_proxy_is_reported_without_starting_chrome(self):
        from courier.engines.selenium_driver import SeleniumAdapter

        profile = _profile(ProxyEndpoint(host="proxy.example", port=7777, username="u", password="p"))
        attempt = SeleniumAdapter().attempt(profile, EngineTask(url="https://portal.example"), 30000)

        self.assertEqual("secondary_driver", attempt.engine_kind)
        self.assertEqual("failure", attempt.outcome)
        self.assertIn("authenticated proxy", attempt.error_message)


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def _fake_playwright(clock=None, launch_seconds=0.0):
    playwright = MagicMock()
    browser = MagicMock()
    page = browser.new_context.return_value.new_page.return_value
    page.goto.return_value = SimpleNamespace(status=200)
    page.content.return_value = "<title>Pagos Recurrentes</title>"
    page.screenshot.return_value = b"\x89PNG" + b"x" * 60000

    def _launch(**kwargs):
        if clock is not None:
            clock.now += launch_seconds
        return browser

    playwright.chromium.launch.side_effect = _launch
    factory = MagicMock()
    factory.return_value.__enter__.return_value = playwright
    return factory, playwright, browser, page


class PlaywrightAdapterTest(unittest.TestCase):
    TASK = EngineTask(url="https://portal.example", expected_marker="Pagos Recurrentes")

    def test_success_closes_browser(self):
        from courier.engines.playwright_driver import PlaywrightAdapter

        factory, playwright, browser, page = _fake_playwright()
        with patch("playwright.sync_api.sync_playwright", factory):
            attempt = PlaywrightAdapter().attempt(_profile(), self.TASK, 30000)

        self.assertEqual("primary_driver", attempt.engine_kind)
        self.assertEqual("success", attempt.outcome)
        self.assertEqual("status=200", attempt.detail)
        browser.close.assert_called_once_with()
        self.assertLessEqual(page.goto.call_args.kwargs["timeout"], 30000)
        self.assertLessEqual(page.screenshot.call_args.kwargs["timeout"], 30000)

    def test_navigation_error_still_closes_browser(self):
        from courier.engines.playwright_driver import PlaywrightAdapter

        factory, playwright, browser, page = _fake_playwright()
        page.goto.side_effect = RuntimeError("net::ERR_CONNECTION_RESET")
        with patch("playwright.sync_api.sync_playwright", factory):
            attempt = PlaywrightAdapter().attempt(_profile(), self.TASK, 30000)

        self.assertEqual("failure", attempt.outcome)
        self.assertIn("ERR_CONNECTION_RESET", attempt.error_message)
        browser.close.assert_called_once_with()
        page.screenshot.assert_not_called()

    def test_steps_share_one_time_budget(self):
        from courier.engines.playwright_driver import PlaywrightAdapter

        clock = FakeClock()
        factory, playwright, browser, page = _fake_playwright(clock, launch_seconds=4.0)
        with patch("playwright.sync_api.sync_playwright", factory), patch("time.monotonic", clock):
            PlaywrightAdapter().attempt(_profile(), self.TASK, 5000)

        self.assertEqual(5000, playwright.chromium.launch.call_args.kwargs["timeout"])
        self.assertLessEqual(page.goto.call_args.kwargs["timeout"], 1000)
        self.assertLessEqual(page.screenshot.call_args.kwargs["timeout"], 1000)


def _fake_driver(get_error=None):
    driver = MagicMock()
    driver.page_source = "<title>Pagos Recurrentes</title>"
    driver.get_screenshot_as_png.return_value = b"\x89PNG" + b"x" * 60000
    if get_error is not None:
        driver.get.side_effect = get_error
    return driver


class SeleniumAttemptTest(unittest.TestCase):
    TASK = EngineTask(url="https://portal.example", expected_marker="Pagos Recurrentes")

    def test_success_quits_driver(self):
        from courier.engines.selenium_driver import SeleniumAdapter

        driver = _fake_driver()
        with patch("courier.engines.selenium_driver.start_chrome", return_value=driver) as start:
            attempt = SeleniumAdapter().attempt(_profile(), self.TASK, 30000)

        self.assertEqual("success", attempt.outcome)
        self.assertEqual("--headless=new", attempt.detail)
        self.assertEqual("--headless=new", start.call_args.args[1])
        driver.get.assert_called_once_with("https://portal.example")
        driver.quit.assert_called_once_with()

    def test_falls_back_to_legacy_headless_flag(self):
        from courier.engines.selenium_driver import SeleniumAdapter

        broken = _fake_driver(get_error=RuntimeError("unknown flag"))
        working = _fake_driver()
        with patch("courier.engines.selenium_driver.start_chrome", side_effect=[broken, working]) as start:
            attempt = SeleniumAdapter().attempt(_profile(), self.TASK, 30000)

        self.assertEqual("success", attempt.outcome)
        self.assertEqual("--headless", attempt.detail)
        self.assertEqual(["--headless=new", "--headless"], [call.args[1] for call in start.call_args_list])
        broken.quit.assert_called_once_with()
        working.quit.assert_called_once_with()

    def test_every_flag_failing_is_failure_and_quits_each_driver(self):
        from courier.engines.selenium_driver import SeleniumAdapter

        drivers = [_fake_driver(get_error=RuntimeError("chrome crashed")) for _ in range(2)]
        with patch("courier.engines.selenium_driver.start_chrome", side_effect=drivers):
            attempt = SeleniumAdapter().attempt(_profile(), self.TASK, 30000)

        self.assertEqual("failure", attempt.outcome)
        self.assertIn("chrome crashed", attempt.error_message)
        for driver in drivers:
            driver.quit.assert_called_once_with()

    def test_slow_page_load_stops_before_second_flag(self):
        from courier.engines.selenium_driver import SeleniumAdapter

        clock = FakeClock()

        def _slow_get(url):
            clock.now += 6.0
            raise RuntimeError("timeout: page load")

        driver = _fake_driver(get_error=_slow_get)
        with patch("courier.engines.selenium_driver.start_chrome", return_value=driver) as start, \
                patch("time.monotonic", clock):
            attempt = SeleniumAdapter().attempt(_profile(), self.TASK, 5000)

        self.assertEqual("failure", attempt.outcome)
        self.assertEqual(1, start.call_count)
        self.assertLessEqual(driver.set_page_load_timeout.call_args.args[0], 5.0)
        self.assertIn("time budget exhausted", attempt.error_message)
        driver.quit.assert_called_once_with()

    def test_late_chromedriver_is_quit_after_timeout(self):
        from courier.engines.selenium_driver import start_chrome_within

        release = threading.Event()
        quit_called = threading.Event()
        driver = MagicMock()
        driver.quit.side_effect = lambda: quit_called.set()

        def _slow_start(profile, headless_flag):
            release.wait(5)
            return driver

        with patch("courier.engines.selenium_driver.start_chrome", side_effect=_slow_start):
            with self.assertRaises(TimeoutError):
                start_chrome_within(_profile(), "--headless=new", 0.05)
            release.set()
            self.assertTrue(quit_called.wait(5))


class RegistryTest(unittest.TestCase):
    def test_default_adapters_cover_every_kind_in_order(self):
        from courier.engines import ENGINE_KINDS, build_default_adapters

        adapters = build_default_adapters()

        self.assertEqual(
            ("primary_driver", "secondary_driver", "subprocess_browser", "raw_http"),
            ENGINE_KINDS,
        )
        self.assertEqual(set(ENGINE_KINDS), set(adapters))
        self.assertTrue(adapters["primary_driver"].can_drive_session())
        self.assertTrue(adapters["secondary_driver"].can_drive_session())
        self.assertFalse(adapters["subprocess_browser"].can_drive_session())


if __name__ == "__main__":
    unittest.main()
