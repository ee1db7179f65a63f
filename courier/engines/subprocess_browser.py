import os
import shutil
import subprocess
import time
from typing import List, Optional

from courier.engines.base import (
    EngineAdapter,
    EngineTask,
    Evidence,
    attempt_deadline,
    scoped_process,
    summarize_process_text,
)
from courier.engines.selenium_driver import PROXY_AUTH_UNSUPPORTED
from courier.models import ENGINE_SUBPROCESS_BROWSER, EngineAttempt, SessionProfile
from courier.timing import file_stamp

BROWSER_NAMES = (
    "chromium",
    "chromium-browser",
    "google-chrome",
    "google-chrome-stable",
    "chrome",
    "microsoft-edge",
)


def resolve_browser_executables() -> List[str]:
    candidates: List[str] = []
    seen = set()
    for name in BROWSER_NAMES:
        resolved = shutil.which(name)
        if not resolved:
            continue
        resolved_path = os.path.abspath(resolved)
        if resolved_path in seen:
            continue
        seen.add(resolved_path)
        candidates.append(resolved_path)
    return candidates


def build_browser_command(
        executable: str,
        profile: SessionProfile,
        url: str,
        screenshot_path: str,
        profile_dir: str,
        timeout_ms: int,
        headless_flag: str = "--headless=new",
) -> List[str]:
    command = [
        executable,
        headless_flag,
        "--disable-gpu",
        "--disable-dev-shm-usage",
        "--hide-scrollbars",
        "--ignore-certificate-errors",
        "--no-default-browser-check",
        "--no-first-run",
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--window-size=1366,768",
        f"--virtual-time-budget={max(3000, min(int(timeout_ms), 15000))}",
        f"--user-data-dir={profile_dir}",
        f"--lang={profile.locale_hints.locale}",
    ]
    if profile.user_agent:
        command.append(f"--user-agent={profile.user_agent}")
    proxy_arg = profile.chromium_proxy_arg()
    if proxy_arg:
        command.append(proxy_arg)
    command.append(f"--screenshot={screenshot_path}")
    command.append(str(url))
    return command


def _read_file(path: str) -> Optional[bytes]:
    if not path or not os.path.isfile(path):
        return None
    with open(path, "rb") as handle:
        return handle.read()


class SubprocessBrowserAdapter(EngineAdapter):
    kind = ENGINE_SUBPROCESS_BROWSER

    def __init__(self, scorer=None, work_dir: str = ""):
        super().__init__(scorer)
        self.work_dir = work_dir

    def attempt(self, profile: SessionProfile, task: EngineTask, timeout_ms: int) -> EngineAttempt:
        started = time.monotonic()
        if profile.needs_proxy_auth():
            return self.failed(PROXY_AUTH_UNSUPPORTED, started)

        executables = resolve_browser_executables()
        if not executables:
            return self.failed("no supported browser binary found", started)

        output_parent = task.output_dir or self.work_dir or os.getcwd()
        deadline = attempt_deadline(started, timeout_ms)
        errors: List[str] = []

        for executable in executables:
            for headless_flag in ("--headless=new", "--headless"):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    errors.append("time budget exhausted")
                    return self.failed(" | ".join(errors[-3:]), started, detail=executable)

                attempt_dir = os.path.join(output_parent, f"browser-{file_stamp()}-{os.getpid()}")
                profile_dir = os.path.join(attempt_dir, "profile")
                os.makedirs(profile_dir, exist_ok=True)
                screenshot_path = os.path.join(attempt_dir, "capture.png")
                command = build_browser_command(
                    executable, profile, task.url, screenshot_path, profile_dir, timeout_ms, headless_flag
                )

                try:
                    with scoped_process(command, cwd=attempt_dir) as proc:
                        stdout, stderr = proc.communicate(timeout=remaining)
                    data = _read_file(screenshot_path)
                except subprocess.TimeoutExpired:
                    errors.append(f"{os.path.basename(executable)} {headless_flag}: timeout")
                    continue
                except OSError as exc:
                    errors.append(f"{os.path.basename(executable)}: {exc}")
                    break
                finally:
                    # The throwaway Chromium profile is never reused.
                    shutil.rmtree(attempt_dir, ignore_errors=True)

                if data:
                    evidence = Evidence(data=data, content_type="image/png")
                    return self.judged(evidence, task, started, detail=f"{executable} {headless_flag}")

                detail = summarize_process_text(stdout, stderr)
                message = f"{os.path.basename(executable)} {headless_flag}: no screenshot created"
                if detail:
                    message = f"{message} ({detail})"
                errors.append(message)

        return self.failed(" | ".join(errors[-3:]), started)
