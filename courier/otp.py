import logging
import os
import re
import sys
import threading
import time
from typing import Callable, Optional

from courier.errors import ConfigurationError, OTPTimeout

logger = logging.getLogger(__name__)

_OTP_RE = re.compile(r"^\d{4,8}$")

OTP_MODE_AUTO = "auto"
OTP_MODE_CONSOLE = "console"
OTP_MODE_HANDOFF = "handoff"


def is_valid_otp(code) -> bool:
    return bool(_OTP_RE.match(str(code or "").strip()))


def mask_otp(code) -> str:
    text = str(code or "").strip()
    if len(text) <= 2:
        return "*" * len(text)
    return text[:2] + "*" * (len(text) - 2)


class ConsoleOtpSource:
    """Prompt on the terminal; the read runs in a daemon thread so the wait stays bounded."""

    def __init__(self, timeout_s: float = 30, prompt: str = "Enter OTP code: ", input_func: Callable = None):
        self.timeout_s = float(timeout_s)
        self.prompt = prompt
        self.input_func = input_func or input

    def wait_for_code(self) -> str:
        result = {}
        done = threading.Event()

        def _reader():
            try:
                result["value"] = self.input_func(self.prompt)
            except (EOFError, OSError) as exc:
                result["error"] = exc
            finally:
                done.set()

        thread = threading.Thread(target=_reader, name="otp-console", daemon=True)
        thread.start()
        logger.info("Waiting up to %ss for OTP on the console", int(self.timeout_s))
        if not done.wait(self.timeout_s):
            raise OTPTimeout(f"no OTP entered within {int(self.timeout_s)}s")
        if "error" in result:
            raise OTPTimeout(f"console closed before an OTP was entered: {result['error']}")
        return str(result.get("value") or "").strip()


class HandoffFileOtpSource:
    """Poll a handoff file written by an operator; the file is removed once read."""

    def __init__(self, path: str, timeout_s: float = 120, poll_interval_s: float = 1.0,
                 clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep):
        self.path = path
        self.timeout_s = float(timeout_s)
        self.poll_interval_s = max(0.05, float(poll_interval_s))
        self._clock = clock
        self._sleep = sleep

    def _consume(self) -> Optional[str]:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                content = handle.read().strip()
        except FileNotFoundError:
            return None
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        return content

    def clear(self):
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass

    def wait_for_code(self) -> str:
        deadline = self._clock() + self.timeout_s
        logger.info("Waiting up to %ss for OTP in %s", int(self.timeout_s), self.path)
        while True:
            content = self._consume()
            if content is not None:
                if is_valid_otp(content):
                    return content
                logger.warning("Ignoring malformed OTP handoff content in %s", self.path)
            if self._clock() >= deadline:
                raise OTPTimeout(f"no OTP handed off in {self.path} within {int(self.timeout_s)}s")
            self._sleep(self.poll_interval_s)


def stdin_is_interactive() -> bool:
    try:
        return bool(sys.stdin and sys.stdin.isatty())
    except (AttributeError, ValueError):
        return False


def build_otp_source(config, interactive: Optional[bool] = None):
    mode = str(getattr(config, "otp_mode", OTP_MODE_AUTO) or OTP_MODE_AUTO)
    if interactive is None:
        interactive = stdin_is_interactive()
    if mode == OTP_MODE_AUTO:
        mode = OTP_MODE_CONSOLE if interactive else OTP_MODE_HANDOFF

    if mode == OTP_MODE_CONSOLE:
        return ConsoleOtpSource(timeout_s=config.otp_interactive_timeout_s)
    if mode == OTP_MODE_HANDOFF:
        source = HandoffFileOtpSource(config.otp_handoff_path, timeout_s=config.otp_unattended_timeout_s)
        directory = os.path.dirname(config.otp_handoff_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        return source
    raise ConfigurationError(f"unknown OTP mode {mode!r}")
