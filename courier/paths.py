import os
from typing import Optional


_DEFAULT_COURIER_HOME = "~/.local/share/portal-courier"


def get_courier_home(environ=None) -> str:
    env = os.environ if environ is None else environ
    override = str(env.get("COURIER_HOME", "") or "").strip()
    base = override if override else _DEFAULT_COURIER_HOME
    return os.path.abspath(os.path.expanduser(base))


def ensure_courier_home(environ=None) -> str:
    base = get_courier_home(environ)
    os.makedirs(base, exist_ok=True)
    return base


def get_courier_config_path(filename: Optional[str] = None, environ=None) -> str:
    name = str(filename or "courier.json").strip() or "courier.json"
    return os.path.join(get_courier_home(environ), name)


def get_evidence_dir(environ=None) -> str:
    return os.path.join(get_courier_home(environ), "evidence")


def get_work_dir(environ=None) -> str:
    return os.path.join(get_courier_home(environ), "work")


def get_run_log_path(environ=None) -> str:
    return os.path.join(get_courier_home(environ), "runs.sqlite")


def get_otp_handoff_path(environ=None) -> str:
    return os.path.join(get_courier_home(environ), "otp-input.txt")
