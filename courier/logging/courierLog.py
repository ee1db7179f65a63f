"""
PORTAL COURIER
Logger factory for the application, run-event and startup channels.

Every channel hangs off the ``courier`` logger so a single handler configured
here serves modules that use ``logging.getLogger(__name__)`` as well.
"""
import logging
import sys
import threading

_ROOT_NAME = "courier"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_configure_lock = threading.Lock()
_configured = False

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "step": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def _configure_root():
    global _configured
    with _configure_lock:
        if _configured:
            return
        root = logging.getLogger(_ROOT_NAME)
        if not root.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter(_FORMAT))
            root.addHandler(handler)
        root.setLevel(logging.INFO)
        root.propagate = False
        _configured = True


def setVerbose(verbose: bool):
    _configure_root()
    logging.getLogger(_ROOT_NAME).setLevel(logging.DEBUG if verbose else logging.INFO)


def getAppLogger():
    _configure_root()
    return logging.getLogger(_ROOT_NAME + ".app")


def getRunLogger():
    _configure_root()
    return logging.getLogger(_ROOT_NAME + ".run")


def getStartupLogger():
    _configure_root()
    return logging.getLogger(_ROOT_NAME + ".startup")


def log(message, level="info"):
    key = str(level or "info").strip().lower()
    logger = getRunLogger()
    text = str(message)
    if key in ("step", "success"):
        text = f"[{key}] {text}"
    logger.log(_LEVELS.get(key, logging.INFO), text)


def getDbLogger():
    _configure_root()
    return logging.getLogger(_ROOT_NAME + ".db")
