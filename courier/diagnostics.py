import logging
import socket
import time
import warnings
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

import requests
from urllib3.exceptions import InsecureRequestWarning

from courier.httputil.probe import classify_request_error, defaultHeaders

logger = logging.getLogger(__name__)

DEFAULT_DIAGNOSTIC_URLS = (
    "https://www.google.com",
    "https://httpbin.org/ip",
)


def resolve_host(host: str) -> Dict[str, Any]:
    started = time.monotonic()
    try:
        infos = socket.getaddrinfo(host, None)
    except (socket.gaierror, UnicodeError) as exc:
        return {
            "ok": False,
            "addresses": [],
            "error": str(exc),
            "latency_ms": int((time.monotonic() - started) * 1000),
        }
    addresses = sorted({info[4][0] for info in infos if info and info[4]})
    return {
        "ok": bool(addresses),
        "addresses": addresses,
        "error": "",
        "latency_ms": int((time.monotonic() - started) * 1000),
    }


def check_port(host: str, port: int, timeout_s: float = 10.0) -> Dict[str, Any]:
    started = time.monotonic()
    try:
        with socket.create_connection((host, int(port)), timeout=float(timeout_s)):
            pass
    except socket.timeout:
        return {"ok": False, "host": host, "port": int(port), "error": "timeout",
                "latency_ms": int((time.monotonic() - started) * 1000)}
    except OSError as exc:
        return {"ok": False, "host": host, "port": int(port), "error": str(exc),
                "latency_ms": int((time.monotonic() - started) * 1000)}
    return {"ok": True, "host": host, "port": int(port), "error": "",
            "latency_ms": int((time.monotonic() - started) * 1000)}


def check_https(url: str, timeout_s: float = 15.0, session=None) -> Dict[str, Any]:
    client = session or requests
    started = time.monotonic()
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", InsecureRequestWarning)
            response = client.get(url, headers=defaultHeaders(), timeout=float(timeout_s), verify=False)
    except requests.RequestException as exc:
        return {
            "ok": False,
            "status_code": None,
            "error_kind": classify_request_error(exc),
            "error": str(exc),
            "latency_ms": int((time.monotonic() - started) * 1000),
        }
    return {
        "ok": response.status_code < 400,
        "status_code": int(response.status_code),
        "error_kind": None,
        "error": "",
        "latency_ms": int((time.monotonic() - started) * 1000),
    }


def run_network_diagnostics(
        urls: Iterable[str],
        timeout_s: float = 15.0,
        proxy_host: str = "",
        proxy_port: Optional[int] = None,
        session=None,
) -> Dict[str, Any]:
    results: List[Dict[str, Any]] = []
    for url in urls:
        host = urlparse(url).hostname or ""
        entry = {"url": url, "host": host, "dns": resolve_host(host) if host else {"ok": False, "error": "no host"}}
        if entry["dns"].get("ok"):
            entry["https"] = check_https(url, timeout_s, session=session)
        else:
            entry["https"] = {"ok": False, "status_code": None, "error_kind": "dns", "error": "skipped"}
        logger.info(
            "%s: dns=%s https=%s",
            url,
            "ok" if entry["dns"].get("ok") else "fail",
            entry["https"].get("status_code") or entry["https"].get("error_kind"),
        )
        results.append(entry)

    proxy = None
    if proxy_host and proxy_port:
        proxy = check_port(proxy_host, int(proxy_port), timeout_s)

    summary = {
        "total": len(results),
        "dns_ok": sum(1 for item in results if item["dns"].get("ok")),
        "https_ok": sum(1 for item in results if item["https"].get("ok")),
    }
    summary["healthy"] = bool(results) and summary["https_ok"] == summary["total"]
    report = {"results": results, "summary": summary}
    if proxy is not None:
        report["proxy"] = proxy
    return report
