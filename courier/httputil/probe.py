"""
Portal Courier
Copyright (c) 2025 Portal Courier contributors

    This program is free software: you can redistribute it and/or modify it under the terms of the GNU General Public
    License as published by the Free Software Foundation, either version 3 of the License, or (at your option) any later
    version.

    This program is distributed in the hope that it will be useful, but WITHOUT ANY WARRANTY; without even the implied
    warranty of MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU General Public License for more
    details.

    You should have received a copy of the GNU General Public License along with this program.
    If not, see <http://www.gnu.org/licenses/>.
"""
import re
import time
import warnings
from typing import Dict, Optional

import requests
from urllib3.exceptions import InsecureRequestWarning

from courier.models import (
    ConnectivityResult,
    ERROR_DNS,
    ERROR_OTHER,
    ERROR_REFUSED,
    ERROR_TIMEOUT,
    ERROR_TLS,
)

_DNS_TOKENS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "name resolution",
    "no address associated",
    "failed to resolve",
)
_REFUSED_TOKENS = (
    "connection refused",
    "actively refused",
    "errno 111",
)
_TLS_TOKENS = (
    "certificate verify failed",
    "ssl",
    "tls",
    "wrong version number",
)
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


def defaultUserAgent() -> str:
    return (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )


def defaultHeaders() -> Dict[str, str]:
    return {
        "User-Agent": defaultUserAgent(),
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
        "Accept-Language": "es-CO,es;q=0.9,en;q=0.8",
    }


def _message_has(message: str, tokens) -> bool:
    lowered = str(message or "").lower()
    return any(token in lowered for token in tokens)


def classify_request_error(exc: BaseException) -> str:
    # ConnectTimeout subclasses ConnectionError as well, so check timeouts first.
    if isinstance(exc, requests.exceptions.Timeout):
        return ERROR_TIMEOUT
    if isinstance(exc, requests.exceptions.SSLError):
        return ERROR_TLS
    message = str(exc)
    if _message_has(message, _DNS_TOKENS):
        return ERROR_DNS
    if _message_has(message, _REFUSED_TOKENS):
        return ERROR_REFUSED
    if "timed out" in message.lower():
        return ERROR_TIMEOUT
    if _message_has(message, _TLS_TOKENS):
        return ERROR_TLS
    return ERROR_OTHER


def extract_title(body: str) -> str:
    match = _TITLE_RE.search(str(body or ""))
    if not match:
        return ""
    return " ".join(match.group(1).split())


def has_marker(body: str, marker: str) -> bool:
    if not marker:
        return True
    text = str(body or "")
    return marker in text or marker in extract_title(text)


def probe(
        target_url: str,
        timeout_ms: int,
        *,
        expected_marker: str = "",
        headers: Optional[Dict[str, str]] = None,
        proxies: Optional[Dict[str, str]] = None,
        session=None,
) -> ConnectivityResult:
    """Issue exactly one GET to ``target_url`` and classify the outcome.

    200 with the marker is reachable; 403 or any other status is reachable but
    classified as blocked; transport errors are unreachable with an error kind.
    """
    request_headers = dict(defaultHeaders())
    request_headers.update(headers or {})
    getter = session.get if session is not None else requests.get
    timeout_s = max(0.001, float(timeout_ms) / 1000.0)
    started = time.monotonic()
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", InsecureRequestWarning)
            response = getter(
                target_url,
                headers=request_headers,
                proxies=proxies,
                timeout=timeout_s,
                allow_redirects=True,
                verify=False,
            )
    except requests.exceptions.RequestException as exc:
        return ConnectivityResult(
            reachable=False,
            classified_blocked=False,
            latency_ms=int((time.monotonic() - started) * 1000),
            error_kind=classify_request_error(exc),
            error_message=str(exc),
            url=str(target_url),
        )

    latency_ms = int((time.monotonic() - started) * 1000)
    status_code = int(response.status_code)
    body = response.text if status_code == 200 else ""
    blocked = not (status_code == 200 and has_marker(body, expected_marker))
    return ConnectivityResult(
        reachable=True,
        classified_blocked=blocked,
        latency_ms=latency_ms,
        status_code=status_code,
        url=str(target_url),
    )
