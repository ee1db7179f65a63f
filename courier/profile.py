"""Route selection: direct or through the configured upstream proxy.

``select_profile`` is a pure function of the connectivity result, the proxy
settings and the static tables below. It never touches the network.
"""
from typing import Dict, Optional, Tuple

from courier.httputil.probe import defaultUserAgent
from courier.models import (
    ConnectivityResult,
    LocaleHints,
    ProxyConfig,
    ProxyEndpoint,
    SessionProfile,
)

DEFAULT_REGION = "co"

# region -> (locale, Accept-Language, timezone id)
REGION_LOCALES: Dict[str, Tuple[str, str, str]] = {
    "co": ("es-CO", "es-CO,es-419;q=0.9,es;q=0.8,en;q=0.7", "America/Bogota"),
    "mx": ("es-MX", "es-MX,es-419;q=0.9,es;q=0.8,en;q=0.7", "America/Mexico_City"),
    "pe": ("es-PE", "es-PE,es-419;q=0.9,es;q=0.8,en;q=0.7", "America/Lima"),
    "cl": ("es-CL", "es-CL,es-419;q=0.9,es;q=0.8,en;q=0.7", "America/Santiago"),
    "ar": ("es-AR", "es-AR,es-419;q=0.9,es;q=0.8,en;q=0.7", "America/Argentina/Buenos_Aires"),
    "es": ("es-ES", "es-ES,es;q=0.9,en;q=0.8", "Europe/Madrid"),
    "br": ("pt-BR", "pt-BR,pt;q=0.9,en;q=0.8", "America/Sao_Paulo"),
    "us": ("en-US", "en-US,en;q=0.9", "America/New_York"),
    "gb": ("en-GB", "en-GB,en;q=0.9", "Europe/London"),
}

BASE_IDENTITY_HEADERS = (
    ("Accept", "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8"),
    ("Accept-Encoding", "gzip, deflate, br"),
    ("Upgrade-Insecure-Requests", "1"),
)


def locale_for_region(region: Optional[str]) -> LocaleHints:
    key = str(region or "").strip().lower()
    if key not in REGION_LOCALES:
        key = DEFAULT_REGION
    locale, accept_language, timezone_id = REGION_LOCALES[key]
    return LocaleHints(
        region=key,
        locale=locale,
        accept_language=accept_language,
        timezone_id=timezone_id,
    )


def build_identity_headers(hints: LocaleHints, user_agent: Optional[str] = None) -> Tuple[Tuple[str, str], ...]:
    headers = [("User-Agent", str(user_agent or defaultUserAgent()))]
    headers.extend(BASE_IDENTITY_HEADERS)
    headers.append(("Accept-Language", hints.accept_language))
    return tuple(headers)


def needs_proxy(conn_result: ConnectivityResult) -> bool:
    if not conn_result.reachable:
        return True
    return bool(conn_result.classified_blocked)


def _endpoint_from(proxy_config: ProxyConfig) -> ProxyEndpoint:
    return ProxyEndpoint(
        host=str(proxy_config.host),
        port=int(proxy_config.port),
        username=str(proxy_config.username or ""),
        password=str(proxy_config.password or ""),
        scheme=str(proxy_config.scheme or "http"),
    )


def _usable(proxy_config: Optional[ProxyConfig]) -> bool:
    if proxy_config is None:
        return False
    try:
        port = int(proxy_config.port)
    except (TypeError, ValueError):
        return False
    return bool(str(proxy_config.host or "").strip()) and 0 < port < 65536


def select_profile(
        conn_result: ConnectivityResult,
        proxy_config: Optional[ProxyConfig],
        *,
        default_region: str = DEFAULT_REGION,
        user_agent: Optional[str] = None,
) -> SessionProfile:
    if not needs_proxy(conn_result):
        hints = locale_for_region(default_region)
        return SessionProfile(
            route_via_proxy=False,
            identity_headers=build_identity_headers(hints, user_agent),
            locale_hints=hints,
        )

    if _usable(proxy_config):
        # Locale follows the proxy's exit region so headers and IP agree.
        hints = locale_for_region(proxy_config.region)
        return SessionProfile(
            route_via_proxy=True,
            identity_headers=build_identity_headers(hints, user_agent),
            locale_hints=hints,
            proxy_endpoint=_endpoint_from(proxy_config),
        )

    if conn_result.reachable:
        warning = (
            f"target classified as blocked (status {conn_result.status_code}) "
            "but no proxy is configured; continuing direct"
        )
    else:
        warning = (
            f"target unreachable ({conn_result.error_kind or 'unknown error'}) "
            "but no proxy is configured; continuing direct"
        )
    hints = locale_for_region(default_region)
    return SessionProfile(
        route_via_proxy=False,
        identity_headers=build_identity_headers(hints, user_agent),
        locale_hints=hints,
        warnings=(warning,),
    )
