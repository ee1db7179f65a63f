import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from courier.engines.registry import ENGINE_KINDS
from courier.errors import ConfigurationError
from courier.models import ProxyConfig
from courier.paths import (
    ensure_courier_home,
    get_courier_config_path,
    get_evidence_dir,
    get_otp_handoff_path,
    get_run_log_path,
    get_work_dir,
)
from courier.profile import REGION_LOCALES

DEFAULT_PORTAL_FORM = {
    "login_marker": "Pagos Recurrentes",
    "upload_url": "https://pagosrecurrentes.redebandigital.com/pages/carga",
    "username_selectors": [
        'input[name="f_username"]',
        'input[placeholder="nombre de usuario"]',
        'input[type="email"]',
        'input[name="email"]',
    ],
    "password_selectors": [
        'input[name="f_password"]',
        'input[type="password"]',
        'input[name="password"]',
    ],
    "submit_selectors": [
        'button[type="submit"]',
        'input[type="submit"]',
        "form button",
    ],
    "otp_selectors": [
        'input[name="f_codigo"]',
        'input[placeholder="codigo de verificacion"]',
        'input[name*="otp"]',
        'input[name*="code"]',
        'input[name*="token"]',
    ],
    "credential_error_markers": ["Credenciales incorrectas"],
    "otp_invalid_markers": ["Código inválido o expirado", "Código inválido"],
    "login_success_tokens": ["dashboard", "home", "inicio", "main", "welcome"],
    "file_input_selector": "#file-upload-single",
    "description_selector": "#colFormLabel",
    "description_text": "Carga automática de archivo - Proceso automatizado Redeban",
    "agreement_selector": "#selectDefault",
    "agreement_value": "39",
    "form_submit_selector": 'button:has-text("Enviar")',
    "upload_success_markers": [],
    "upload_error_markers": ["Error al cargar", "archivo inválido"],
}

DEFAULT_COURIER_CONFIG = {
    "target_url": "https://pagosrecurrentes.redebandigital.com/pages/authentication/login-v1",
    "expected_marker": "Pagos Recurrentes",
    "username_secret": "site/username",
    "password_secret": "site/password",
    "upload_reference": "",
    "default_region": "co",
    "proxy": {
        "enabled": False,
        "host": "",
        "port": 0,
        "region": "co",
        "scheme": "http",
        "username_secret": "proxy/username",
        "password_secret": "proxy/password",
    },
    "proxy_on_dns_failure": False,
    "engine_order": list(ENGINE_KINDS),
    "timeouts": {
        "probe_seconds": 15,
        "otp_interactive_seconds": 30,
        "otp_unattended_seconds": 120,
        "confirmation_seconds": 10,
        "engines": {
            "primary_driver": 45,
            "secondary_driver": 45,
            "subprocess_browser": 60,
            "raw_http": 15,
        },
    },
    "otp_mode": "auto",
    "otp_handoff_path": "",
    "min_evidence_bytes": 50000,
    "evidence_dir": "",
    "work_dir": "",
    "run_log_path": "",
    "portal": DEFAULT_PORTAL_FORM,
}

VALID_OTP_MODES = {"auto", "console", "handoff"}
VALID_PROXY_SCHEMES = {"http", "https", "socks5"}

ENV_OVERRIDES = {
    "COURIER_TARGET_URL": "target_url",
    "COURIER_EXPECTED_MARKER": "expected_marker",
    "COURIER_UPLOAD_REFERENCE": "upload_reference",
    "COURIER_OTP_MODE": "otp_mode",
    "COURIER_ENGINE_ORDER": "engine_order",
    "COURIER_PROXY_HOST": "proxy.host",
    "COURIER_PROXY_PORT": "proxy.port",
    "COURIER_PROXY_REGION": "proxy.region",
    "COURIER_USE_PROXY": "proxy.enabled",
}


@dataclass(frozen=True)
class PortalForm:
    login_marker: str
    upload_url: str
    username_selectors: Tuple[str, ...]
    password_selectors: Tuple[str, ...]
    submit_selectors: Tuple[str, ...]
    otp_selectors: Tuple[str, ...]
    credential_error_markers: Tuple[str, ...]
    otp_invalid_markers: Tuple[str, ...]
    login_success_tokens: Tuple[str, ...]
    file_input_selector: str
    description_selector: str
    description_text: str
    agreement_selector: str
    agreement_value: str
    form_submit_selector: str
    upload_success_markers: Tuple[str, ...]
    upload_error_markers: Tuple[str, ...]


@dataclass(frozen=True)
class ProxySettings:
    enabled: bool
    host: str
    port: int
    region: str
    scheme: str
    username_secret: str
    password_secret: str


@dataclass(frozen=True)
class WorkflowConfig:
    target_url: str
    expected_marker: str
    username_secret: str
    password_secret: str
    upload_reference: str
    default_region: str
    proxy: ProxySettings
    proxy_on_dns_failure: bool
    engine_order: Tuple[str, ...]
    probe_timeout_ms: int
    otp_interactive_timeout_s: int
    otp_unattended_timeout_s: int
    confirmation_timeout_ms: int
    engine_timeouts_ms: Tuple[Tuple[str, int], ...]
    otp_mode: str
    otp_handoff_path: str
    min_evidence_bytes: int
    evidence_dir: str
    work_dir: str
    run_log_path: str
    portal: PortalForm = field(repr=False)

    def engine_timeouts(self) -> Dict[str, int]:
        return dict(self.engine_timeouts_ms)

    def proxy_config(self, fetch_secret=None) -> Optional[ProxyConfig]:
        """Resolve proxy settings into a ``ProxyConfig``; credentials come from ``fetch_secret``."""
        if not self.proxy.enabled or not self.proxy.host or not self.proxy.port:
            return None
        username = ""
        password = ""
        if fetch_secret is not None and self.proxy.username_secret:
            username = fetch_secret(self.proxy.username_secret, required=False) or ""
            if username:
                password = fetch_secret(self.proxy.password_secret, required=False) or ""
        return ProxyConfig(
            host=self.proxy.host,
            port=int(self.proxy.port),
            username=username,
            password=password,
            region=self.proxy.region,
            scheme=self.proxy.scheme,
        )


def get_default_courier_config_path() -> str:
    ensure_courier_home()
    return get_courier_config_path("courier.json")


def _clamp_int(value, default: int, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = int(default)
    return max(low, min(number, high))


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _string_list(value, default) -> list:
    if isinstance(value, str):
        value = [item for item in value.split(",")]
    if not isinstance(value, (list, tuple)):
        value = default
    return [str(item).strip() for item in value if str(item or "").strip()]


def normalize_engine_order(value) -> list:
    requested = _string_list(value, list(ENGINE_KINDS))
    order = []
    for kind in requested:
        key = kind.strip().lower().replace("-", "_")
        if key in ENGINE_KINDS and key not in order:
            order.append(key)
    return order or list(ENGINE_KINDS)


class CourierConfigManager:
    def __init__(self, config_path: str = None):
        self.config_path = config_path or get_default_courier_config_path()
        self._cache = None

    def load(self) -> Dict[str, Any]:
        if self._cache is not None:
            return self._cache

        if not os.path.exists(self.config_path):
            self._cache = self._normalize_config(dict(DEFAULT_COURIER_CONFIG))
            self.save(self._cache)
            return self._cache

        try:
            with open(self.config_path, "r", encoding="utf-8") as handle:
                parsed = json.load(handle)
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"unable to read config {self.config_path}: {exc}") from exc

        if not isinstance(parsed, dict):
            raise ConfigurationError(f"config {self.config_path} must contain a JSON object")
        self._cache = self._normalize_config(parsed)
        return self._cache

    def save(self, config: Dict[str, Any]):
        normalized = self._normalize_config(config)
        directory = os.path.dirname(self.config_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as handle:
            json.dump(normalized, handle, indent=2, sort_keys=True, ensure_ascii=False)
        self._cache = normalized

    def merge_preferences(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        current = self.load()
        merged = dict(current)
        for key, value in updates.items():
            if key in ("proxy", "portal") and isinstance(value, dict):
                section = dict(merged.get(key, {}))
                section.update(value)
                merged[key] = section
            elif key == "timeouts" and isinstance(value, dict):
                timeouts = dict(merged.get("timeouts", {}))
                for timeout_key, timeout_value in value.items():
                    if timeout_key == "engines" and isinstance(timeout_value, dict):
                        engines = dict(timeouts.get("engines", {}))
                        engines.update(timeout_value)
                        timeouts["engines"] = engines
                    else:
                        timeouts[timeout_key] = timeout_value
                merged["timeouts"] = timeouts
            else:
                merged[key] = value
        return self._normalize_config(merged)

    def update_preferences(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        normalized = self.merge_preferences(updates)
        self.save(normalized)
        return self.load()

    @staticmethod
    def _normalize_config(raw: Dict[str, Any]) -> Dict[str, Any]:
        config = dict(DEFAULT_COURIER_CONFIG)
        config.update({k: v for k, v in raw.items() if k in config})

        for key in ("target_url", "expected_marker", "username_secret", "password_secret",
                    "upload_reference", "otp_handoff_path", "evidence_dir", "work_dir", "run_log_path"):
            config[key] = str(config.get(key, "") or "").strip()

        region = str(config.get("default_region", "co") or "co").strip().lower()
        config["default_region"] = region if region in REGION_LOCALES else "co"

        proxy = dict(DEFAULT_COURIER_CONFIG["proxy"])
        proxy_raw = raw.get("proxy", {})
        if isinstance(proxy_raw, dict):
            proxy.update(proxy_raw)
        proxy_region = str(proxy.get("region", "co") or "co").strip().lower()
        proxy_scheme = str(proxy.get("scheme", "http") or "http").strip().lower()
        config["proxy"] = {
            "enabled": _as_bool(proxy.get("enabled", False)),
            "host": str(proxy.get("host", "") or "").strip(),
            "port": _clamp_int(proxy.get("port", 0), 0, 0, 65535),
            "region": proxy_region if proxy_region in REGION_LOCALES else "co",
            "scheme": proxy_scheme if proxy_scheme in VALID_PROXY_SCHEMES else "http",
            "username_secret": str(proxy.get("username_secret", "") or "").strip(),
            "password_secret": str(proxy.get("password_secret", "") or "").strip(),
        }

        config["proxy_on_dns_failure"] = _as_bool(config.get("proxy_on_dns_failure", False))
        config["engine_order"] = normalize_engine_order(config.get("engine_order"))

        timeouts_defaults = DEFAULT_COURIER_CONFIG["timeouts"]
        timeouts_raw = raw.get("timeouts", {})
        if not isinstance(timeouts_raw, dict):
            timeouts_raw = {}
        engines_raw = timeouts_raw.get("engines", {})
        if not isinstance(engines_raw, dict):
            engines_raw = {}
        engines = {}
        for kind in ENGINE_KINDS:
            engines[kind] = _clamp_int(
                engines_raw.get(kind, timeouts_defaults["engines"][kind]),
                timeouts_defaults["engines"][kind], 5, 300,
            )
        config["timeouts"] = {
            "probe_seconds": _clamp_int(
                timeouts_raw.get("probe_seconds", timeouts_defaults["probe_seconds"]),
                timeouts_defaults["probe_seconds"], 1, 60,
            ),
            "otp_interactive_seconds": _clamp_int(
                timeouts_raw.get("otp_interactive_seconds", timeouts_defaults["otp_interactive_seconds"]),
                timeouts_defaults["otp_interactive_seconds"], 5, 900,
            ),
            "otp_unattended_seconds": _clamp_int(
                timeouts_raw.get("otp_unattended_seconds", timeouts_defaults["otp_unattended_seconds"]),
                timeouts_defaults["otp_unattended_seconds"], 5, 900,
            ),
            "confirmation_seconds": _clamp_int(
                timeouts_raw.get("confirmation_seconds", timeouts_defaults["confirmation_seconds"]),
                timeouts_defaults["confirmation_seconds"], 1, 120,
            ),
            "engines": engines,
        }

        otp_mode = str(config.get("otp_mode", "auto") or "auto").strip().lower()
        config["otp_mode"] = otp_mode if otp_mode in VALID_OTP_MODES else "auto"
        config["min_evidence_bytes"] = _clamp_int(config.get("min_evidence_bytes", 50000), 50000, 1, 10_000_000)

        portal = dict(DEFAULT_PORTAL_FORM)
        portal_raw = raw.get("portal", {})
        if isinstance(portal_raw, dict):
            portal.update({k: v for k, v in portal_raw.items() if k in DEFAULT_PORTAL_FORM})
        for key, default in DEFAULT_PORTAL_FORM.items():
            if isinstance(default, list):
                portal[key] = _string_list(portal.get(key), default)
            else:
                portal[key] = str(portal.get(key, default) or "")
        config["portal"] = portal
        return config


def _set_dotted(target: Dict[str, Any], dotted: str, value):
    parts = dotted.split(".")
    cursor = target
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value


def config_overrides_from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_name, dotted in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or str(value).strip() == "":
            continue
        _set_dotted(overrides, dotted, str(value).strip())
    return overrides


def build_workflow_config(raw: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> WorkflowConfig:
    """Freeze a normalized config dict into the object handed to every component."""
    config = CourierConfigManager._normalize_config(raw)
    if not config["target_url"]:
        raise ConfigurationError("target_url is required")
    timeouts = config["timeouts"]
    portal = config["portal"]
    proxy = config["proxy"]
    return WorkflowConfig(
        target_url=config["target_url"],
        expected_marker=config["expected_marker"],
        username_secret=config["username_secret"],
        password_secret=config["password_secret"],
        upload_reference=config["upload_reference"],
        default_region=config["default_region"],
        proxy=ProxySettings(**proxy),
        proxy_on_dns_failure=config["proxy_on_dns_failure"],
        engine_order=tuple(config["engine_order"]),
        probe_timeout_ms=int(timeouts["probe_seconds"]) * 1000,
        otp_interactive_timeout_s=int(timeouts["otp_interactive_seconds"]),
        otp_unattended_timeout_s=int(timeouts["otp_unattended_seconds"]),
        confirmation_timeout_ms=int(timeouts["confirmation_seconds"]) * 1000,
        engine_timeouts_ms=tuple((kind, int(seconds) * 1000) for kind, seconds in timeouts["engines"].items()),
        otp_mode=config["otp_mode"],
        otp_handoff_path=config["otp_handoff_path"] or get_otp_handoff_path(environ),
        min_evidence_bytes=int(config["min_evidence_bytes"]),
        evidence_dir=config["evidence_dir"] or get_evidence_dir(environ),
        work_dir=config["work_dir"] or get_work_dir(environ),
        run_log_path=config["run_log_path"] or get_run_log_path(environ),
        portal=PortalForm(**{
            key: tuple(value) if isinstance(value, list) else value
            for key, value in portal.items()
        }),
    )
