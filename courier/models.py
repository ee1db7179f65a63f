import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from courier.errors import InvalidTransition
from courier.timing import utc_now_iso

ERROR_TIMEOUT = "timeout"
ERROR_DNS = "dns"
ERROR_REFUSED = "refused"
ERROR_TLS = "tls"
ERROR_OTHER = "other"
VALID_ERROR_KINDS = {ERROR_TIMEOUT, ERROR_DNS, ERROR_REFUSED, ERROR_TLS, ERROR_OTHER}

ENGINE_PRIMARY_DRIVER = "primary_driver"
ENGINE_SECONDARY_DRIVER = "secondary_driver"
ENGINE_SUBPROCESS_BROWSER = "subprocess_browser"
ENGINE_RAW_HTTP = "raw_http"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_AMBIGUOUS = "ambiguous"

RUN_STARTED = "Started"
RUN_COMPLETED = "Completed"
RUN_FAILED = "Failed"

STEP_CONNECTIVITY_CHECKED = "ConnectivityChecked"
STEP_SESSION_BUILT = "SessionBuilt"
STEP_LOGGED_IN = "LoggedIn"
STEP_OTP_VERIFIED = "OTPVerified"
STEP_FILE_SELECTED = "FileSelected"
STEP_FORM_SUBMITTED = "FormSubmitted"
WORKFLOW_STEPS = (
    STEP_CONNECTIVITY_CHECKED,
    STEP_SESSION_BUILT,
    STEP_LOGGED_IN,
    STEP_OTP_VERIFIED,
    STEP_FILE_SELECTED,
    STEP_FORM_SUBMITTED,
)


@dataclass(frozen=True)
class ConnectivityResult:
    reachable: bool
    classified_blocked: bool
    latency_ms: int
    status_code: Optional[int] = None
    error_kind: Optional[str] = None
    error_message: str = ""
    url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "reachable": bool(self.reachable),
            "classified_blocked": bool(self.classified_blocked),
            "status_code": self.status_code,
            "latency_ms": int(self.latency_ms),
            "error_kind": self.error_kind,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class ProxyConfig:
    host: str
    port: int
    username: str = ""
    password: str = field(default="", repr=False)
    region: str = "co"
    scheme: str = "http"

    def has_credentials(self) -> bool:
        return bool(self.username)


@dataclass(frozen=True)
class ProxyEndpoint:
    host: str
    port: int
    username: str = ""
    password: str = field(default="", repr=False)
    scheme: str = "http"

    def url(self, include_credentials: bool = True) -> str:
        auth = ""
        if include_credentials and self.username:
            auth = f"{self.username}:{self.password}@"
        return f"{self.scheme}://{auth}{self.host}:{int(self.port)}"


@dataclass(frozen=True)
class LocaleHints:
    region: str
    locale: str
    accept_language: str
    timezone_id: str


@dataclass(frozen=True)
class SessionProfile:
    route_via_proxy: bool
    identity_headers: Tuple[Tuple[str, str], ...]
    locale_hints: LocaleHints
    proxy_endpoint: Optional[ProxyEndpoint] = None
    warnings: Tuple[str, ...] = ()

    def headers(self) -> Dict[str, str]:
        return dict(self.identity_headers)

    @property
    def user_agent(self) -> str:
        return self.headers().get("User-Agent", "")

    def needs_proxy_auth(self) -> bool:
        return bool(self.route_via_proxy and self.proxy_endpoint and self.proxy_endpoint.username)

    def proxy_url(self, include_credentials: bool = True) -> Optional[str]:
        if not self.route_via_proxy or self.proxy_endpoint is None:
            return None
        return self.proxy_endpoint.url(include_credentials=include_credentials)

    def requests_proxies(self) -> Optional[Dict[str, str]]:
        url = self.proxy_url()
        if not url:
            return None
        return {"http": url, "https": url}

    def playwright_proxy(self) -> Optional[Dict[str, str]]:
        if not self.route_via_proxy or self.proxy_endpoint is None:
            return None
        proxy = {"server": self.proxy_endpoint.url(include_credentials=False)}
        if self.proxy_endpoint.username:
            proxy["username"] = self.proxy_endpoint.username
            proxy["password"] = self.proxy_endpoint.password
        return proxy

    def chromium_proxy_arg(self) -> Optional[str]:
        url = self.proxy_url(include_credentials=False)
        if not url:
            return None
        return f"--proxy-server={url}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "route_via_proxy": bool(self.route_via_proxy),
            "proxy": self.proxy_url(include_credentials=False),
            "identity_headers": self.headers(),
            "locale": self.locale_hints.locale,
            "timezone_id": self.locale_hints.timezone_id,
            "region": self.locale_hints.region,
            "warnings": list(self.warnings),
        }


@dataclass
class EngineAttempt:
    engine_kind: str
    outcome: str
    evidence_size_bytes: Optional[int] = None
    error_message: str = ""
    score: float = 0.0
    elapsed_ms: int = 0
    detail: str = ""
    content_type: str = ""
    evidence: Optional[bytes] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "engine_kind": self.engine_kind,
            "outcome": self.outcome,
            "evidence_size_bytes": self.evidence_size_bytes,
            "error_message": self.error_message,
            "score": float(self.score),
            "elapsed_ms": int(self.elapsed_ms),
            "detail": self.detail,
        }


@dataclass
class ChainResult:
    attempts: List[EngineAttempt]
    status: str
    selected: Optional[EngineAttempt] = None
    authoritative: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "authoritative": bool(self.authoritative),
            "selected": self.selected.engine_kind if self.selected else None,
            "attempts": [item.to_dict() for item in self.attempts],
        }


@dataclass
class ProcessRun:
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: str = field(default_factory=utc_now_iso)
    status: str = RUN_STARTED
    steps_completed: List[str] = field(default_factory=list)
    finished_at: str = ""
    error_kind: str = ""
    error_message: str = ""
    engine_kind: str = ""
    evidence: List[str] = field(default_factory=list)

    @property
    def last_step(self) -> str:
        return self.steps_completed[-1] if self.steps_completed else RUN_STARTED

    def mark_step(self, step: str):
        if self.status != RUN_STARTED:
            raise InvalidTransition(f"cannot record step {step} on a {self.status} run")
        if step not in WORKFLOW_STEPS:
            raise InvalidTransition(f"unknown workflow step {step}")
        expected = WORKFLOW_STEPS[len(self.steps_completed)] if len(self.steps_completed) < len(WORKFLOW_STEPS) else None
        if step != expected:
            raise InvalidTransition(f"step {step} out of order; expected {expected}")
        self.steps_completed.append(step)

    def complete(self):
        if self.last_step != STEP_FORM_SUBMITTED:
            raise InvalidTransition(f"run {self.id} cannot complete after {self.last_step}")
        self._finish(RUN_COMPLETED)

    def fail(self, error_kind: str, error_message: str):
        self._finish(RUN_FAILED)
        self.error_kind = str(error_kind or "")
        self.error_message = str(error_message or "")

    def _finish(self, status: str):
        if self.status != RUN_STARTED:
            raise InvalidTransition(f"run {self.id} already {self.status}")
        self.status = status
        self.finished_at = utc_now_iso()

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "steps_completed": list(self.steps_completed),
            "last_step": self.last_step,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "engine_kind": self.engine_kind,
            "evidence": list(self.evidence),
        }
