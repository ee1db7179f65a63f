import time
import warnings

import requests
from urllib3.exceptions import InsecureRequestWarning

from courier.engines.base import EngineAdapter, EngineTask, Evidence
from courier.models import ENGINE_RAW_HTTP, EngineAttempt, SessionProfile


class RawHttpAdapter(EngineAdapter):
    kind = ENGINE_RAW_HTTP

    def __init__(self, scorer=None, session=None):
        super().__init__(scorer)
        self.session = session

    def attempt(self, profile: SessionProfile, task: EngineTask, timeout_ms: int) -> EngineAttempt:
        started = time.monotonic()
        getter = self.session.get if self.session is not None else requests.get
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", InsecureRequestWarning)
                response = getter(
                    task.url,
                    headers=profile.headers(),
                    proxies=profile.requests_proxies(),
                    timeout=max(1.0, int(timeout_ms) / 1000.0),
                    allow_redirects=True,
                    verify=False,
                )
        except requests.exceptions.RequestException as exc:
            return self.failed(f"raw http: {exc}", started)

        status = int(response.status_code)
        if status >= 400:
            return self.failed(f"raw http: status {status}", started, detail=f"status={status}")

        body = response.content or b""
        evidence = Evidence(
            data=body,
            content_type=str(response.headers.get("Content-Type", "text/html") or "text/html"),
            page_text=response.text or "",
        )
        return self.judged(evidence, task, started, detail=f"status={status}")
