import functools
import logging
from typing import Any, Callable, Dict, Mapping, Optional

from courier.db.SqliteDbAdapter import Database
from courier.engines import EngineAdapter, EngineTask, SizeAndMarkerScorer, build_default_adapters
from courier.errors import CourierError, EngineFailure, NetworkUnreachable, OTPInvalid
from courier.evidence import LocalEvidenceStore
from courier.fallback import DEFAULT_ENGINE_TIMEOUT_MS, run_with_fallback, summarize_chain_failure
from courier.httputil.probe import probe
from courier.logging.courierLog import log
from courier.models import (
    ERROR_DNS,
    OUTCOME_FAILURE,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_STARTED,
    STEP_CONNECTIVITY_CHECKED,
    STEP_FILE_SELECTED,
    STEP_FORM_SUBMITTED,
    STEP_LOGGED_IN,
    STEP_OTP_VERIFIED,
    STEP_SESSION_BUILT,
    Credentials,
    ProcessRun,
    ProxyConfig,
)
from courier.otp import build_otp_source, is_valid_otp, mask_otp
from courier.payload import fetch_upload_payload
from courier.portal import open_portal_session
from courier.profile import select_profile
from courier.runlog import RunEventLog
from courier.secrets import EnvironmentSecrets

logger = logging.getLogger(__name__)

ERROR_KIND_UNEXPECTED = "Unexpected"


class WorkflowDriver:
    """Runs one upload end to end and owns the resulting ``ProcessRun``."""

    def __init__(
            self,
            config,
            *,
            prober: Callable,
            adapters: Mapping[str, EngineAdapter],
            portal_factory: Callable,
            otp_source,
            evidence_store,
            run_events,
            scorer=None,
            payload_fetcher: Optional[Callable[[str], str]] = None,
            proxy_config: Optional[ProxyConfig] = None,
    ):
        self.config = config
        self.prober = prober
        self.adapters = dict(adapters)
        self.portal_factory = portal_factory
        self.otp_source = otp_source
        self.evidence_store = evidence_store
        self.run_events = run_events
        self.scorer = scorer
        self.payload_fetcher = payload_fetcher or functools.partial(fetch_upload_payload, work_dir=config.work_dir)
        self.proxy_config = proxy_config

    def _event(self, run: ProcessRun, status: str, details: Optional[Dict[str, Any]] = None):
        try:
            self.run_events.write(run.id, status, details or {})
        except Exception as exc:
            logger.error("Unable to record run event %s for %s: %s", status, run.id, exc)

    def _step(self, run: ProcessRun, step: str, details: Optional[Dict[str, Any]] = None):
        run.mark_step(step)
        payload = {"step": step}
        payload.update(details or {})
        self._event(run, step, payload)
        log(step, "step")

    def _capture(self, run: ProcessRun, session, label: str):
        if session is None:
            return
        try:
            data = session.capture(label)
            if data:
                run.evidence.append(self.evidence_store.store_evidence(data, label, run.id))
        except Exception as exc:
            logger.warning("Evidence capture %s failed: %s", label, exc)

    def _store_attempt_evidence(self, run: ProcessRun, attempt):
        if attempt is None or not attempt.evidence:
            return
        try:
            path = self.evidence_store.store_evidence(attempt.evidence, f"engine-{attempt.engine_kind}", run.id)
            run.evidence.append(path)
        except Exception as exc:
            logger.warning("Storing %s evidence failed: %s", attempt.engine_kind, exc)

    def _fail(self, run: ProcessRun, kind: str, message: str, session):
        self._capture(run, session, "error-state")
        last_step = run.last_step
        run.fail(kind, message)
        self._event(run, RUN_FAILED, {
            "error_kind": kind,
            "error_message": message,
            "last_step": last_step,
        })
        log(f"Run {run.id} failed after {last_step}: {kind}: {message}", "error")

    def _can_drive(self, attempt) -> bool:
        adapter = self.adapters.get(attempt.engine_kind)
        return adapter is not None and adapter.can_drive_session()

    def _verify_otp(self, run: ProcessRun, session):
        if not session.otp_required():
            self._step(run, STEP_OTP_VERIFIED, {"otp_requested": False})
            return
        code = str(self.otp_source.wait_for_code() or "").strip()
        if not is_valid_otp(code):
            raise OTPInvalid("OTP must be 4 to 8 digits")
        session.submit_otp(code)
        self._step(run, STEP_OTP_VERIFIED, {"otp_requested": True, "otp": mask_otp(code)})

    def run(self, credentials: Credentials, upload_source: str) -> ProcessRun:
        config = self.config
        run = ProcessRun()
        self._event(run, RUN_STARTED, {"target_url": config.target_url, "upload_source": str(upload_source or "")})
        log(f"Run {run.id} started for {config.target_url}", "info")

        session = None
        try:
            local_path = self.payload_fetcher(upload_source)

            conn = self.prober(config.target_url, config.probe_timeout_ms)
            self._step(run, STEP_CONNECTIVITY_CHECKED, conn.to_dict())
            if not conn.reachable and conn.error_kind == ERROR_DNS and not config.proxy_on_dns_failure:
                raise NetworkUnreachable(f"DNS resolution failed for {config.target_url}: {conn.error_message}")

            profile = select_profile(conn, self.proxy_config, default_region=config.default_region)
            for warning in profile.warnings:
                log(warning, "warning")

            task = EngineTask(
                url=config.target_url,
                label="target-page",
                output_dir=config.work_dir,
                expected_marker=config.expected_marker,
            )
            chain = run_with_fallback(
                profile,
                task,
                config.engine_order,
                self.adapters,
                timeouts_ms=config.engine_timeouts(),
                default_timeout_ms=DEFAULT_ENGINE_TIMEOUT_MS,
                selectable=self._can_drive,
            )
            self._store_attempt_evidence(run, chain.selected)
            if chain.status == OUTCOME_FAILURE or chain.selected is None:
                raise EngineFailure(f"all engines failed: {summarize_chain_failure(chain.attempts)}")

            engine_kind = chain.selected.engine_kind
            run.engine_kind = engine_kind
            adapter = self.adapters.get(engine_kind)
            if adapter is None or not adapter.can_drive_session():
                raise EngineFailure(f"engine {engine_kind} cannot drive an interactive session")

            session = self.portal_factory(engine_kind, profile)
            session.open_login()
            self._step(run, STEP_SESSION_BUILT, {
                "engine_kind": engine_kind,
                "authoritative": chain.authoritative,
                "route_via_proxy": profile.route_via_proxy,
                "chain": chain.to_dict(),
            })
            self._capture(run, session, "login-page")

            if hasattr(self.otp_source, "clear"):
                self.otp_source.clear()
            session.login(credentials)
            self._step(run, STEP_LOGGED_IN)
            self._capture(run, session, "logged-in")

            self._verify_otp(run, session)
            self._capture(run, session, "otp-verified")

            session.open_upload_page()
            session.select_file(local_path)
            self._step(run, STEP_FILE_SELECTED, {"file": local_path})

            session.submit_form()
            self._step(run, STEP_FORM_SUBMITTED)
            self._capture(run, session, "form-submitted")

            run.complete()
            self._event(run, RUN_COMPLETED, {"engine_kind": run.engine_kind, "evidence": list(run.evidence)})
            log(f"Run {run.id} completed", "success")
        except CourierError as exc:
            self._fail(run, exc.kind, str(exc), session)
        except Exception as exc:
            logger.exception("Unexpected error during run %s", run.id)
            self._fail(run, ERROR_KIND_UNEXPECTED, str(exc), session)
        finally:
            if session is not None:
                session.close()
        return run


def run_workflow(config, collaborators: Optional[Dict[str, Any]] = None) -> ProcessRun:
    """Wire the default collaborators from ``config`` and execute one run.

    Any collaborator may be supplied in ``collaborators`` under the same keyword
    ``WorkflowDriver`` accepts, plus ``secrets``, ``credentials`` and
    ``upload_reference``. Setup errors (a missing secret, a run log that cannot
    be opened) are raised before a ``ProcessRun`` exists; everything after that
    is recorded on the returned run.
    """
    provided = dict(collaborators or {})
    secrets = provided.get("secrets") or EnvironmentSecrets()

    credentials = provided.get("credentials")
    if credentials is None:
        credentials = Credentials(
            username=secrets.fetch_secret(config.username_secret),
            password=secrets.fetch_secret(config.password_secret),
        )
    if "proxy_config" in provided:
        proxy_config = provided["proxy_config"]
    else:
        proxy_config = config.proxy_config(secrets.fetch_secret)

    scorer = provided.get("scorer") or SizeAndMarkerScorer(config.min_evidence_bytes)
    adapters = provided.get("adapters") or build_default_adapters(scorer, work_dir=config.work_dir)
    engine_timeouts = config.engine_timeouts()

    owned_log = None
    run_events = provided.get("run_events")
    if run_events is None:
        owned_log = RunEventLog(Database(config.run_log_path))
        run_events = owned_log

    driver = WorkflowDriver(
        config,
        prober=provided.get("prober") or functools.partial(probe, expected_marker=config.expected_marker),
        adapters=adapters,
        portal_factory=provided.get("portal_factory") or (
            lambda kind, profile: open_portal_session(
                kind, config, profile, engine_timeouts.get(kind, DEFAULT_ENGINE_TIMEOUT_MS)
            )
        ),
        otp_source=provided.get("otp_source") or build_otp_source(config),
        evidence_store=provided.get("evidence_store") or LocalEvidenceStore(config.evidence_dir),
        run_events=run_events,
        scorer=scorer,
        payload_fetcher=provided.get("payload_fetcher"),
        proxy_config=proxy_config,
    )
    try:
        return driver.run(credentials, provided.get("upload_reference") or config.upload_reference)
    finally:
        if owned_log is not None:
            owned_log.close()
