import os
import tempfile
import unittest

from courier.engines.base import EngineAdapter
from courier.errors import CredentialRejected, OTPInvalid, OTPTimeout, UploadTargetMissing
from courier.models import ConnectivityResult, Credentials, EngineAttempt, ProxyConfig

CREDENTIALS = Credentials("operator", "pw")


def _config(**overrides):
    from courier.config import build_workflow_config

    home = tempfile.mkdtemp(prefix="courier-workflow-")
    raw = {"engine_order": ["primary_driver", "secondary_driver", "raw_http"]}
    raw.update(overrides)
    return build_workflow_config(raw, {"COURIER_HOME": home})


class FakeAdapter(EngineAdapter):
    def __init__(self, kind, outcome, drives=True, score=0.0):
        super().__init__()
        self.kind = kind
        self.outcome = outcome
        self.drives = drives
        self.score = score
        self.calls = 0

    def can_drive_session(self):
        return self.drives

    def attempt(self, profile, task, timeout_ms):
        self.calls += 1
        return EngineAttempt(engine_kind=self.kind, outcome=self.outcome, evidence=b"shot", evidence_size_bytes=4,
                             score=self.score)


class FakePortal:
    def __init__(self, otp_required=True, fail_on=None):
        self.otp_is_required = otp_required
        self.fail_on = dict(fail_on or {})
        self.calls = []
        self.closed = False

    def _call(self, name, *args):
        self.calls.append(name)
        if name in self.fail_on:
            raise self.fail_on[name]

    def open_login(self):
        self._call("open_login")

    def login(self, credentials):
        self._call("login", credentials)

    def otp_required(self):
        return self.otp_is_required

    def submit_otp(self, code):
        self._call("submit_otp", code)

    def open_upload_page(self):
        self._call("open_upload_page")

    def select_file(self, path):
        self._call("select_file", path)

    def submit_form(self):
        self._call("submit_form")

    def capture(self, label):
        return b"png-" + label.encode("ascii")

    def close(self):
        self.closed = True


class FakeOtpSource:
    def __init__(self, code="123456", error=None):
        self.code = code
        self.error = error
        self.calls = 0
        self.cleared = 0

    def clear(self):
        self.cleared += 1

    def wait_for_code(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.code


class ListEvents:
    def __init__(self):
        self.events = []

    def write(self, run_id, status, details):
        self.events.append((run_id, status, dict(details)))
        return len(self.events)


class ListEvidence:
    def __init__(self):
        self.items = []

    def store_evidence(self, data, label, run_id):
        self.items.append((label, data))
        return f"/evidence/{run_id}/{label}"


def _reachable():
    return ConnectivityResult(reachable=True, classified_blocked=False, latency_ms=50, status_code=200)


class WorkflowDriverTest(unittest.TestCase):
    def _driver(self, config=None, *, conn=None, adapters=None, portal=None, otp=None, payload=None, proxy=None):
        from courier.workflow import WorkflowDriver

        self.config = config or _config()
        self.portal = portal or FakePortal()
        self.otp = otp or FakeOtpSource()
        self.events = ListEvents()
        self.evidence = ListEvidence()
        self.portal_requests = []
        self.probe_calls = []
        self.adapters = adapters or {
            "primary_driver": FakeAdapter("primary_driver", "success"),
            "secondary_driver": FakeAdapter("secondary_driver", "success"),
            "raw_http": FakeAdapter("raw_http", "success", drives=False),
        }

        def _prober(url, timeout_ms):
            self.probe_calls.append((url, timeout_ms))
            return conn or _reachable()

        def _factory(kind, profile):
            self.portal_requests.append((kind, profile))
            return self.portal

        return WorkflowDriver(
            self.config,
            prober=_prober,
            adapters=self.adapters,
            portal_factory=_factory,
            otp_source=self.otp,
            evidence_store=self.evidence,
            run_events=self.events,
            payload_fetcher=payload or (lambda reference: "/data/recaudo.txt"),
            proxy_config=proxy,
        )

    def _statuses(self):
        return [status for _, status, _ in self.events.events]

    def test_happy_path_completes_every_step(self):
        run = self._driver().run(CREDENTIALS, "/data/recaudo.txt")

        self.assertEqual("Completed", run.status)
        self.assertEqual(
            ["ConnectivityChecked", "SessionBuilt", "LoggedIn", "OTPVerified", "FileSelected", "FormSubmitted"],
            run.steps_completed,
        )
        self.assertEqual("primary_driver", run.engine_kind)
        self.assertEqual(
            ["Started", "ConnectivityChecked", "SessionBuilt", "LoggedIn", "OTPVerified", "FileSelected",
             "FormSubmitted", "Completed"],
            self._statuses(),
        )
        self.assertEqual(["open_login", "login", "submit_otp", "open_upload_page", "select_file", "submit_form"],
                         self.portal.calls)
        self.assertTrue(self.portal.closed)
        self.assertEqual(1, len(self.probe_calls))
        self.assertEqual(0, self.adapters["secondary_driver"].calls)
        self.assertIn("engine-primary_driver", [label for label, _ in self.evidence.items])
        self.assertIn("form-submitted", [label for label, _ in self.evidence.items])
        otp_event = [details for _, status, details in self.events.events if status == "OTPVerified"][0]
        self.assertEqual("12****", otp_event["otp"])

    def test_rejected_otp_fails_after_logged_in_without_retry(self):
        portal = FakePortal(fail_on={"submit_otp": OTPInvalid("Código inválido o expirado")})
        run = self._driver(portal=portal).run(CREDENTIALS, "/data/recaudo.txt")

        self.assertEqual("Failed", run.status)
        self.assertEqual("LoggedIn", run.last_step)
        self.assertEqual("OTPInvalid", run.error_kind)
        self.assertEqual(1, self.otp.calls)
        self.assertEqual(1, portal.calls.count("submit_otp"))
        self.assertNotIn("FileSelected", run.steps_completed)
        self.assertNotIn("FormSubmitted", run.steps_completed)
        self.assertEqual("Failed", self._statuses()[-1])
        self.assertIn("error-state", [label for label, _ in self.evidence.items])
        self.assertTrue(portal.closed)

    def test_malformed_otp_is_invalid_without_submitting(self):
        portal = FakePortal()
        run = self._driver(portal=portal, otp=FakeOtpSource(code="12ab")).run(CREDENTIALS, "/data/recaudo.txt")

        self.assertEqual("OTPInvalid", run.error_kind)
        self.assertNotIn("submit_otp", portal.calls)

    def test_otp_timeout_fails_run(self):
        run = self._driver(otp=FakeOtpSource(error=OTPTimeout("no code"))).run(CREDENTIALS, "/data/recaudo.txt")

        self.assertEqual("OTPTimeout", run.error_kind)
        self.assertEqual("LoggedIn", run.last_step)

    def test_form_is_never_submitted_without_otp_verification(self):
        for failure in (OTPInvalid("bad"), OTPTimeout("late"), CredentialRejected("no")):
            portal = FakePortal(fail_on={"submit_otp": failure, "login": failure}
                                if isinstance(failure, CredentialRejected) else {"submit_otp": failure})
            run = self._driver(portal=portal).run(CREDENTIALS, "/data/recaudo.txt")
            self.assertNotIn("submit_form", portal.calls)
            self.assertNotIn("OTPVerified", run.steps_completed)

    def test_portal_without_otp_prompt_still_records_verification(self):
        portal = FakePortal(otp_required=False)
        run = self._driver(portal=portal).run(CREDENTIALS, "/data/recaudo.txt")

        self.assertEqual("Completed", run.status)
        self.assertEqual(0, self.otp.calls)

    def test_credential_rejection_stops_after_session_built(self):
        portal = FakePortal(fail_on={"login": CredentialRejected("Credenciales incorrectas")})
        run = self._driver(portal=portal).run(CREDENTIALS, "/data/recaudo.txt")

        self.assertEqual("CredentialRejected", run.error_kind)
        self.assertEqual("SessionBuilt", run.last_step)
        self.assertEqual(0, self.otp.calls)

    def test_missing_upload_fails_before_any_browser_work(self):
        def _missing(reference):
            raise UploadTargetMissing(f"upload file not found: {reference}")

        run = self._driver(payload=_missing).run(CREDENTIALS, "/nope.txt")

        self.assertEqual("UploadTargetMissing", run.error_kind)
        self.assertEqual([], run.steps_completed)
        self.assertEqual([], self.probe_calls)
        self.assertEqual(0, self.adapters["primary_driver"].calls)
        self.assertEqual([], self.portal_requests)

    def test_dns_failure_fails_fast_by_default(self):
        conn = ConnectivityResult(reachable=False, classified_blocked=False, latency_ms=3, error_kind="dns",
                                  error_message="Name or service not known")
        proxy = ProxyConfig(host="proxy.example", port=7777)
        run = self._driver(conn=conn, proxy=proxy).run(CREDENTIALS, "/data/recaudo.txt")

        self.assertEqual("NetworkUnreachable", run.error_kind)
        self.assertEqual("ConnectivityChecked", run.last_step)
        self.assertEqual(0, self.adapters["primary_driver"].calls)

    def test_dns_failure_can_route_through_proxy(self):
        conn = ConnectivityResult(reachable=False, classified_blocked=False, latency_ms=3, error_kind="dns")
        proxy = ProxyConfig(host="proxy.example", port=7777)
        run = self._driver(_config(proxy_on_dns_failure=True), conn=conn, proxy=proxy).run(
            CREDENTIALS, "/data/recaudo.txt")

        self.assertEqual("Completed", run.status)
        self.assertTrue(self.portal_requests[0][1].route_via_proxy)

    def test_timeout_routes_through_proxy(self):
        conn = ConnectivityResult(reachable=False, classified_blocked=False, latency_ms=15000, error_kind="timeout")
        proxy = ProxyConfig(host="proxy.example", port=7777, region="co")
        self._driver(conn=conn, proxy=proxy).run(CREDENTIALS, "/data/recaudo.txt")

        profile = self.portal_requests[0][1]
        self.assertTrue(profile.route_via_proxy)
        self.assertEqual("proxy.example", profile.proxy_endpoint.host)

    def test_falls_back_to_second_engine(self):
        adapters = {
            "primary_driver": FakeAdapter("primary_driver", "failure"),
            "secondary_driver": FakeAdapter("secondary_driver", "success"),
            "raw_http": FakeAdapter("raw_http", "success", drives=False),
        }
        run = self._driver(adapters=adapters).run(CREDENTIALS, "/data/recaudo.txt")

        self.assertEqual("secondary_driver", run.engine_kind)
        self.assertEqual("secondary_driver", self.portal_requests[0][0])
        self.assertEqual(0, adapters["raw_http"].calls)

    def test_all_engines_failing_is_engine_failure(self):
        adapters = {kind: FakeAdapter(kind, "failure") for kind in ("primary_driver", "secondary_driver", "raw_http")}
        run = self._driver(adapters=adapters).run(CREDENTIALS, "/data/recaudo.txt")

        self.assertEqual("EngineFailure", run.error_kind)
        self.assertEqual("ConnectivityChecked", run.last_step)
        self.assertIn("all engines failed", run.error_message)
        self.assertEqual([], self.portal_requests)

    def test_non_interactive_engine_cannot_finish_workflow(self):
        adapters = {
            "primary_driver": FakeAdapter("primary_driver", "failure"),
            "secondary_driver": FakeAdapter("secondary_driver", "failure"),
            "raw_http": FakeAdapter("raw_http", "success", drives=False),
        }
        run = self._driver(adapters=adapters).run(CREDENTIALS, "/data/recaudo.txt")

        self.assertEqual("EngineFailure", run.error_kind)
        self.assertIn("cannot drive an interactive session", run.error_message)

    def test_ambiguous_driver_engine_is_preferred_over_higher_scoring_raw_http(self):
        adapters = {
            "primary_driver": FakeAdapter("primary_driver", "ambiguous", score=0.6),
            "secondary_driver": FakeAdapter("secondary_driver", "failure"),
            "raw_http": FakeAdapter("raw_http", "ambiguous", drives=False, score=0.9),
        }
        run = self._driver(adapters=adapters).run(CREDENTIALS, "/data/recaudo.txt")

        self.assertEqual("Completed", run.status)
        self.assertEqual("primary_driver", run.engine_kind)
        self.assertEqual("primary_driver", self.portal_requests[0][0])
        built = [details for _, status, details in self.events.events if status == "SessionBuilt"][0]
        self.assertFalse(built["authoritative"])

    def test_unexpected_error_is_recorded(self):
        portal = FakePortal(fail_on={"submit_form": ValueError("element detached")})
        run = self._driver(portal=portal).run(CREDENTIALS, "/data/recaudo.txt")

        self.assertEqual("Failed", run.status)
        self.assertEqual("Unexpected", run.error_kind)
        self.assertEqual("FileSelected", run.last_step)
        self.assertTrue(portal.closed)


class RunWorkflowTest(unittest.TestCase):
    def test_run_workflow_uses_defaults_for_missing_collaborators(self):
        from courier.db.SqliteDbAdapter import Database
        from courier.runlog import list_run_events
        from courier.secrets import EnvironmentSecrets
        from courier.workflow import run_workflow

        with tempfile.TemporaryDirectory() as tmpdir:
            upload = os.path.join(tmpdir, "recaudo.txt")
            with open(upload, "w", encoding="utf-8") as handle:
                handle.write("row\n")
            config = _config(upload_reference=upload, run_log_path=os.path.join(tmpdir, "runs.sqlite"),
                             evidence_dir=os.path.join(tmpdir, "evidence"))
            portal = FakePortal()

            run = run_workflow(config, {
                "secrets": EnvironmentSecrets({"COURIER_SITE_USERNAME": "operator", "COURIER_SITE_PASSWORD": "pw"}),
                "prober": lambda url, timeout_ms: _reachable(),
                "adapters": {"primary_driver": FakeAdapter("primary_driver", "success")},
                "portal_factory": lambda kind, profile: portal,
                "otp_source": FakeOtpSource(),
            })

            self.assertEqual("Completed", run.status)
            self.assertTrue(all(os.path.isfile(path) for path in run.evidence))
            database = Database(config.run_log_path)
            try:
                statuses = [item["status"] for item in list_run_events(database, run.id)]
            finally:
                database.dispose()
            self.assertEqual("Started", statuses[0])
            self.assertEqual("Completed", statuses[-1])


if __name__ == "__main__":
    unittest.main()
