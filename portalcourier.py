#!/usr/bin/env python
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
import json
import os
import sys

from dotenv import load_dotenv

from courier.ApplicationInfo import getConsoleLogo
from courier.config import CourierConfigManager, build_workflow_config, config_overrides_from_env, \
    normalize_engine_order
from courier.db.SqliteDbAdapter import DatabaseIntegrityError
from courier.diagnostics import DEFAULT_DIAGNOSTIC_URLS, run_network_diagnostics
from courier.errors import ConfigurationError
from courier.httputil.probe import probe
from courier.logging.courierLog import getAppLogger, getStartupLogger, setVerbose
from courier.models import RUN_COMPLETED
from courier.paths import ensure_courier_home
from courier.profile import select_profile
from courier.secrets import EnvironmentSecrets
from courier.workflow import run_workflow

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

startupLog = getStartupLogger()
appLog = getAppLogger()


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(description="Upload a file through the payment portal")
    parser.add_argument("--config", type=str, help="Path to courier.json (default: $COURIER_HOME/courier.json)")
    parser.add_argument("--upload", type=str, help="File path, file:// or http(s):// URL of the file to upload")
    parser.add_argument("--engine-order", type=str,
                        help="Comma separated engines, e.g. primary_driver,raw_http")
    parser.add_argument("--otp-mode", choices=("auto", "console", "handoff"), help="Where to read the OTP from")
    parser.add_argument("--probe-only", action="store_true",
                        help="Probe the portal and print the routing decision without logging in")
    parser.add_argument("--diagnose", action="store_true", help="Run DNS/HTTPS network diagnostics and exit")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def load_config(args, environ):
    manager = CourierConfigManager(args.config) if args.config else CourierConfigManager()
    overrides = config_overrides_from_env(environ)
    if args.upload:
        overrides["upload_reference"] = args.upload
    if args.engine_order:
        overrides["engine_order"] = normalize_engine_order(args.engine_order)
    if args.otp_mode:
        overrides["otp_mode"] = args.otp_mode
    raw = manager.merge_preferences(overrides) if overrides else manager.load()
    return build_workflow_config(raw, environ)


def print_json(payload):
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def main(argv=None, environ=None):
    args = build_parser().parse_args(argv)
    setVerbose(args.verbose)
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    try:
        ensure_courier_home(environ)
        config = load_config(args, environ)
    except ConfigurationError as exc:
        startupLog.error(f"Configuration error: {exc}")
        return EXIT_CONFIG

    if args.diagnose:
        urls = [config.target_url] + list(DEFAULT_DIAGNOSTIC_URLS)
        report = run_network_diagnostics(
            urls,
            timeout_s=config.probe_timeout_ms / 1000.0,
            proxy_host=config.proxy.host if config.proxy.enabled else "",
            proxy_port=config.proxy.port if config.proxy.enabled else None,
        )
        print_json(report)
        return EXIT_OK if report["summary"]["healthy"] else EXIT_FAILED

    secrets = EnvironmentSecrets(environ)
    try:
        proxy_config = config.proxy_config(secrets.fetch_secret)
    except ConfigurationError as exc:
        startupLog.error(f"Configuration error: {exc}")
        return EXIT_CONFIG

    if args.probe_only:
        result = probe(config.target_url, config.probe_timeout_ms, expected_marker=config.expected_marker)
        profile = select_profile(result, proxy_config, default_region=config.default_region)
        print_json({"connectivity": result.to_dict(), "profile": profile.to_dict()})
        return EXIT_OK if result.reachable else EXIT_FAILED

    try:
        run = run_workflow(config, {"secrets": secrets, "proxy_config": proxy_config})
    except ConfigurationError as exc:
        startupLog.error(f"Configuration error: {exc}")
        return EXIT_CONFIG
    except (DatabaseIntegrityError, OSError) as exc:
        startupLog.error(f"Could not open run log {config.run_log_path}: {exc}")
        return EXIT_CONFIG

    appLog.info(f"Run {run.id} finished with status {run.status} after {run.last_step}")
    print_json(run.summary())
    return EXIT_OK if run.status == RUN_COMPLETED else EXIT_FAILED


if __name__ == "__main__":
    from colorama import init
    from termcolor import cprint
    init(strip=not sys.stderr.isatty())
    cprint(getConsoleLogo(), "cyan", file=sys.stderr)

    sys.exit(main())
