from typing import Dict, Optional

from courier.engines.base import EngineAdapter, EvidenceScorer
from courier.engines.playwright_driver import PlaywrightAdapter
from courier.engines.raw_http import RawHttpAdapter
from courier.engines.selenium_driver import SeleniumAdapter
from courier.engines.subprocess_browser import SubprocessBrowserAdapter
from courier.models import (
    ENGINE_PRIMARY_DRIVER,
    ENGINE_RAW_HTTP,
    ENGINE_SECONDARY_DRIVER,
    ENGINE_SUBPROCESS_BROWSER,
)

# Default priority order, most capable first.
ENGINE_KINDS = (
    ENGINE_PRIMARY_DRIVER,
    ENGINE_SECONDARY_DRIVER,
    ENGINE_SUBPROCESS_BROWSER,
    ENGINE_RAW_HTTP,
)


def build_default_adapters(scorer: Optional[EvidenceScorer] = None, work_dir: str = "") -> Dict[str, EngineAdapter]:
    adapters = [
        PlaywrightAdapter(scorer),
        SeleniumAdapter(scorer),
        SubprocessBrowserAdapter(scorer, work_dir=work_dir),
        RawHttpAdapter(scorer),
    ]
    return {adapter.kind: adapter for adapter in adapters}
