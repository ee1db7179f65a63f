import logging
import time
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from courier.engines.base import EngineAdapter, EngineTask, summarize_process_text
from courier.models import (
    ChainResult,
    EngineAttempt,
    OUTCOME_AMBIGUOUS,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    SessionProfile,
)

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_TIMEOUT_MS = 45000


def _safe_attempt(adapter: EngineAdapter, kind: str, profile: SessionProfile, task: EngineTask, timeout_ms: int) -> EngineAttempt:
    started = time.monotonic()
    try:
        attempt = adapter.attempt(profile, task, int(timeout_ms))
    except Exception as exc:
        return EngineAttempt(
            engine_kind=kind,
            outcome=OUTCOME_FAILURE,
            error_message=summarize_process_text("", f"adapter raised: {exc}"),
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
    if not isinstance(attempt, EngineAttempt):
        return EngineAttempt(
            engine_kind=kind,
            outcome=OUTCOME_FAILURE,
            error_message="adapter returned no attempt",
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
    if attempt.outcome not in (OUTCOME_SUCCESS, OUTCOME_FAILURE, OUTCOME_AMBIGUOUS):
        attempt.error_message = attempt.error_message or f"unknown outcome {attempt.outcome!r}"
        attempt.outcome = OUTCOME_FAILURE
    attempt.engine_kind = kind
    return attempt


def summarize_chain_failure(attempts: List[EngineAttempt], max_len: int = 240) -> str:
    fragments: List[str] = []
    for attempt in attempts[-3:]:
        text = f"{attempt.engine_kind}: {attempt.error_message or attempt.outcome}"
        if text not in fragments:
            fragments.append(text)
    raw = " | ".join(fragments)
    if len(raw) > max_len:
        raw = raw[: max_len - 3] + "..."
    return raw


def run_with_fallback(
        profile: SessionProfile,
        task: EngineTask,
        engine_order: Iterable[str],
        adapters: Mapping[str, EngineAdapter],
        *,
        timeouts_ms: Optional[Dict[str, int]] = None,
        default_timeout_ms: int = DEFAULT_ENGINE_TIMEOUT_MS,
        selectable: Optional[Callable[[EngineAttempt], bool]] = None,
) -> ChainResult:
    """Try each engine in ``engine_order`` sequentially, stopping at the first success.

    With no success the highest-scoring ambiguous attempt is selected and the
    result is flagged as non-authoritative; with neither the status is failure.
    When ``selectable`` is given, ambiguous attempts it accepts are preferred.
    """
    timeouts = dict(timeouts_ms or {})
    attempts: List[EngineAttempt] = []

    for kind in engine_order:
        adapter = adapters.get(kind)
        if adapter is None:
            attempts.append(EngineAttempt(
                engine_kind=str(kind),
                outcome=OUTCOME_FAILURE,
                error_message="no adapter registered",
            ))
            continue

        timeout_ms = int(timeouts.get(kind, default_timeout_ms))
        logger.info("Trying engine %s (timeout %sms) on %s", kind, timeout_ms, task.url)
        attempt = _safe_attempt(adapter, kind, profile, task, timeout_ms)
        attempts.append(attempt)
        logger.info(
            "Engine %s finished: %s in %sms%s",
            kind,
            attempt.outcome,
            attempt.elapsed_ms,
            f" ({attempt.error_message})" if attempt.error_message else "",
        )
        if attempt.outcome == OUTCOME_SUCCESS:
            return ChainResult(attempts=attempts, status=OUTCOME_SUCCESS, selected=attempt, authoritative=True)

    ambiguous = [item for item in attempts if item.outcome == OUTCOME_AMBIGUOUS]
    if selectable is not None:
        ambiguous = [item for item in ambiguous if selectable(item)] or ambiguous
    if ambiguous:
        # max() keeps the earliest attempt on ties, which follows the priority order.
        best = max(ambiguous, key=lambda item: float(item.score))
        logger.warning("No engine succeeded; using ambiguous result from %s as a last resort", best.engine_kind)
        return ChainResult(attempts=attempts, status=OUTCOME_AMBIGUOUS, selected=best, authoritative=False)

    return ChainResult(attempts=attempts, status=OUTCOME_FAILURE, selected=None, authoritative=False)
