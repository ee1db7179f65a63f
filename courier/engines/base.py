import contextlib
import os
import re
import signal
import subprocess
import time
from dataclasses import dataclass, field
from typing import Optional, Tuple

from courier.models import (
    EngineAttempt,
    OUTCOME_AMBIGUOUS,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    SessionProfile,
)

DEFAULT_MIN_SCREENSHOT_BYTES = 50000
# Raw markup is larger than a screenshot of the same page and counts for less.
TEXT_EVIDENCE_WEIGHT = 0.5


@dataclass(frozen=True)
class EngineTask:
    url: str
    label: str = "target-page"
    output_dir: str = ""
    expected_marker: str = ""


@dataclass
class Evidence:
    data: bytes = field(default=b"", repr=False)
    content_type: str = "image/png"
    page_text: str = field(default="", repr=False)

    @property
    def size(self) -> int:
        return len(self.data or b"")


class EvidenceScorer:
    def score(self, evidence: Optional[Evidence], task: EngineTask) -> Tuple[str, float]:
        raise NotImplementedError


class SizeAndMarkerScorer(EvidenceScorer):
    """Marker in the page text wins outright; otherwise judge by evidence size.

    Scores are the evidence size as a fraction of ``min_bytes`` (capped at 1.0),
    halved for text evidence, so screenshots and raw HTML rank on one scale.
    """

    def __init__(self, min_bytes: int = DEFAULT_MIN_SCREENSHOT_BYTES):
        self.min_bytes = max(1, int(min_bytes))

    def scaled(self, evidence: Evidence) -> float:
        ratio = min(float(evidence.size) / self.min_bytes, 1.0)
        if evidence.content_type.startswith("text/"):
            ratio *= TEXT_EVIDENCE_WEIGHT
        return ratio

    def score(self, evidence: Optional[Evidence], task: EngineTask) -> Tuple[str, float]:
        if evidence is None or (evidence.size == 0 and not evidence.page_text):
            return OUTCOME_FAILURE, 0.0
        marker = str(task.expected_marker or "")
        score = self.scaled(evidence)
        if marker and evidence.page_text:
            if marker in evidence.page_text:
                return OUTCOME_SUCCESS, score
            return OUTCOME_AMBIGUOUS, score
        if evidence.content_type.startswith("text/"):
            # Raw HTML without a marker to look for says little about the page.
            return (OUTCOME_SUCCESS if not marker else OUTCOME_AMBIGUOUS), score
        if evidence.size >= self.min_bytes:
            return OUTCOME_SUCCESS, score
        if evidence.size > 0:
            return OUTCOME_AMBIGUOUS, score
        return OUTCOME_FAILURE, 0.0


class EngineAdapter:
    kind = ""

    def __init__(self, scorer: Optional[EvidenceScorer] = None):
        self.scorer = scorer or SizeAndMarkerScorer()

    def attempt(self, profile: SessionProfile, task: EngineTask, timeout_ms: int) -> EngineAttempt:
        raise NotImplementedError

    def can_drive_session(self) -> bool:
        return False

    def failed(self, message: str, started: float, detail: str = "") -> EngineAttempt:
        return EngineAttempt(
            engine_kind=self.kind,
            outcome=OUTCOME_FAILURE,
            error_message=summarize_process_text("", message),
            elapsed_ms=_elapsed_ms(started),
            detail=detail,
        )

    def judged(self, evidence: Optional[Evidence], task: EngineTask, started: float, detail: str = "") -> EngineAttempt:
        outcome, score = self.scorer.score(evidence, task)
        error = ""
        if outcome == OUTCOME_AMBIGUOUS:
            error = "evidence below confidence threshold"
        elif outcome == OUTCOME_FAILURE:
            error = "no usable evidence produced"
        return EngineAttempt(
            engine_kind=self.kind,
            outcome=outcome,
            evidence_size_bytes=evidence.size if evidence is not None else None,
            error_message=error,
            score=float(score),
            elapsed_ms=_elapsed_ms(started),
            detail=detail,
            content_type=evidence.content_type if evidence is not None else "",
            evidence=evidence.data if evidence is not None else None,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def attempt_deadline(started: float, timeout_ms: int) -> float:
    return started + max(1.0, int(timeout_ms) / 1000.0)


def remaining_seconds(deadline: float) -> float:
    """Time left before ``deadline``; raises ``TimeoutError`` once it has passed."""
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise TimeoutError("time budget exhausted")
    return remaining


def remaining_ms(deadline: float) -> int:
    return max(1, int(remaining_seconds(deadline) * 1000))


def summarize_process_text(stdout: str, stderr: str, max_len: int = 280) -> str:
    text = str(stderr or "").strip() or str(stdout or "").strip()
    # Strip ANSI control sequences from tool output.
    text = re.sub(r"\x1b\[[0-9;]*[A-Za-z]", "", text)
    text = " ".join(text.split())
    if len(text) > max_len:
        return text[: max_len - 3] + "..."
    return text


def terminate_process_tree(proc: Optional[subprocess.Popen], *, force: bool = False):
    if proc is None:
        return
    try:
        if proc.poll() is not None:
            return
    except Exception:
        return

    used_group_signal = False
    if os.name != "nt" and hasattr(os, "killpg"):
        try:
            pgid = os.getpgid(int(proc.pid))
            if pgid > 0:
                os.killpg(pgid, signal.SIGKILL if force else signal.SIGTERM)
                used_group_signal = True
        except (OSError, ProcessLookupError):
            used_group_signal = False

    if not used_group_signal:
        try:
            if force:
                proc.kill()
            else:
                proc.terminate()
        except OSError:
            pass


@contextlib.contextmanager
def scoped_process(command, *, grace_seconds: float = 2.0, **popen_kwargs):
    """Spawn ``command`` in its own session and reap the whole group on exit."""
    popen_kwargs.setdefault("stdout", subprocess.PIPE)
    popen_kwargs.setdefault("stderr", subprocess.PIPE)
    popen_kwargs.setdefault("text", True)
    popen_kwargs.setdefault("start_new_session", os.name != "nt")
    proc = subprocess.Popen(command, **popen_kwargs)
    try:
        yield proc
    finally:
        if proc.poll() is None:
            terminate_process_tree(proc, force=False)
            try:
                proc.wait(timeout=grace_seconds)
            except subprocess.TimeoutExpired:
                terminate_process_tree(proc, force=True)
                try:
                    proc.wait(timeout=grace_seconds)
                except subprocess.TimeoutExpired:
                    pass
