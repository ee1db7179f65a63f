import logging
import os
import re

from courier.retry import retry_with_backoff
from courier.timing import file_stamp

logger = logging.getLogger(__name__)

_LABEL_RE = re.compile(r"[^A-Za-z0-9._-]+")

_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpg"),
    (b"%PDF", "pdf"),
)


def sanitize_label(label: str) -> str:
    cleaned = _LABEL_RE.sub("-", str(label or "").strip()).strip("-.")
    return cleaned[:80] or "evidence"


def guess_extension(data: bytes) -> str:
    head = bytes(data[:16])
    for signature, extension in _SIGNATURES:
        if head.startswith(signature):
            return extension
    stripped = head.lstrip().lower()
    if stripped.startswith(b"<"):
        return "html"
    return "bin"


class LocalEvidenceStore:
    def __init__(self, evidence_dir: str, write_retries: int = 2):
        self.evidence_dir = evidence_dir
        self.write_retries = max(1, int(write_retries))

    def run_dir(self, run_id: str) -> str:
        return os.path.join(self.evidence_dir, sanitize_label(run_id))

    def store_evidence(self, data: bytes, label: str, run_id: str) -> str:
        payload = bytes(data or b"")
        directory = self.run_dir(run_id)
        filename = f"{file_stamp()}-{sanitize_label(label)}.{guess_extension(payload)}"
        path = os.path.join(directory, filename)

        def _write():
            os.makedirs(directory, exist_ok=True)
            with open(path, "wb") as handle:
                handle.write(payload)

        retry_with_backoff(_write, max_retries=self.write_retries, base_delay=0.2, retry_on=(OSError,))
        logger.info("Stored %s bytes of evidence at %s", len(payload), path)
        return path
