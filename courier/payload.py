import logging
import os
from urllib.parse import unquote, urlparse

import requests

from courier.errors import UploadTargetMissing
from courier.retry import retry_with_backoff
from courier.timing import file_stamp

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 60


def _require_file(path: str) -> str:
    if not path or not os.path.isfile(path):
        raise UploadTargetMissing(f"upload file not found: {path or '<empty>'}")
    if not os.access(path, os.R_OK):
        raise UploadTargetMissing(f"upload file is not readable: {path}")
    if os.path.getsize(path) <= 0:
        raise UploadTargetMissing(f"upload file is empty: {path}")
    return os.path.abspath(path)


def _download(url: str, work_dir: str, session=None) -> str:
    client = session or requests
    parsed = urlparse(url)
    name = os.path.basename(unquote(parsed.path)) or "payload.bin"
    os.makedirs(work_dir, exist_ok=True)
    destination = os.path.join(work_dir, f"{file_stamp()}-{name}")

    def _fetch():
        response = client.get(url, timeout=DOWNLOAD_TIMEOUT_SECONDS, stream=True)
        response.raise_for_status()
        with open(destination, "wb") as handle:
            for chunk in response.iter_content(chunk_size=65536):
                if chunk:
                    handle.write(chunk)
        return destination

    try:
        retry_with_backoff(_fetch, max_retries=3, base_delay=1.0, retry_on=(requests.RequestException,))
    except requests.RequestException as exc:
        raise UploadTargetMissing(f"unable to download upload payload from {url}: {exc}") from exc
    logger.info("Downloaded upload payload %s to %s", url, destination)
    return destination


def fetch_upload_payload(reference: str, work_dir: str, session=None) -> str:
    """Resolve ``reference`` (path, file:// or http(s):// URL) to a readable local file."""
    ref = str(reference or "").strip()
    if not ref:
        raise UploadTargetMissing("no upload reference configured")

    parsed = urlparse(ref)
    scheme = parsed.scheme.lower()
    if scheme in ("http", "https"):
        return _require_file(_download(ref, work_dir, session=session))
    if scheme == "file":
        return _require_file(unquote(parsed.path))
    return _require_file(os.path.expanduser(ref))
