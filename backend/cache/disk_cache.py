"""
File-hash disk cache for rendered job report PDFs.
Report: key = sha256(report_run_id + data_hash) -> PDF bytes.
A reused (idempotent) report run hits this cache instead of re-rendering remotely.
"""
from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path

# Cache directory under backend/cache unless REPORT_CACHE_DIR is set
_CACHE_DIR = Path(__file__).resolve().parent
REPORT_CACHE_DIR = Path(os.environ.get("REPORT_CACHE_DIR") or (_CACHE_DIR / "reports"))


def _ensure_dir(d: Path) -> None:
    d.mkdir(parents=True, exist_ok=True)


def _report_key(report_run_id: str, data_hash: str) -> str:
    return hashlib.sha256(f"{report_run_id}|{data_hash}".encode()).hexdigest()


def get_cached_report(report_run_id: str, data_hash: str, cache_dir: Path | None = None) -> bytes | None:
    """Return cached PDF bytes, or None."""
    path = (cache_dir or REPORT_CACHE_DIR) / f"{_report_key(report_run_id, data_hash)}.pdf"
    if not path.exists():
        return None
    try:
        return path.read_bytes()
    except OSError:
        return None


def set_cached_report(report_run_id: str, data_hash: str, pdf_bytes: bytes, cache_dir: Path | None = None) -> None:
    """Store PDF bytes in cache. Written to a temp file then renamed, so readers never see a partial PDF."""
    d = cache_dir or REPORT_CACHE_DIR
    _ensure_dir(d)
    fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(pdf_bytes)
        os.replace(tmp, d / f"{_report_key(report_run_id, data_hash)}.pdf")
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
