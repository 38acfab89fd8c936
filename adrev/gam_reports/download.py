"""Download and decode the gzipped CSV export of a finished report job."""

from __future__ import annotations

import csv
import gzip
import io
from typing import Dict, Iterator, List, Optional, Sequence, TypeVar

import requests

from adrev.common.logging import StructuredLogger, setup_integrations_logger

from .errors import TransportError

RawRecord = Dict[str, str]

GZIP_MAGIC = b"\x1f\x8b"

T = TypeVar("T")


def decompress_payload(payload: bytes) -> bytes:
    """Gunzip ``payload``; bytes without the gzip magic are returned unchanged."""
    if payload[:2] == GZIP_MAGIC:
        return gzip.decompress(payload)
    return payload


def parse_csv_records(text: str) -> List[RawRecord]:
    """
    Parse CSV text using the header row as keys.

    Cells and headers are stripped; blank lines are skipped; short rows are
    padded with empty strings and surplus cells are dropped.
    """
    reader = csv.reader(io.StringIO(text))
    header: Optional[List[str]] = None
    records: List[RawRecord] = []
    for row in reader:
        if not row or all(not cell.strip() for cell in row):
            continue
        if header is None:
            header = [cell.strip() for cell in row]
            continue
        cells = [cell.strip() for cell in row[: len(header)]]
        cells.extend([""] * (len(header) - len(cells)))
        records.append(dict(zip(header, cells)))
    return records


def iter_chunks(items: Sequence[T], size: int) -> Iterator[List[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class ReportDownloader:
    def __init__(
        self,
        *,
        timeout: float = 120,
        session: Optional[requests.Session] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger or setup_integrations_logger("gam_reports")

    def fetch(self, download_url: str) -> List[RawRecord]:
        """Download the whole export and return its rows; an empty export yields ``[]``."""
        try:
            response = self.session.get(download_url, timeout=self.timeout)
        except requests.RequestException as err:
            raise TransportError(
                f"Network error while downloading report: {err}",
                details={"error": err.__class__.__name__},
            ) from err
        if response.status_code >= 400:
            raise TransportError(
                f"HTTP {response.status_code} while downloading report",
                status=response.status_code,
                details={"body_preview": (response.text or "")[:500]},
            )

        try:
            raw = decompress_payload(response.content or b"")
        except (OSError, EOFError) as exc:
            raise TransportError(f"Corrupt report payload: {exc}") from exc

        records = parse_csv_records(raw.decode("utf-8-sig", errors="replace"))
        self.logger.info(
            "Parsed report export",
            metrics={"bytes": len(response.content or b""), "records": len(records)},
        )
        return records
