"""
Audit persistence for the IDVERIFY system.

Completed verifications are written to a durable audit store as flat
``StoredVerification`` rows. The store is append-only and idempotent per
session: saving the same session twice returns the first record's id and
never creates a duplicate row, so writes can be retried safely.

Persistence failures never alter an already decided verification. The
``AuditWriter`` performs writes in the background, retries them with
exponential backoff and only logs a ``PersistenceFailure`` when every
attempt failed.
"""

import json
import math
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

import structlog

from . import config
from .data_models import StoredVerification, VerificationResult
from .exceptions import PersistenceFailure, RecordNotFound
from .utils import generate_record_id, retry, safe_divide, utc_now

# Initialize structured logger
logger = structlog.get_logger(__name__)


@dataclass
class AuditStats:
    """Aggregate counts over every stored verification."""

    total: int
    passed: int
    failed: int
    avg_score: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "avg_score": self.avg_score,
        }


def compute_stats(records: List[StoredVerification]) -> AuditStats:
    total = len(records)
    passed = sum(1 for r in records if r.passed)
    # Halves round up
    avg_score = math.floor(safe_divide(sum(r.similarity_score for r in records), total) + 0.5)
    return AuditStats(total=total, passed=passed, failed=total - passed, avg_score=int(avg_score))


class AuditGateway(ABC):
    """Durable store of completed verifications."""

    @abstractmethod
    def save(
        self,
        result: VerificationResult,
        session_id: str,
        device_info: Optional[str] = None,
    ) -> str:
        """
        Persist a completed verification and return its record id.

        Saving a session that already has a record returns the existing id.

        Raises
        ------
        PersistenceFailure
            If the record cannot be written.
        """

    @abstractmethod
    def get(self, record_id: str) -> StoredVerification:
        """
        Fetch one record.

        Raises
        ------
        RecordNotFound
            If no record has this id.
        """

    @abstractmethod
    def list_recent(self, limit: int = 10) -> List[StoredVerification]:
        """Most recent records first."""

    @abstractmethod
    def stats(self) -> AuditStats:
        """Totals and average similarity score."""


class RecordListAuditGateway(AuditGateway):
    """
    Gateway over an ordered list of records.

    Subclasses provide ``_read_records`` and ``_write_records``; the list is
    kept in insertion order, which breaks ties between equal timestamps.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self.clock = clock
        self._lock = threading.Lock()

    @abstractmethod
    def _read_records(self) -> List[StoredVerification]:
        """Load every record in insertion order."""

    @abstractmethod
    def _write_records(self, records: List[StoredVerification]) -> None:
        """Replace the stored records."""

    def save(
        self,
        result: VerificationResult,
        session_id: str,
        device_info: Optional[str] = None,
    ) -> str:
        if not session_id:
            raise PersistenceFailure("A session id is required to save", operation="save")

        with self._lock:
            records = self._read_records()
            for record in records:
                if record.session_id == session_id:
                    logger.info(
                        "Verification already stored, skipping duplicate",
                        session_id=session_id,
                        record_id=record.id,
                    )
                    return record.id

            record = StoredVerification.from_result(
                record_id=generate_record_id(),
                session_id=session_id,
                result=result,
                device_info=device_info,
                created_at=self.clock(),
            )
            records.append(record)
            self._write_records(records)

        logger.info(
            "Verification stored",
            session_id=session_id,
            record_id=record.id,
            passed=record.passed,
        )
        return record.id

    def get(self, record_id: str) -> StoredVerification:
        with self._lock:
            records = self._read_records()
        for record in records:
            if record.id == record_id:
                return record
        raise RecordNotFound(record_id)

    def list_recent(self, limit: int = 10) -> List[StoredVerification]:
        if limit < 0:
            raise ValueError("limit cannot be negative")
        with self._lock:
            records = self._read_records()

        indexed = sorted(
            enumerate(records), key=lambda item: (item[1].created_at, item[0]), reverse=True
        )
        return [record for _, record in indexed[:limit]]

    def stats(self) -> AuditStats:
        with self._lock:
            records = self._read_records()
        return compute_stats(records)


class InMemoryAuditGateway(RecordListAuditGateway):
    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        super().__init__(clock)
        self._records: List[StoredVerification] = []

    def _read_records(self) -> List[StoredVerification]:
        return list(self._records)

    def _write_records(self, records: List[StoredVerification]) -> None:
        self._records = list(records)


class JsonFileAuditGateway(RecordListAuditGateway):
    """
    Audit store persisted as a JSON array of ``StoredVerification`` rows.

    Parameters
    ----------
    path : Path
        Location of the audit file. Parent directories are created.
    clock : Callable[[], datetime], default=utc_now
        Source of record creation timestamps.
    """

    def __init__(self, path: Path, clock: Callable[[], datetime] = utc_now) -> None:
        super().__init__(clock)
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _read_records(self) -> List[StoredVerification]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                rows = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceFailure(
                f"Failed to read audit store: {str(e)}",
                operation="read",
                context={"path": str(self.path)},
            ) from e
        return [StoredVerification.from_dict(row) for row in rows]

    def _write_records(self, records: List[StoredVerification]) -> None:
        json_str = json.dumps(
            [r.to_dict() for r in records], indent=2, default=str, ensure_ascii=False
        )
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json_str)
            os.replace(tmp_name, self.path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceFailure(
                f"Failed to write audit store: {str(e)}",
                operation="write",
                context={"path": str(self.path)},
            ) from e

        logger.debug("Audit store written", path=str(self.path), records=len(records))


class AuditWriter:
    """
    Background, retrying writer in front of an ``AuditGateway``.

    Parameters
    ----------
    gateway : AuditGateway
        Destination store.
    max_attempts : int, default=config.AUDIT_RETRY_ATTEMPTS
        Attempts per record before giving up.
    delay : float, default=config.AUDIT_RETRY_DELAY
        Initial delay between attempts in seconds.
    backoff : float, default=config.AUDIT_RETRY_BACKOFF
        Delay multiplier after each failed attempt.
    sleep : Callable[[float], None], default=time.sleep
        Wait function between attempts.

    Examples
    --------
    >>> writer = AuditWriter(JsonFileAuditGateway(path))
    >>> writer.submit(result, session.id, device_info="kiosk-7")
    >>> writer.flush()
    """

    def __init__(
        self,
        gateway: AuditGateway,
        max_attempts: int = config.AUDIT_RETRY_ATTEMPTS,
        delay: float = config.AUDIT_RETRY_DELAY,
        backoff: float = config.AUDIT_RETRY_BACKOFF,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self._save = retry(
            max_attempts=max_attempts,
            delay=delay,
            backoff=backoff,
            exceptions=(Exception,),
            sleep=sleep,
        )(gateway.save)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="idverify-audit")
        self._pending: List[Future] = []
        self._lock = threading.Lock()

    def _write(
        self, result: VerificationResult, session_id: str, device_info: Optional[str]
    ) -> Optional[str]:
        try:
            return self._save(result, session_id, device_info)
        except Exception as e:
            failure = (
                e
                if isinstance(e, PersistenceFailure)
                else PersistenceFailure(
                    f"Audit write failed: {str(e)}",
                    operation="save",
                    context={"session_id": session_id},
                )
            )
            # The decision is already final; a lost audit write is only logged
            logger.error(
                "Audit write abandoned after retries",
                session_id=session_id,
                error=failure.to_dict(),
            )
            return None

    def submit(
        self,
        result: VerificationResult,
        session_id: str,
        device_info: Optional[str] = None,
    ) -> Future:
        """Queue a record for writing; the future resolves to its id or ``None``."""
        future = self._executor.submit(
            self._write, result, session_id, device_info or config.DEFAULT_DEVICE_INFO
        )
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
        return future

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until queued writes have finished."""
        with self._lock:
            pending = list(self._pending)
        wait(pending, timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
