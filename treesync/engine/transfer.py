from __future__ import annotations

import logging
import time
from enum import Enum
from typing import BinaryIO, Callable, Optional, TypeVar

from pydantic import BaseModel

from .errors import (
    IncorrectOffsetError,
    IntegrityError,
    MappingMissingError,
    RateLimitedError,
    RemoteNotFoundError,
    TransientError,
)
from .fingerprint import fingerprint_bytes, fingerprint_file, fingerprint_stream
from .interfaces import LocalStore, RemoteClient
from .models import RemoteEntry

logger = logging.getLogger("treesync.transfer")

T = TypeVar("T")

MIB = 1024 * 1024


class SessionState(str, Enum):
    IDLE = "idle"
    SESSION_STARTED = "session_started"
    APPENDING = "appending"
    FINISHED = "finished"
    ABORTED = "aborted"


class UploadSession:
    """Client-side view of one resumable upload session.

    `offset` only moves forward when the server acknowledges bytes, or when
    the server reports a different acknowledged offset.
    """

    def __init__(self, total_size: int):
        self.total_size = total_size
        self.state = SessionState.IDLE
        self.session_id: Optional[str] = None
        self.offset = 0

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            raise RuntimeError(f"upload_session_bad_state: {self.state.value}")

    def started(self, session_id: str, acknowledged: int) -> None:
        self._require(SessionState.IDLE)
        self.session_id = session_id
        self.offset = acknowledged
        self.state = SessionState.SESSION_STARTED

    def advance(self, acknowledged: int) -> None:
        self._require(SessionState.SESSION_STARTED, SessionState.APPENDING)
        self.offset += acknowledged
        self.state = SessionState.APPENDING

    def resync(self, server_offset: int) -> None:
        self._require(SessionState.SESSION_STARTED, SessionState.APPENDING)
        self.offset = server_offset

    def finished(self) -> None:
        self._require(SessionState.SESSION_STARTED, SessionState.APPENDING)
        self.state = SessionState.FINISHED

    def abort(self) -> None:
        if self.state != SessionState.FINISHED:
            self.state = SessionState.ABORTED

    @property
    def remaining(self) -> int:
        return max(self.total_size - self.offset, 0)


class UploadResult(BaseModel):
    entry: RemoteEntry
    fingerprint: str
    size: int
    chunked: bool = False


class DownloadResult(BaseModel):
    local_id: str
    entry: RemoteEntry
    fingerprint: str


class TransferEngine:
    def __init__(
        self,
        remote: RemoteClient,
        local: LocalStore,
        inline_threshold: int = 8 * MIB,
        chunk_size: int = 4 * MIB,
        max_attempts: int = 3,
        backoff_sec: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.remote = remote
        self.local = local
        self.inline_threshold = inline_threshold
        self.chunk_size = chunk_size
        self.max_attempts = max(1, max_attempts)
        self.backoff_sec = backoff_sec
        self._sleep = sleep

    def _backoff(self, attempt: int, error: Exception) -> None:
        if attempt >= self.max_attempts - 1:
            return
        if isinstance(error, RateLimitedError):
            delay = error.retry_after
        else:
            delay = self.backoff_sec * (2 ** attempt)
        if delay > 0:
            self._sleep(delay)

    def _retry(self, step: str, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except TransientError as e:
                logger.warning("transfer_step_retry step=%s attempt=%s error=%s", step, attempt + 1, e)
                if attempt >= self.max_attempts - 1:
                    raise
                self._backoff(attempt, e)
            attempt += 1

    # -- upload ------------------------------------------------------------

    def upload_file(self, file_id: str, remote_path: str) -> UploadResult:
        entry = self.local.get_entry(file_id)
        if entry is None or entry.is_folder:
            raise MappingMissingError(f"local_file_missing: {file_id}")

        with self.local.open_file(file_id) as f:
            if entry.size <= self.inline_threshold:
                data = f.read()
                fingerprint = fingerprint_bytes(data)
                result = self._retry("upload", lambda: self.remote.upload(remote_path, data))
                size = len(data)
                chunked = False
            else:
                fingerprint = fingerprint_stream(f)
                size = f.tell()
                result = self._upload_session(f, size, remote_path)
                chunked = True

        if result.content_hash and result.content_hash != fingerprint:
            raise IntegrityError(
                f"upload_fingerprint_mismatch: path={remote_path} local={fingerprint} remote={result.content_hash}"
            )
        logger.info("upload_completed path=%s size=%s chunked=%s", remote_path, size, chunked)
        return UploadResult(entry=result, fingerprint=fingerprint, size=size, chunked=chunked)

    def _read_at(self, f: BinaryIO, offset: int, total_size: int) -> bytes:
        f.seek(offset)
        return f.read(min(self.chunk_size, total_size - offset))

    def _upload_session(self, f: BinaryIO, total_size: int, remote_path: str) -> RemoteEntry:
        session = UploadSession(total_size)
        try:
            first = self._read_at(f, 0, total_size)
            session_id = self._retry("start_session", lambda: self.remote.start_session(first))
            session.started(session_id, len(first))
            while session.remaining:
                self._append_chunk(f, session)
            result = self._retry(
                "finish",
                lambda: self.remote.finish(session.session_id, session.offset, remote_path),
            )
            session.finished()
            return result
        except Exception:
            session.abort()
            logger.warning(
                "upload_session_aborted path=%s offset=%s total=%s",
                remote_path, session.offset, total_size,
            )
            raise

    def _append_chunk(self, f: BinaryIO, session: UploadSession) -> None:
        for attempt in range(self.max_attempts):
            if not session.remaining:
                return
            offset = session.offset
            data = self._read_at(f, offset, session.total_size)
            if not data:
                raise IntegrityError(f"local_file_shrank: offset={offset} expected={session.total_size}")
            last_attempt = attempt >= self.max_attempts - 1
            try:
                self.remote.append(session.session_id, data, offset)
                session.advance(len(data))
                return
            except IncorrectOffsetError as e:
                logger.warning("upload_offset_resync local=%s server=%s", offset, e.correct_offset)
                session.resync(e.correct_offset)
                if last_attempt and session.remaining:
                    raise
            except TransientError as e:
                logger.warning("transfer_step_retry step=append offset=%s attempt=%s error=%s", offset, attempt + 1, e)
                if last_attempt:
                    raise
                self._backoff(attempt, e)

    # -- download ----------------------------------------------------------

    def download_file(self, remote_path: str, parent_id: str, name: str) -> DownloadResult:
        """Fetch `remote_path` into a staging file, verify it and install it
        as `name` under local folder `parent_id`."""
        meta = self._retry("get_metadata", lambda: self.remote.get_metadata(remote_path))
        if meta is None or meta.tag != "file":
            raise RemoteNotFoundError(f"remote_file_missing: {remote_path}")

        staged = self.local.staging_path(parent_id, name)
        try:
            if meta.size <= self.inline_threshold:
                self._retry("download", lambda: self.remote.download_file(remote_path, staged))
            else:
                self._download_ranges(remote_path, meta.size, staged)

            actual_size = staged.stat().st_size
            if actual_size != meta.size:
                raise IntegrityError(f"download_size_mismatch: path={remote_path} expected={meta.size} got={actual_size}")
            fingerprint = fingerprint_file(staged)
            if meta.content_hash and fingerprint != meta.content_hash:
                raise IntegrityError(
                    f"download_fingerprint_mismatch: path={remote_path} expected={meta.content_hash} got={fingerprint}"
                )
            local_id = self.local.install_file(staged, parent_id, name)
        except BaseException:
            staged.unlink(missing_ok=True)
            raise

        logger.info("download_completed path=%s size=%s local_id=%s", remote_path, meta.size, local_id)
        return DownloadResult(local_id=local_id, entry=meta, fingerprint=fingerprint)

    def _download_ranges(self, remote_path: str, total_size: int, staged) -> None:
        with open(staged, "wb") as out:
            offset = 0
            while offset < total_size:
                end = min(offset + self.chunk_size, total_size)
                start = offset
                data = self._retry("download_range", lambda: self.remote.download_range(remote_path, start, end))
                if not data:
                    raise IntegrityError(f"download_range_empty: path={remote_path} offset={offset}")
                try:
                    out.write(data)
                except OSError:
                    out.truncate(offset)
                    raise
                offset += len(data)
