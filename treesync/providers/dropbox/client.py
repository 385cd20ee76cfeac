from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional

import requests

from treesync.engine.errors import (
    ConfigurationError,
    IncorrectOffsetError,
    NetworkError,
    RateLimitedError,
    RemoteApiError,
    RemoteConflictError,
    RemoteNotFoundError,
    ServerError,
    UnauthorizedError,
)
from treesync.engine.models import ListFolderResult, RemoteEntry

logger = logging.getLogger("treesync.dropbox")

API_BASE = "https://api.dropboxapi.com/2"
CONTENT_BASE = "https://content.dropboxapi.com/2"
TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"
DEFAULT_RETRY_AFTER_SEC = 10.0
# Refresh this many seconds before the access token actually expires.
TOKEN_EXPIRY_MARGIN_SEC = 300


def api_path(path: str) -> str:
    """Dropbox addresses the account root as "" rather than "/"."""
    norm = "/" + "/".join(p for p in (path or "").split("/") if p)
    return "" if norm == "/" else norm


def parse_entry(payload: dict[str, Any], default_tag: str = "file") -> RemoteEntry:
    tag = payload.get(".tag") or default_tag
    return RemoteEntry(
        tag=tag,
        path_display=payload.get("path_display") or payload.get("path_lower") or "",
        path_lower=payload.get("path_lower") or "",
        name=payload.get("name") or "",
        id=payload.get("id"),
        content_hash=payload.get("content_hash"),
        size=int(payload.get("size") or 0),
        rev=payload.get("rev"),
    )


def _arg_header(arg: dict[str, Any]) -> str:
    # HTTP headers must stay ASCII; json.dumps escapes everything else.
    return json.dumps(arg, ensure_ascii=True).replace("\x7f", "\\u007f")


class DropboxClient:
    def __init__(
        self,
        app_key: str = "",
        app_secret: str = "",
        access_token: str = "",
        refresh_token: str = "",
        token_file: str = "",
        timeout: int = 30,
        max_retries: int = 3,
        api_base: str = API_BASE,
        content_base: str = CONTENT_BASE,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.app_key = app_key or ""
        self.app_secret = app_secret or ""
        self.refresh_token = refresh_token or ""
        self.token_file = token_file or ""
        self.timeout = timeout
        self.max_retries = max_retries
        self.api_base = api_base.rstrip("/")
        self.content_base = content_base.rstrip("/")
        self.http = session or requests.Session()
        self._sleep = sleep
        self._access_token = access_token or ""
        self._expires_at = 0.0

    # -- tokens ------------------------------------------------------------

    def _load_tokens(self) -> dict[str, Any] | None:
        if not self.token_file:
            return None
        p = Path(self.token_file).expanduser()
        if not p.exists():
            return None
        payload = json.loads(p.read_text(encoding="utf-8"))
        if isinstance(payload, dict):
            return payload
        return None

    def _save_tokens(self, data: dict[str, Any]) -> None:
        if not self.token_file:
            return
        p = Path(self.token_file).expanduser()
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    def refresh_access_token(self) -> str:
        tokens = self._load_tokens() or {}
        refresh = self.refresh_token or tokens.get("refresh_token") or ""
        if not refresh or not self.app_key:
            raise UnauthorizedError("refresh_token_missing_or_auth_incomplete")
        try:
            res = self.http.post(
                TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh,
                    "client_id": self.app_key,
                    "client_secret": self.app_secret,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise NetworkError(f"token_refresh_network_error: {e}") from e
        if res.status_code >= 500:
            raise ServerError(f"token_refresh_failed_status_{res.status_code}", res.status_code)
        if res.status_code >= 400:
            raise UnauthorizedError(f"token_refresh_rejected_status_{res.status_code}: {(res.text or '')[:200]}")

        payload = res.json()
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise UnauthorizedError("token_refresh_no_access_token")
        self._access_token = access_token
        self._expires_at = time.time() + int(payload.get("expires_in", 14400))
        self._save_tokens(
            {
                "access_token": access_token,
                "expires_at": self._expires_at,
                "refresh_token": refresh,
            }
        )
        logger.info("access_token_refreshed expires_in=%s", payload.get("expires_in"))
        return access_token

    def _token(self) -> str:
        now = time.time()
        if self._access_token and (not self._expires_at or now < self._expires_at - TOKEN_EXPIRY_MARGIN_SEC):
            return self._access_token

        tokens = self._load_tokens()
        if tokens and tokens.get("access_token"):
            expires_at = float(tokens.get("expires_at") or 0)
            if not expires_at or now < expires_at - TOKEN_EXPIRY_MARGIN_SEC:
                self._access_token = tokens["access_token"]
                self._expires_at = expires_at
                return self._access_token

        if self.refresh_token or (tokens and tokens.get("refresh_token")):
            return self.refresh_access_token()
        if self._access_token:
            return self._access_token
        raise ConfigurationError("no_credentials: set auth.access_token or auth.refresh_token")

    # -- transport ---------------------------------------------------------

    def _error_from_response(self, res: requests.Response) -> Exception:
        try:
            payload = res.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        summary = str(payload.get("error_summary") or (res.text or "")[:200])
        error = payload.get("error") if isinstance(payload.get("error"), dict) else {}

        if "incorrect_offset" in summary:
            detail = error.get("lookup_failed") if isinstance(error.get("lookup_failed"), dict) else error
            return IncorrectOffsetError(summary, int(detail.get("correct_offset") or 0))
        if "not_found" in summary:
            return RemoteNotFoundError(summary)
        if "conflict" in summary:
            return RemoteConflictError(summary, res.status_code, summary)
        return RemoteApiError(f"dropbox_error_status_{res.status_code}: {summary}", res.status_code, summary)

    def _request(
        self,
        url: str,
        *,
        json_body: Optional[dict[str, Any]] = None,
        arg: Optional[dict[str, Any]] = None,
        data: Optional[bytes] = None,
        extra_headers: Optional[dict[str, str]] = None,
        stream: bool = False,
    ) -> requests.Response:
        refreshed = False
        attempt = 0
        while True:
            headers = {"Authorization": f"Bearer {self._token()}"}
            if arg is not None:
                headers["Dropbox-API-Arg"] = _arg_header(arg)
            if data is not None:
                headers["Content-Type"] = "application/octet-stream"
            if extra_headers:
                headers.update(extra_headers)

            try:
                res = self.http.post(
                    url,
                    json=json_body,
                    data=data,
                    headers=headers,
                    timeout=self.timeout,
                    stream=stream,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt < self.max_retries:
                    self._sleep(2 ** attempt)
                    attempt += 1
                    continue
                raise NetworkError(f"network_error: {e}") from e

            status = res.status_code
            if status < 400:
                return res

            if status == 401 and not refreshed:
                refreshed = True
                logger.info("dropbox_unauthorized_refreshing url=%s", url)
                self._access_token = ""
                self.refresh_access_token()
                continue
            if status == 401:
                raise UnauthorizedError(f"unauthorized: {(res.text or '')[:200]}")

            if status == 429:
                retry_after = float(res.headers.get("Retry-After") or DEFAULT_RETRY_AFTER_SEC)
                if attempt < self.max_retries:
                    logger.warning("dropbox_rate_limited retry_after=%s attempt=%s", retry_after, attempt + 1)
                    self._sleep(retry_after)
                    attempt += 1
                    continue
                raise RateLimitedError("rate_limited", retry_after)

            if status >= 500:
                if attempt < self.max_retries:
                    self._sleep(2 ** attempt)
                    attempt += 1
                    continue
                raise ServerError(f"server_error_status_{status}", status)

            raise self._error_from_response(res)

    def _rpc(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        res = self._request(f"{self.api_base}/{endpoint}", json_body=body)
        payload = res.json() if res.content else {}
        if not isinstance(payload, dict):
            raise RemoteApiError(f"invalid_response: {endpoint}")
        return payload

    def _content(self, endpoint: str, arg: dict[str, Any], data: bytes = b"") -> dict[str, Any]:
        res = self._request(f"{self.content_base}/{endpoint}", arg=arg, data=data)
        payload = res.json() if res.content else {}
        if not isinstance(payload, dict):
            raise RemoteApiError(f"invalid_response: {endpoint}")
        return payload

    # -- tree operations ---------------------------------------------------

    def create_folder(self, path: str) -> RemoteEntry:
        payload = self._rpc("files/create_folder_v2", {"path": api_path(path), "autorename": False})
        return parse_entry(payload.get("metadata") or {}, default_tag="folder")

    def move(self, from_path: str, to_path: str) -> RemoteEntry:
        payload = self._rpc(
            "files/move_v2",
            {"from_path": api_path(from_path), "to_path": api_path(to_path), "autorename": False},
        )
        return parse_entry(payload.get("metadata") or {})

    def delete(self, path: str) -> None:
        self._rpc("files/delete_v2", {"path": api_path(path)})

    def get_metadata(self, path: str) -> Optional[RemoteEntry]:
        try:
            payload = self._rpc("files/get_metadata", {"path": api_path(path)})
        except RemoteNotFoundError:
            return None
        return parse_entry(payload)

    # -- listing -----------------------------------------------------------

    def _list_result(self, payload: dict[str, Any]) -> ListFolderResult:
        return ListFolderResult(
            entries=[parse_entry(e) for e in payload.get("entries") or [] if isinstance(e, dict)],
            cursor=payload.get("cursor") or "",
            has_more=bool(payload.get("has_more")),
        )

    def list_folder(self, path: str, recursive: bool = True) -> ListFolderResult:
        payload = self._rpc(
            "files/list_folder",
            {"path": api_path(path), "recursive": recursive, "include_deleted": False},
        )
        return self._list_result(payload)

    def list_folder_continue(self, cursor: str) -> ListFolderResult:
        return self._list_result(self._rpc("files/list_folder/continue", {"cursor": cursor}))

    def get_latest_cursor(self, path: str, recursive: bool = True) -> str:
        payload = self._rpc(
            "files/list_folder/get_latest_cursor",
            {"path": api_path(path), "recursive": recursive, "include_deleted": True},
        )
        return payload.get("cursor") or ""

    # -- uploads -----------------------------------------------------------

    def _commit(self, path: str) -> dict[str, Any]:
        return {"path": api_path(path), "mode": "overwrite", "autorename": False, "mute": True}

    def upload(self, path: str, data: bytes) -> RemoteEntry:
        return parse_entry(self._content("files/upload", self._commit(path), data))

    def start_session(self, data: bytes) -> str:
        payload = self._content("files/upload_session/start", {"close": False}, data)
        session_id = payload.get("session_id")
        if not session_id:
            raise RemoteApiError("upload_session_start_no_session_id")
        return session_id

    def append(self, session_id: str, data: bytes, offset: int) -> None:
        self._content(
            "files/upload_session/append_v2",
            {"cursor": {"session_id": session_id, "offset": offset}, "close": False},
            data,
        )

    def finish(self, session_id: str, offset: int, path: str) -> RemoteEntry:
        payload = self._content(
            "files/upload_session/finish",
            {"cursor": {"session_id": session_id, "offset": offset}, "commit": self._commit(path)},
            b"",
        )
        return parse_entry(payload)

    # -- downloads ---------------------------------------------------------

    def download_file(self, path: str, dest_path: Path) -> RemoteEntry:
        res = self._request(f"{self.content_base}/files/download", arg={"path": api_path(path)}, stream=True)
        with res:
            meta = json.loads(res.headers.get("Dropbox-API-Result") or "{}")
            dest = Path(dest_path)
            dest.parent.mkdir(parents=True, exist_ok=True)
            with dest.open("wb") as fp:
                for chunk in res.iter_content(chunk_size=1024 * 64):
                    if chunk:
                        fp.write(chunk)
        return parse_entry(meta)

    def download_range(self, path: str, start: int, end: int) -> bytes:
        """Bytes [start, end) of the file at `path`."""
        res = self._request(
            f"{self.content_base}/files/download",
            arg={"path": api_path(path)},
            extra_headers={"Range": f"bytes={start}-{end - 1}"},
        )
        return res.content
