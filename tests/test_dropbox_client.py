import json

import pytest
import requests

from treesync.engine.errors import (
    ConfigurationError,
    IncorrectOffsetError,
    RemoteConflictError,
    ServerError,
    UnauthorizedError,
)
from treesync.providers.dropbox import DropboxClient
from treesync.providers.dropbox.client import api_path


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, body: bytes = b""):
        self.status_code = status_code
        self.headers = headers or {}
        if payload is not None:
            body = json.dumps(payload).encode("utf-8")
        self.content = body
        self.text = body.decode("utf-8", errors="replace")

    def json(self):
        return json.loads(self.content.decode("utf-8"))

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def post(self, url, **kwargs):
        self.requests.append((url, kwargs))
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


def _client(*responses, **kwargs):
    session = FakeSession(*responses)
    slept = []
    opts = {"access_token": "tok", "max_retries": 3}
    opts.update(kwargs)
    client = DropboxClient(session=session, sleep=slept.append, **opts)
    return client, session, slept


def _metadata(path="/Docs/a.txt"):
    return {".tag": "file", "path_display": path, "path_lower": path.lower(), "name": "a.txt", "id": "id:1", "size": 3}


def test_api_path_root_is_empty_string():
    assert api_path("/") == ""
    assert api_path("Docs//a.txt") == "/Docs/a.txt"


def test_rate_limit_waits_retry_after():
    client, session, slept = _client(
        FakeResponse(429, {"error_summary": "too_many_requests/"}, headers={"Retry-After": "3"}),
        FakeResponse(200, _metadata()),
    )

    entry = client.get_metadata("/Docs/a.txt")

    assert entry.path_display == "/Docs/a.txt"
    assert slept == [3.0]
    assert len(session.requests) == 2


def test_rate_limit_defaults_to_ten_seconds():
    client, _session, slept = _client(FakeResponse(429, {}), FakeResponse(200, _metadata()))
    client.get_metadata("/Docs/a.txt")
    assert slept == [10.0]


def test_unauthorized_refreshes_once_and_retries():
    client, session, _slept = _client(
        FakeResponse(401, {"error_summary": "expired_access_token/"}),
        FakeResponse(200, {"access_token": "fresh", "expires_in": 14400}),
        FakeResponse(200, _metadata()),
        app_key="key",
        app_secret="secret",
        refresh_token="refresh",
    )

    client.get_metadata("/Docs/a.txt")

    token_url, token_kwargs = session.requests[1]
    assert token_url.endswith("/oauth2/token")
    assert token_kwargs["data"]["grant_type"] == "refresh_token"
    assert session.requests[2][1]["headers"]["Authorization"] == "Bearer fresh"


def test_unauthorized_without_refresh_token_is_fatal():
    client, _session, _slept = _client(FakeResponse(401, {}))
    with pytest.raises(UnauthorizedError):
        client.get_metadata("/Docs/a.txt")


def test_missing_credentials_raise_configuration_error():
    client, _session, _slept = _client(access_token="")
    with pytest.raises(ConfigurationError):
        client.get_metadata("/Docs/a.txt")


def test_server_errors_back_off_exponentially():
    client, _session, slept = _client(*[FakeResponse(503, {}) for _ in range(4)])
    with pytest.raises(ServerError):
        client.list_folder("/Docs")
    assert slept == [1, 2, 4]


def test_network_error_is_retried():
    client, _session, slept = _client(requests.ConnectionError("reset"), FakeResponse(200, {"cursor": "c1"}))
    assert client.get_latest_cursor("/Docs") == "c1"
    assert slept == [1]


def test_conflict_and_not_found_mapping():
    client, _session, _slept = _client(
        FakeResponse(409, {"error_summary": "path/conflict/folder/..."}),
        FakeResponse(409, {"error_summary": "path/not_found/..."}),
    )
    with pytest.raises(RemoteConflictError):
        client.create_folder("/Docs/x")
    assert client.get_metadata("/Docs/missing") is None


def test_incorrect_offset_carries_server_offset():
    client, _session, _slept = _client(
        FakeResponse(
            409,
            {
                "error_summary": "incorrect_offset/..",
                "error": {".tag": "incorrect_offset", "correct_offset": 8192},
            },
        )
    )
    with pytest.raises(IncorrectOffsetError) as exc:
        client.append("sess", b"data", 4096)
    assert exc.value.correct_offset == 8192


def test_upload_sends_api_arg_header():
    client, session, _slept = _client(FakeResponse(200, _metadata("/Docs/é.txt")))

    client.upload("/Docs/é.txt", b"abc")

    url, kwargs = session.requests[0]
    assert url.endswith("/files/upload")
    arg = json.loads(kwargs["headers"]["Dropbox-API-Arg"])
    assert arg["path"] == "/Docs/é.txt"
    assert arg["mode"] == "overwrite"
    assert kwargs["headers"]["Dropbox-API-Arg"].isascii()
    assert kwargs["headers"]["Content-Type"] == "application/octet-stream"


def test_download_file_streams_to_disk(tmp_path):
    client, _session, _slept = _client(
        FakeResponse(200, headers={"Dropbox-API-Result": json.dumps(_metadata())}, body=b"abc"),
    )
    dest = tmp_path / "staged.download"

    entry = client.download_file("/Docs/a.txt", dest)

    assert dest.read_bytes() == b"abc"
    assert entry.size == 3


def test_download_range_sets_inclusive_range_header():
    client, session, _slept = _client(FakeResponse(200, body=b"xyz"))
    assert client.download_range("/Docs/a.txt", 100, 103) == b"xyz"
    assert session.requests[0][1]["headers"]["Range"] == "bytes=100-102"


def test_list_folder_parses_entries():
    client, _session, _slept = _client(
        FakeResponse(
            200,
            {
                "entries": [
                    {".tag": "folder", "path_display": "/Docs/Sub", "name": "Sub", "id": "id:2"},
                    {".tag": "deleted", "path_display": "/Docs/old.txt", "name": "old.txt"},
                ],
                "cursor": "c2",
                "has_more": True,
            },
        )
    )
    result = client.list_folder("/Docs")
    assert [e.tag for e in result.entries] == ["folder", "deleted"]
    assert result.cursor == "c2"
    assert result.has_more is True
