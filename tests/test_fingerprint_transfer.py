import hashlib
import os

import pytest

from treesync.engine.errors import IntegrityError, NetworkError, RateLimitedError
from treesync.engine.fingerprint import BLOCK_SIZE, fingerprint_bytes, fingerprint_chunks, fingerprint_file
from treesync.engine.models import ROOT_FOLDER_ID
from treesync.engine.transfer import SessionState, TransferEngine, UploadSession

MIB = 1024 * 1024


def _engine(remote, local, slept=None, **kwargs) -> TransferEngine:
    opts = {"inline_threshold": 100, "chunk_size": 256, "max_attempts": 3, "backoff_sec": 0.5}
    opts.update(kwargs)
    sink = slept if slept is not None else []
    return TransferEngine(remote, local, sleep=sink.append, **opts)


def _local_file(local, name: str, data: bytes) -> str:
    (local.root / name).write_bytes(data)
    return local.id_for_path(name)


def _chunks(data: bytes, size: int):
    return [data[i:i + size] for i in range(0, len(data), size)]


def test_fingerprint_is_independent_of_transfer_chunking():
    data = os.urandom(9 * MIB + 123)
    by_1mib = fingerprint_chunks(_chunks(data, 1 * MIB))
    by_8mib = fingerprint_chunks(_chunks(data, 8 * MIB))
    assert by_1mib == by_8mib == fingerprint_bytes(data)


def test_uploads_with_different_chunk_sizes_give_same_remote_fingerprint(remote, local):
    data = os.urandom(9 * MIB + 123)
    file_id = _local_file(local, "video.bin", data)

    small = _engine(remote, local, inline_threshold=MIB, chunk_size=1 * MIB).upload_file(file_id, "/root/one.bin")
    large = _engine(remote, local, inline_threshold=MIB, chunk_size=8 * MIB).upload_file(file_id, "/root/eight.bin")

    assert small.chunked and large.chunked
    appends = [c for c in remote.calls if c[0] == "append"]
    assert len(appends) == 9 + 1
    assert remote.entry("/root/one.bin").content_hash == remote.entry("/root/eight.bin").content_hash
    assert remote.entry("/root/one.bin").content_hash == fingerprint_file(local.root / "video.bin")
    assert small.fingerprint == large.fingerprint


def test_fingerprint_block_layout():
    small = b"hello world"
    assert fingerprint_bytes(small) == hashlib.sha256(hashlib.sha256(small).digest()).hexdigest()

    two_blocks = b"a" * BLOCK_SIZE + b"b"
    expected = hashlib.sha256(
        hashlib.sha256(b"a" * BLOCK_SIZE).digest() + hashlib.sha256(b"b").digest()
    ).hexdigest()
    assert fingerprint_bytes(two_blocks) == expected
    assert fingerprint_bytes(b"") == hashlib.sha256(b"").hexdigest()


def test_upload_session_state_machine():
    session = UploadSession(total_size=10)
    session.started("s1", 4)
    assert session.state == SessionState.SESSION_STARTED
    session.advance(4)
    assert session.offset == 8
    assert session.remaining == 2
    session.finished()
    with pytest.raises(RuntimeError):
        session.advance(1)


def test_small_file_uploads_inline(remote, local):
    file_id = _local_file(local, "note.txt", b"x" * 50)
    result = _engine(remote, local).upload_file(file_id, "/root/note.txt")

    assert result.chunked is False
    assert remote.data_of("/root/note.txt") == b"x" * 50
    assert [c[0] for c in remote.calls] == ["upload"]


def test_large_file_uses_session(remote, local):
    data = os.urandom(1000)
    file_id = _local_file(local, "big.bin", data)

    result = _engine(remote, local).upload_file(file_id, "/root/big.bin")

    assert result.chunked is True
    assert result.fingerprint == fingerprint_bytes(data)
    assert remote.data_of("/root/big.bin") == data
    ops = [c for c in remote.calls if c[0] in ("start_session", "append", "finish")]
    assert ops == [
        ("start_session", 256),
        ("append", 256, 256),
        ("append", 512, 256),
        ("append", 768, 232),
        ("finish", 1000, "/root/big.bin"),
    ]


def test_failed_append_does_not_advance_offset(remote, local):
    data = os.urandom(600)
    file_id = _local_file(local, "big.bin", data)
    remote.fail("append", NetworkError("connection reset"))
    slept = []

    _engine(remote, local, slept=slept).upload_file(file_id, "/root/big.bin")

    appends = [c[1] for c in remote.calls if c[0] == "append"]
    assert appends == [256, 256, 512]
    assert slept == [0.5]
    assert remote.data_of("/root/big.bin") == data


def test_exhausted_retries_raise_the_last_error(remote, local):
    file_id = _local_file(local, "note.txt", b"x" * 50)
    remote.fail("upload", NetworkError("one"), NetworkError("two"), NetworkError("three"))

    with pytest.raises(NetworkError, match="three"):
        _engine(remote, local).upload_file(file_id, "/root/note.txt")

    big_id = _local_file(local, "big.bin", os.urandom(600))
    remote.fail("append", NetworkError("reset-1"), NetworkError("reset-2"), NetworkError("reset-3"))

    with pytest.raises(NetworkError, match="reset-3"):
        _engine(remote, local).upload_file(big_id, "/root/big.bin")
    assert remote.data_of("/root/big.bin") is None


def test_lost_ack_resyncs_to_server_offset(remote, local):
    data = os.urandom(600)
    file_id = _local_file(local, "big.bin", data)
    real_append = remote.append
    state = {"dropped": False}

    def append_then_drop_ack(session_id, chunk, offset):
        real_append(session_id, chunk, offset)
        if not state["dropped"]:
            state["dropped"] = True
            raise NetworkError("ack lost")

    remote.append = append_then_drop_ack

    _engine(remote, local).upload_file(file_id, "/root/big.bin")

    assert remote.data_of("/root/big.bin") == data


def test_upload_rejects_mismatched_remote_hash(remote, local):
    file_id = _local_file(local, "note.txt", b"payload")
    remote.reported_hash = "0" * 64

    with pytest.raises(IntegrityError):
        _engine(remote, local).upload_file(file_id, "/root/note.txt")


def test_rate_limit_honours_retry_after(remote, local):
    file_id = _local_file(local, "note.txt", b"abc")
    remote.fail("upload", RateLimitedError(retry_after=7))
    slept = []

    _engine(remote, local, slept=slept).upload_file(file_id, "/root/note.txt")

    assert slept == [7]
    assert remote.data_of("/root/note.txt") == b"abc"


def test_download_installs_verified_file(remote, local):
    data = os.urandom(80)
    remote.put_file("/root/a.bin", data)

    result = _engine(remote, local).download_file("/root/a.bin", ROOT_FOLDER_ID, "a.bin")

    target = local.root / "a.bin"
    assert target.read_bytes() == data
    assert result.fingerprint == fingerprint_file(target)
    assert result.local_id == local.id_for_path("a.bin")


def test_large_download_uses_ranges(remote, local):
    data = os.urandom(700)
    remote.put_file("/root/big.bin", data)

    _engine(remote, local).download_file("/root/big.bin", ROOT_FOLDER_ID, "big.bin")

    assert (local.root / "big.bin").read_bytes() == data
    ranges = [(c[1], c[2]) for c in remote.calls if c[0] == "download_range"]
    assert ranges == [(0, 256), (256, 512), (512, 700)]


def test_corrupt_download_is_never_installed(remote, local):
    remote.put_file("/root/a.bin", b"good bytes")
    remote.corrupt_downloads = True

    with pytest.raises(IntegrityError):
        _engine(remote, local).download_file("/root/a.bin", ROOT_FOLDER_ID, "a.bin")

    assert list(local.root.iterdir()) == []


def test_corrupt_download_keeps_previous_copy(remote, local):
    (local.root / "a.bin").write_bytes(b"old")
    remote.put_file("/root/a.bin", b"new bytes")
    remote.corrupt_downloads = True

    with pytest.raises(IntegrityError):
        _engine(remote, local).download_file("/root/a.bin", ROOT_FOLDER_ID, "a.bin")

    assert (local.root / "a.bin").read_bytes() == b"old"
    assert [p.name for p in local.root.iterdir()] == ["a.bin"]
