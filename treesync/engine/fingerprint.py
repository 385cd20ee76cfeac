"""Block-wise content fingerprint.

Content is cut into fixed 4 MiB blocks, each block is hashed with SHA-256 and
the fingerprint is the SHA-256 of the concatenated block digests, hex encoded.
It matches the remote store's `content_hash` and does not depend on how the
bytes were chunked in transit.
"""
from __future__ import annotations

import hashlib
from pathlib import Path
from typing import BinaryIO, Iterable, Union

BLOCK_SIZE = 4 * 1024 * 1024
READ_SIZE = 1024 * 1024


class BlockHasher:
    def __init__(self):
        self._overall = hashlib.sha256()
        self._block = hashlib.sha256()
        self._block_fill = 0
        self.size = 0

    def update(self, data: bytes) -> None:
        view = memoryview(data)
        self.size += len(view)
        while view:
            take = min(BLOCK_SIZE - self._block_fill, len(view))
            self._block.update(view[:take])
            self._block_fill += take
            view = view[take:]
            if self._block_fill == BLOCK_SIZE:
                self._overall.update(self._block.digest())
                self._block = hashlib.sha256()
                self._block_fill = 0

    def hexdigest(self) -> str:
        overall = self._overall.copy()
        if self._block_fill:
            overall.update(self._block.digest())
        return overall.hexdigest()


def fingerprint_chunks(chunks: Iterable[bytes]) -> str:
    hasher = BlockHasher()
    for chunk in chunks:
        hasher.update(chunk)
    return hasher.hexdigest()


def fingerprint_bytes(data: bytes) -> str:
    return fingerprint_chunks([data])


def fingerprint_stream(stream: BinaryIO) -> str:
    return fingerprint_chunks(iter(lambda: stream.read(READ_SIZE), b""))


def fingerprint_file(path: Union[str, Path]) -> str:
    with Path(path).open("rb") as f:
        return fingerprint_stream(f)
