from __future__ import annotations

import hashlib


def normalize(path: str) -> str:
    raw = (path or "").strip().replace("\\", "/")
    parts = [p for p in raw.split("/") if p]
    return "/" + "/".join(parts) if parts else ""


def path_key(path: str) -> str:
    return normalize(path).lower()


def path_hash(path: str) -> str:
    return hashlib.md5(path_key(path).encode("utf-8")).hexdigest()


def join(parent: str, name: str) -> str:
    return normalize(f"{parent}/{name}")


def parent_of(path: str) -> str:
    norm = normalize(path)
    head, _, _tail = norm.rpartition("/")
    return head


def base_name(path: str) -> str:
    return normalize(path).rpartition("/")[2]


def depth(path: str) -> int:
    return normalize(path).count("/")


def is_under(path: str, root: str) -> bool:
    """True when `path` is strictly below `root`, compared case-insensitively."""
    key = path_key(path)
    root_key = path_key(root)
    if not root_key:
        return bool(key)
    return key.startswith(root_key + "/")


def relative_parts(path: str, root: str) -> list[str]:
    norm = normalize(path)
    root_norm = normalize(root)
    return [p for p in norm[len(root_norm):].split("/") if p]


def rebase(path: str, old_prefix: str, new_prefix: str) -> str:
    norm = normalize(path)
    old_norm = normalize(old_prefix)
    if path_key(norm) == path_key(old_norm):
        return normalize(new_prefix)
    return normalize(new_prefix + norm[len(old_norm):])
