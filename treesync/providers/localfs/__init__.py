from .store import LocalFsStore
from .watcher import LocalFsWatcher

__all__ = ["LocalFsStore", "LocalFsWatcher"]
