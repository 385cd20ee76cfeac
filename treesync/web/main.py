from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from treesync.core.config import load_config
from treesync.web.api import get_service, router as api_router, start_scheduler, stop_scheduler


def build_app(watch_local: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        watcher = None
        if watch_local:
            from treesync.providers.localfs import LocalFsStore, LocalFsWatcher

            local = get_service().local
            if isinstance(local, LocalFsStore):
                watcher = LocalFsWatcher(local)
                watcher.start()
        start_scheduler()
        try:
            yield
        finally:
            await stop_scheduler()
            if watcher is not None:
                watcher.stop()

    api = FastAPI(title="treesync", version="0.1.0", lifespan=lifespan)
    api.include_router(api_router)
    return api


def main():
    import uvicorn

    cfg = load_config()

    from treesync.core.logging_setup import setup_logging

    setup_logging(cfg.logging.level, cfg.logging.file)

    uvicorn.run(
        build_app(),
        host=cfg.web_bind_host,
        port=cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
