from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tasksync import __version__
from tasksync.core.config import AppConfig, load_config
from tasksync.store.db import init_db
from tasksync.sync import SyncEngine
from tasksync.web.api import router as api_router


async def _validation_error(_request: Request, exc: RequestValidationError):
    # Malformed bodies are validation errors like any rejected operation.
    return JSONResponse(
        status_code=400,
        content={"detail": "validation_failed", "errors": jsonable_encoder(exc.errors())},
    )


def build_app(cfg: AppConfig | None = None) -> FastAPI:
    cfg = cfg or load_config()
    init_db(cfg.database.path)

    api = FastAPI(title="tasksync", version=__version__)
    api.state.cfg = cfg
    # Owner locks live on the engine, so every request must share this instance.
    api.state.engine = SyncEngine(cfg.sync)

    api.add_exception_handler(RequestValidationError, _validation_error)

    api.include_router(api_router)
    return api


def main():
    import uvicorn

    cfg = load_config()

    from tasksync.core.logging_setup import setup_logging

    setup_logging(cfg.logging)

    uvicorn.run(
        build_app(cfg),
        host=cfg.web_bind_host,
        port=cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
