# src/main.py

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import router
from api.callbacks import router as callbacks_router
from engine.errors import BitorError
from engine.service import Engine
import config
import logging
import uuid


# Configure structured logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s %(levelname)s %(name)s %(message)s'
)


def create_app(engine: Engine = None) -> FastAPI:
    app = FastAPI(title="Bitor Scan Engine")
    app.state.engine = engine

    @app.middleware("http")
    async def add_trace_id_and_log(request: Request, call_next):
        trace_id = str(uuid.uuid4())
        request.state.trace_id = trace_id
        logging.info(f"[trace_id={trace_id}] Incoming request: {request.method} {request.url.path}")
        try:
            response = await call_next(request)
        except Exception as exc:
            logging.error(f"[trace_id={trace_id}] Unhandled error: {exc}")
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": "Internal server error", "trace_id": trace_id}
            )
        response.headers["X-Trace-Id"] = trace_id
        return response

    @app.exception_handler(BitorError)
    async def bitor_exception_handler(request: Request, exc: BitorError):
        trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))
        log = logging.error if exc.status_code >= 500 else logging.warning
        log(f"[trace_id={trace_id}] {type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc), "trace_id": trace_id}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))
        logging.error(f"[trace_id={trace_id}] Exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc), "trace_id": trace_id}
        )

    app.include_router(router)
    app.include_router(callbacks_router)

    @app.on_event("startup")
    def on_startup():
        if app.state.engine is None:
            app.state.engine = Engine()
        app.state.engine.check()
        app.state.engine.start_cost_sweeper()
        app.state.engine.start_scheduler()
        logging.info("Bitor scan engine API started.")

    @app.on_event("shutdown")
    def on_shutdown():
        if app.state.engine is not None:
            app.state.engine.shutdown()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.info(f"Starting Bitor scan engine on {config.APP_HOST}:{config.APP_PORT}")
    uvicorn.run("main:app", host=config.APP_HOST, port=config.APP_PORT, reload=False)
