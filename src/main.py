# src/main.py

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import router
from engine.config import EngineSettings
from engine.job_manager import JobManager
from engine.scan_engine import ExecutionEngine
import logging
import uuid


# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s %(name)s %(message)s'
)


def create_app(engine: ExecutionEngine = None) -> FastAPI:
    app = FastAPI(title="Scan Execution Engine")
    app.state.engine = engine
    app.state.job_manager = JobManager(engine) if engine is not None else None

    @app.middleware("http")
    async def add_trace_id_and_log(request: Request, call_next):
        trace_id = str(uuid.uuid4())
        request.state.trace_id = trace_id
        logging.info(f"[trace_id={trace_id}] Incoming request: {request.method} {request.url}")
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

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))
        logging.error(f"[trace_id={trace_id}] Exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc), "trace_id": trace_id}
        )

    app.include_router(router)

    @app.on_event("startup")
    def on_startup():
        if app.state.engine is None:
            app.state.engine = ExecutionEngine.from_settings(EngineSettings.from_env())
            app.state.job_manager = JobManager(app.state.engine)
        app.state.engine.startup()
        logging.info("Scan Execution Engine API started.")

    @app.on_event("shutdown")
    def on_shutdown():
        # uvicorn turns SIGINT/SIGTERM into this event
        logging.info("Draining active scans before exit...")
        app.state.engine.shutdown()

    return app


app = create_app()
