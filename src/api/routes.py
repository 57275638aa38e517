# src/api/routes.py
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from api.schemas import ContainerStatus, ExecuteRequest, HealthStatus, KillRequest, ScanResult
from engine.errors import EngineUnavailableError, PreconditionError, ScanConflictError
from engine.scan_engine import REJECTED
import logging

router = APIRouter()


def get_engine(request: Request):
    return request.app.state.engine


def get_job_manager(request: Request):
    return request.app.state.job_manager


def _rejection(scan_id: str, error: str, status_code: int = 400):
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "status": REJECTED, "error": error, "scan_id": scan_id},
    )


def _admission_rejection(scan_id: str, error: Exception):
    if isinstance(error, EngineUnavailableError):
        return _rejection(scan_id, str(error), 503)
    if isinstance(error, ScanConflictError):
        return _rejection(scan_id, str(error), 409)
    return _rejection(scan_id, str(error))


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get(
    "/containers/preflight",
    summary="Container engine health check",
    response_description="Engine reachability, default image presence and active scan count",
    tags=["Containers"],
    response_model=HealthStatus,
)
def preflight(engine=Depends(get_engine)):
    return engine.health_check()


@router.get(
    "/containers/status",
    summary="Get container status for a scan",
    tags=["Containers"],
    response_model=ContainerStatus,
)
def container_status(scan_id: str = None, engine=Depends(get_engine)):
    return engine.get_status(scan_id)


@router.post(
    "/containers/kill",
    summary="Terminate the container of an active scan",
    tags=["Containers"],
    response_model=dict,
    responses={
        200: {"description": "Kill attempted; 'success' tells whether a container was terminated"},
    },
)
def kill_container(request: KillRequest, engine=Depends(get_engine)):
    killed = engine.kill_scan(request.scan_id)
    if killed:
        return {"success": True, "message": "Container terminated successfully", "scan_id": request.scan_id}
    return {"success": False, "message": "Container not found or already stopped", "scan_id": request.scan_id}


@router.post(
    "/scan/execute",
    summary="Execute a scan and wait for its terminal state",
    response_description="Structured scan result",
    tags=["Scans"],
    response_model=ScanResult,
    responses={
        400: {"description": "Rejected before any container was created"},
        409: {"description": "Scan is active or already finished"},
        503: {"description": "Engine is shutting down"},
    },
)
def execute_scan(request: ExecuteRequest, engine=Depends(get_engine)):
    """
    Run a scan synchronously. Live output is delivered through the event fan-out.
    """
    try:
        # presets carry their own timeout
        engine.admit(request.scan_id, None if request.preset else request.timeout_ms)
    except (PreconditionError, EngineUnavailableError) as e:
        return _admission_rejection(request.scan_id, e)

    if request.preset:
        result = engine.execute_preset(request.scan_id, request.user_id, request.preset, request.target)
    elif request.tool:
        result = engine.execute_request(request.scan_id, request.user_id, request.tool, request.target,
                                        request.flags, request.timeout_ms)
    else:
        result = engine.execute_scan(request.scan_id, request.command, request.user_id, request.timeout_ms)

    if result.status == REJECTED:
        status_code = 409 if request.scan_id in engine.registry else 400
        return _rejection(request.scan_id, result.error, status_code)
    return result.to_dict()


@router.post(
    "/scan/execute/async",
    summary="Submit a scan for background execution",
    response_description="Scan ID and submission status",
    tags=["Scans"],
    response_model=dict,
    responses={
        200: {"description": "Scan submitted successfully"},
        400: {"description": "Invalid command or timeout"},
        409: {"description": "Scan is active or already finished"},
        503: {"description": "Engine is shutting down"},
    },
)
def execute_scan_async(request: ExecuteRequest, engine=Depends(get_engine), job_manager=Depends(get_job_manager)):
    """
    Validate the command, then run it in the background. Poll /scan/job/{scan_id}
    or subscribe to the event fan-out for progress.
    """
    try:
        resolved, preset_timeout = engine.resolve(
            command=request.command, tool=request.tool, target=request.target,
            flags=request.flags, preset=request.preset,
        )
        timeout_ms = request.timeout_ms if request.timeout_ms is not None else preset_timeout
        job_manager.submit_job(request.scan_id, resolved, request.user_id, timeout_ms)
    except (PreconditionError, EngineUnavailableError) as e:
        logging.warning(f"[scan_id={request.scan_id}] Rejected async scan: {e}")
        return _admission_rejection(request.scan_id, e)
    return {"scan_id": request.scan_id, "status": "submitted", "command": resolved.command_line}


@router.get(
    "/scan/job/{scan_id}",
    summary="Get scan job status and result",
    tags=["Scans"],
    response_model=dict,
)
def get_scan_job_status(scan_id: str, job_manager=Depends(get_job_manager)):
    return job_manager.get_status(scan_id)


@router.get(
    "/scan/history",
    summary="Query scan history",
    response_description="List of scans filtered by user and status",
    tags=["Scans"],
    response_model=list,
)
def get_scan_history(user_id: str = None, status: str = None, limit: int = 20, offset: int = 0,
                     engine=Depends(get_engine)):
    """
    Query scan history by user and/or status.
    """
    return engine.store.history(user_id=user_id, status=status, limit=limit, offset=offset)


@router.get(
    "/scan/{scan_id}/logs",
    summary="Get persisted log lines of a scan",
    tags=["Scans"],
    response_model=list,
)
def get_scan_logs(scan_id: str, limit: int = 500, offset: int = 0, engine=Depends(get_engine)):
    return engine.store.get_logs(scan_id, limit=limit, offset=offset)
