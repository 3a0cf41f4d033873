# src/api/routes.py
from fastapi import APIRouter, Body, Depends, Query
from api.dependencies import get_engine
from api.schemas import ImportRequest, ScanIdRequest, ScheduleRequest, SignedUrlRequest
from engine.errors import ValidationError
from engine.logs import encode_log
from engine.scheduler import schedule_to_dict
from engine.service import Engine
from engine.store import job_to_dict
import logging

router = APIRouter()


@router.post(
    "/scan/generate",
    summary="Generate scan files for a job",
    response_description="Job record after generation",
    tags=["Scan Jobs"],
    response_model=dict,
    responses={
        200: {"description": "Scan files generated"},
        404: {"description": "Job not found"},
        409: {"description": "Job is already generating or deploying"},
        500: {"description": "Generation failed"},
    },
)
def generate_scan(request: ScanIdRequest, engine: Engine = Depends(get_engine)):
    """
    Build scan.yaml, targets and the nuclei profile for a job and run generate.yml.
    The job stays in Generating, ready to deploy.
    """
    job = engine.lifecycle.request_generate(request.scan_id)
    return {"success": True, "scan": job_to_dict(job)}


@router.post(
    "/scan/start",
    summary="Generate and deploy a scan",
    response_description="Job record after deploy",
    tags=["Scan Jobs"],
    response_model=dict,
    responses={
        200: {"description": "Scan deployed"},
        404: {"description": "Job not found"},
        409: {"description": "Job is already generating or deploying"},
        500: {"description": "Generation or deploy failed"},
    },
)
def start_scan(request: ScanIdRequest, engine: Engine = Depends(get_engine)):
    job = engine.lifecycle.request_start(request.scan_id)
    return {"success": True, "scan": job_to_dict(job)}


@router.post(
    "/scan/start/async",
    summary="Generate and deploy a scan (async)",
    response_description="Progress job ID and submission status",
    tags=["Scan Jobs"],
    response_model=dict,
)
def start_scan_async(request: ScanIdRequest, engine: Engine = Depends(get_engine)):
    """
    Submit generate + deploy as a background job. Poll /scan/progress/{job_id}.
    """
    engine.store.get_job(request.scan_id)
    job_id = engine.job_manager.submit_job(
        _run_start_job, engine, request.scan_id, job_type="scan_start",
    )
    return {"job_id": job_id, "scan_id": request.scan_id, "status": "submitted"}


def _run_start_job(engine, scan_id, progress=None):
    job = engine.lifecycle.request_start(scan_id, progress=progress)
    return {"scan_id": scan_id, "status": job.status.value}


@router.post("/scan/deploy", summary="Deploy a generated scan", tags=["Scan Jobs"], response_model=dict)
def deploy_scan(request: ScanIdRequest, engine: Engine = Depends(get_engine)):
    job = engine.lifecycle.request_deploy(request.scan_id)
    return {"success": True, "scan": job_to_dict(job)}


@router.post("/scan/stop", summary="Stop a scan and tear down its VM", tags=["Scan Jobs"], response_model=dict)
def stop_scan(request: ScanIdRequest, engine: Engine = Depends(get_engine)):
    job = engine.lifecycle.request_stop(request.scan_id)
    return {"success": True, "scan": job_to_dict(job)}


@router.post("/scan/destroy", summary="Destroy a scan's resources and files", tags=["Scan Jobs"], response_model=dict)
def destroy_scan(request: ScanIdRequest, engine: Engine = Depends(get_engine)):
    job = engine.lifecycle.request_destroy(request.scan_id)
    return {"success": True, "scan": job_to_dict(job)}


@router.post(
    "/scan/import",
    summary="Import results as a manual scan",
    response_description="Manual scan ID and progress job ID",
    tags=["Scan Jobs"],
    response_model=dict,
)
def import_scan(request: ImportRequest, engine: Engine = Depends(get_engine)):
    job = engine.lifecycle.import_manual(request.name, client_id=request.client_id)
    job_id = engine.job_manager.submit_job(
        engine.lifecycle.collect_imported_results, job.id, request.results,
        job_type="manual_import", save=engine.lifecycle.save_imported_results,
    )
    return {"job_id": job_id, "scan_id": job.id, "status": "submitted"}


@router.get(
    "/scan/job/{job_id}",
    summary="Get a scan job",
    tags=["Scan Jobs"],
    response_model=dict,
    responses={
        200: {"description": "Scan job record"},
        404: {"description": "Job not found"},
    },
)
def get_scan_job(job_id: str, engine: Engine = Depends(get_engine)):
    return job_to_dict(engine.store.get_job(job_id))


@router.get("/scan/job/{job_id}/logs", summary="Get a scan's execution log", tags=["Scan Jobs"], response_model=dict)
def get_scan_logs(job_id: str, engine: Engine = Depends(get_engine)):
    return {"scan_id": job_id, **encode_log(engine.store.read_log(job_id))}


@router.get("/scan/progress/{job_id}", summary="Get background job progress", tags=["Scan Jobs"], response_model=dict)
def get_progress(job_id: str, engine: Engine = Depends(get_engine)):
    return engine.job_manager.get_progress(job_id).to_dict()


@router.get("/scan/current-cost", summary="Current or final cost of a scan", tags=["Scan Jobs"], response_model=dict)
def current_cost(scan_id: str = Query(..., min_length=1), engine: Engine = Depends(get_engine)):
    return {"scan_id": scan_id, **engine.cost.estimate(scan_id).to_dict()}


@router.post("/scan/signed-url", summary="Pre-signed archive download URL", tags=["Scan Jobs"], response_model=dict)
def signed_url(request: SignedUrlRequest, engine: Engine = Depends(get_engine)):
    return {"signed_url": engine.archives.signed_url(request.scan_id, request.file_type)}


@router.post(
    "/scan/schedule",
    summary="Schedule a recurring scan",
    response_description="Stored schedule with its next run",
    tags=["Schedules"],
    response_model=dict,
    responses={
        200: {"description": "Schedule stored"},
        400: {"description": "Frequency or cron expression cannot be scheduled"},
        404: {"description": "Job not found"},
    },
)
def schedule_scan(request: ScheduleRequest, engine: Engine = Depends(get_engine)):
    """
    Each run copies the scan into a new job and starts it in the background.
    """
    details = request.schedule_details.model_dump(exclude_none=True) if request.schedule_details else None
    schedule = engine.scheduler.create(
        request.scan_id, request.frequency, request.start_date, end_date=request.end_date,
        cron_expression=request.cron_expression, details=details,
    )
    return {"success": True, "schedule": schedule_to_dict(schedule)}


@router.get("/scan/scheduled", summary="List scheduled scans", tags=["Schedules"])
def list_scheduled_scans(scan_id: str = None, engine: Engine = Depends(get_engine)):
    return [schedule_to_dict(schedule) for schedule in engine.scheduler.list_schedules(scan_id)]


@router.delete("/scan/scheduled/{schedule_id}", summary="Delete a scheduled scan", tags=["Schedules"],
               response_model=dict)
def delete_scheduled_scan(schedule_id: str, engine: Engine = Depends(get_engine)):
    engine.scheduler.delete(schedule_id)
    return {"success": True, "message": "Scheduled scan deleted"}


@router.get("/scan/history")
def get_scan_history(status: str = None, client_id: str = None, limit: int = 20, offset: int = 0,
                     engine: Engine = Depends(get_engine)):
    """
    List scan jobs, newest first.
    """
    if limit < 1 or limit > 200 or offset < 0:
        raise ValidationError("limit must be 1-200 and offset non-negative")
    try:
        jobs = engine.store.list_jobs(status=status, client_id=client_id, limit=limit, offset=offset)
    except ValueError:
        raise ValidationError(f"Unknown status {status!r}")
    return [job_to_dict(job) for job in jobs]


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.post("/webhook/config",
        summary="Set a global webhook URL for scan notifications",
        tags=["Webhook"],
        responses={
        200: {"description": "Webhook saved"},
        500: {"description": "Internal server error"}},
    )
def configure_webhook(webhook: str = Body(..., embed=True, description="Webhook URL to POST scan events"),
                      engine: Engine = Depends(get_engine)):
    try:
        url = engine.notifier.save_webhook_url(webhook)
        return {"success": True, "webhook_url": url}
    except (AttributeError, OSError) as e:
        logging.error(f"[webhook] Failed to save webhook URL: {e}")
        return {"success": False, "error": str(e)}


@router.get("/webhook/config", summary="Get the current webhook URL", tags=["Webhook"])
def get_webhook_config(engine: Engine = Depends(get_engine)):
    """
    Get the currently configured webhook URL.
    """
    try:
        url = engine.notifier.webhook_url()
    except (AttributeError, OSError) as e:
        return {"success": False, "error": str(e)}
    if not url:
        return {"success": False, "error": "Webhook URL not configured"}
    return {"success": True, "webhook_url": url}
