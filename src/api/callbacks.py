# src/api/callbacks.py
"""
Endpoints the scan host calls back on while a scan runs.

Every request carries ``Authorization: Bearer <secret>`` where the secret is the
ephemeral secret minted for the scan named in the body.
"""
import base64
import binascii
import hmac
import logging

from fastapi import APIRouter, Depends, Header

from api.dependencies import get_engine
from api.schemas import (
    ArchivesUpdate,
    CostUpdate,
    IpUpdate,
    LogsUpdate,
    ScanIdRequest,
    StatusUpdate,
    TimesUpdate,
)
from engine.errors import AuthorizationError, NotFoundError, ValidationError
from engine.logs import LogEntry, STDOUT, parse_timestamp
from engine.service import Engine

router = APIRouter(prefix="/scan", tags=["Scan Callbacks"])


def authorize(engine: Engine, scan_id: str, authorization) -> None:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthorizationError("missing bearer token")
    token = authorization[len("Bearer "):].strip()
    try:
        secret = engine.store.get_job(scan_id).ephemeral_secret or ""
    except NotFoundError:
        raise AuthorizationError("invalid token for this scan")
    if not secret or not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        logging.warning(f"[job_id={scan_id}] Rejected callback with an invalid token")
        raise AuthorizationError("invalid token for this scan")


def _decode(logs_b64: str) -> str:
    try:
        return base64.b64decode(logs_b64, validate=True).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"logs_b64 is not valid base64: {e}")


@router.post("/update-status")
def update_status(body: StatusUpdate, authorization: str = Header(None), engine: Engine = Depends(get_engine)):
    authorize(engine, body.scan_id, authorization)
    job = engine.lifecycle.update_status(body.scan_id, body.status)
    return {"success": True, "status": job.status.value}


@router.post("/update-logs")
def update_logs(body: LogsUpdate, authorization: str = Header(None), engine: Engine = Depends(get_engine)):
    authorize(engine, body.scan_id, authorization)
    text = _decode(body.logs_b64)
    stored = engine.store.append_log_entries(body.scan_id, [LogEntry.now(STDOUT, text)])
    return {"success": True, "entries": stored}


@router.post("/update-skipped-hosts")
def update_skipped_hosts(body: LogsUpdate, authorization: str = Header(None), engine: Engine = Depends(get_engine)):
    authorize(engine, body.scan_id, authorization)
    hosts = [line.strip() for line in _decode(body.logs_b64).splitlines() if line.strip()]
    engine.store.update_fields(body.scan_id, skipped_hosts=hosts)
    return {"success": True, "skipped_hosts": len(hosts)}


@router.post("/update-vm-times")
def update_vm_times(body: TimesUpdate, authorization: str = Header(None), engine: Engine = Depends(get_engine)):
    authorize(engine, body.scan_id, authorization)
    fields = {"vm_start_time": parse_timestamp(body.start_time)}
    if body.stop_time is not None:
        fields["vm_stop_time"] = parse_timestamp(body.stop_time)
    engine.store.update_fields(body.scan_id, **fields)
    return {"success": True}


@router.post("/update-nuclei-times")
def update_nuclei_times(body: TimesUpdate, authorization: str = Header(None), engine: Engine = Depends(get_engine)):
    authorize(engine, body.scan_id, authorization)
    fields = {"scan_start_time": parse_timestamp(body.start_time)}
    if body.stop_time is not None:
        fields["scan_stop_time"] = parse_timestamp(body.stop_time)
    engine.store.update_fields(body.scan_id, **fields)
    return {"success": True}


@router.post("/update-ip")
def update_ip(body: IpUpdate, authorization: str = Header(None), engine: Engine = Depends(get_engine)):
    authorize(engine, body.scan_id, authorization)
    engine.store.update_fields(body.scan_id, ip_address=body.ip_address)
    return {"success": True, "ip_address": body.ip_address}


@router.post("/update-cost")
def update_cost(body: CostUpdate, authorization: str = Header(None), engine: Engine = Depends(get_engine)):
    authorize(engine, body.scan_id, authorization)
    cost = engine.cost.record_callback_cost(
        body.scan_id, parse_timestamp(body.start_time), parse_timestamp(body.end_time), body.vm_size,
    )
    return {"success": True, "cost": str(cost)}


@router.post("/update-archives")
def update_archives(body: ArchivesUpdate, authorization: str = Header(None), engine: Engine = Depends(get_engine)):
    authorize(engine, body.scan_id, authorization)
    archive = engine.archives.record_archive(
        body.scan_id, body.client_id, body.provider_id, body.full_path, body.small_path,
    )
    return {"success": True, "archive_id": archive.id}


@router.post("/scan-complete")
def scan_complete(body: ScanIdRequest, authorization: str = Header(None), engine: Engine = Depends(get_engine)):
    authorize(engine, body.scan_id, authorization)
    job = engine.lifecycle.report_external_completion(body.scan_id)
    return {"success": True, "status": job.status.value}
