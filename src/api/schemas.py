# src/api/schemas.py
# Pydantic models for scan control and scan host callback requests
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional, Literal


class ScanIdRequest(BaseModel):
    scan_id: str = Field(..., min_length=1, description="Scan job ID")


class SignedUrlRequest(ScanIdRequest):
    file_type: Literal['full', 'small'] = Field(..., description="Which archive to sign")


class ImportRequest(BaseModel):
    name: str = Field(..., min_length=1)
    client_id: Optional[str] = None
    results: List[Dict[str, Any]] = Field(default_factory=list, description="Findings to attach to the manual scan")


class ScheduleDetails(BaseModel):
    # the dashboard sends camelCase keys
    model_config = ConfigDict(populate_by_name=True)

    type: Optional[str] = None
    frequency: Optional[str] = None
    selected_days: List[str] = Field(default_factory=list, alias="selectedDays")
    monthly_type: Optional[Literal['date', 'day']] = Field(None, alias="monthlyType")
    monthly_date: Optional[int] = Field(None, alias="monthlyDate", ge=1, le=31)
    monthly_day: Optional[str] = Field(None, alias="monthlyDay")
    monthly_week: Optional[str] = Field(None, alias="monthlyWeek")


class ScheduleRequest(ScanIdRequest):
    frequency: str = Field(..., min_length=1, description="daily, weekly, monthly or custom")
    cron_expression: Optional[str] = Field(None, description="Five-field cron expression; overrides the frequency")
    start_date: datetime
    end_date: Optional[datetime] = None
    schedule_details: Optional[ScheduleDetails] = None


# Callback bodies sent by the scan host


class StatusUpdate(ScanIdRequest):
    status: str


class LogsUpdate(ScanIdRequest):
    logs_b64: str = Field(..., description="Base64 encoded log text")


class TimesUpdate(ScanIdRequest):
    start_time: datetime
    stop_time: Optional[datetime] = None


class IpUpdate(ScanIdRequest):
    ip_address: str = Field(..., min_length=1)


class CostUpdate(ScanIdRequest):
    start_time: datetime
    end_time: datetime
    vm_size: str = Field(..., min_length=1)


class ArchivesUpdate(ScanIdRequest):
    client_id: Optional[str] = None
    provider_id: str
    full_path: Optional[str] = None
    small_path: Optional[str] = None
