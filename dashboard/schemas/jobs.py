from pydantic import AliasChoices, BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from dashboard.core.workflow import JobStatus

class RunJobRequest(BaseModel):
    source_id: str = Field(..., validation_alias=AliasChoices("source_id", "mb_project_uuid"),
                           examples=["3c56530e-ca31-4a7c-964f-e69be01f382a"])
    target_id: int = Field(..., gt=0, validation_alias=AliasChoices("target_id", "brz_project_id"))
    site_id: Optional[int] = Field(None, validation_alias=AliasChoices("site_id", "mb_site_id"))
    secret: Optional[str] = Field(None, validation_alias=AliasChoices("secret", "mb_secret"))
    workspace_id: Optional[int] = Field(None, validation_alias=AliasChoices("workspace_id", "brz_workspaces_id"))
    page_slug: Optional[str] = Field(None, validation_alias=AliasChoices("page_slug", "mb_page_slug"))
    manual: bool = Field(False, validation_alias=AliasChoices("manual", "mgr_manual"))
    quality_analysis: Optional[bool] = None
    force: bool = False

class RestartJobRequest(BaseModel):
    site_id: Optional[int] = Field(None, validation_alias=AliasChoices("site_id", "mb_site_id"))
    secret: Optional[str] = Field(None, validation_alias=AliasChoices("secret", "mb_secret"))
    workspace_id: Optional[int] = Field(None, validation_alias=AliasChoices("workspace_id", "brz_workspaces_id"))
    page_slug: Optional[str] = Field(None, validation_alias=AliasChoices("page_slug", "mb_page_slug"))
    manual: Optional[bool] = Field(None, validation_alias=AliasChoices("manual", "mgr_manual"))
    quality_analysis: Optional[bool] = None
    force: bool = False

class KillRequest(BaseModel):
    force: bool = False

class HeartbeatRequest(BaseModel):
    stage: Optional[str] = None
    pid: Optional[int] = Field(None, gt=0)

class JobResponse(BaseModel):
    source_id: str
    target_id: int
    status: JobStatus
    wave_id: Optional[str] = None
    params: Dict[str, Any] = {}
    last_result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job) -> "JobResponse":
        return cls(
            source_id=job.source_id,
            target_id=job.target_id,
            status=job.status,
            wave_id=job.wave_id,
            params=job.params or {},
            last_result=job.last_result,
            error_message=job.error_message,
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )

class StepResponse(BaseModel):
    step: str
    ok: bool
    message: str
    details: Dict[str, Any] = {}

class HardResetResponse(BaseModel):
    success: bool
    steps: List[StepResponse]

class CommandResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    data: Any = None
