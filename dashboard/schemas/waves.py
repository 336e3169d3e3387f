from pydantic import AliasChoices, BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime

class WaveMember(BaseModel):
    source_id: str = Field(..., validation_alias=AliasChoices("source_id", "mb_project_uuid"))
    target_id: int = Field(..., gt=0, validation_alias=AliasChoices("target_id", "brz_project_id"))

class WaveCreateRequest(BaseModel):
    name: str
    members: List[WaveMember] = Field(..., min_length=1)
    batch_size: int = Field(3, ge=1)
    start: bool = False
    site_id: Optional[int] = None
    secret: Optional[str] = None

class RestartAllRequest(BaseModel):
    source_ids: List[str] = []
    site_id: Optional[int] = None
    secret: Optional[str] = None
    quality_analysis: Optional[bool] = None
    force: bool = False

class WaveProgressOut(BaseModel):
    total: int
    completed: int
    failed: int

class WaveMemberStatus(BaseModel):
    source_id: str
    target_id: int
    status: str
    error_message: Optional[str] = None

class WaveResponse(BaseModel):
    wave_id: str
    name: str
    status: str
    batch_size: int
    progress: WaveProgressOut
    created_at: datetime
    completed_at: Optional[datetime] = None
    members: List[WaveMemberStatus] = []

    @classmethod
    def from_wave(cls, wave, jobs=()) -> "WaveResponse":
        by_key = {(j.source_id, j.target_id): j for j in jobs}
        members = []
        for source_id, target_id in wave.members:
            job = by_key.get((source_id, int(target_id)))
            members.append(WaveMemberStatus(
                source_id=source_id,
                target_id=int(target_id),
                status=job.status if job else "pending",
                error_message=job.error_message if job else None,
            ))
        return cls(
            wave_id=wave.wave_id,
            name=wave.name,
            status=wave.status,
            batch_size=wave.batch_size,
            progress=WaveProgressOut(
                total=wave.progress_total,
                completed=wave.progress_completed,
                failed=wave.progress_failed,
            ),
            created_at=wave.created_at,
            completed_at=wave.completed_at,
            members=members,
        )

class MemberReportOut(BaseModel):
    source_id: str
    target_id: int
    success: bool
    status: Optional[str] = None
    error: Optional[str] = None

class RestartAllResponse(BaseModel):
    success: bool
    wave_id: str
    total: int
    succeeded: int
    failed: int
    members: List[MemberReportOut]
    progress: Dict[str, Any] = {}
