from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, Optional

# Identity and correlation fields; everything else in a delivery is the result payload.
IDENTITY_FIELDS = {
    "source_id", "mb_project_uuid",
    "target_id", "brz_project_id",
    "wave_id", "migration_uuid",
    "webhook_mb_project_uuid", "webhook_brz_project_id",
}


class WebhookPayload(BaseModel):
    """Completion callback from the migration server.

    Accepts both the neutral names and the field names the migration server
    actually sends (``mb_project_uuid`` / ``brz_project_id``).
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    source_id: str = Field(validation_alias=AliasChoices("source_id", "mb_project_uuid", "webhook_mb_project_uuid"))
    target_id: int = Field(validation_alias=AliasChoices("target_id", "brz_project_id", "webhook_brz_project_id"))
    status: Optional[str] = None
    error: Optional[Any] = None
    wave_id: Optional[str] = None
    migration_uuid: Optional[str] = None

    @field_validator("source_id")
    @classmethod
    def _non_empty_source(cls, v: str) -> str:
        v = str(v).strip()
        if not v:
            raise ValueError("source_id must not be empty")
        return v

    @field_validator("target_id")
    @classmethod
    def _positive_target(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("target_id must be positive")
        return v

    @field_validator("wave_id", "migration_uuid", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Optional[str]:
        return None if v in (None, "") else str(v)


class WebhookResponse(BaseModel):
    success: bool
    message: str
    data: Dict[str, Any] = {}
