from pydantic import BaseModel, ConfigDict, Field


class DispatchSummaryOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    claimed: int
    succeeded: int
    failed: int
    skipped: int = 0
    retried: int = 0
    elapsed_ms: int = Field(serialization_alias="elapsedMs", validation_alias="elapsedMs")


class MaintenanceSummaryOut(BaseModel):
    requeued: int
    purged: int
