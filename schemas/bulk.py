"""Batch operation result schema."""
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class BulkError(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    record_id: Union[int, str] = Field(alias="recordId")
    kind: str
    error: str


class BulkResult(BaseModel):
    operation_id: Optional[int] = None
    success: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[BulkError] = Field(default_factory=list)
    record_ids: List[int] = Field(default_factory=list)

    def to_response(self) -> dict:
        return {
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": [e.model_dump(by_alias=True, include={"record_id", "error"}) for e in self.errors],
        }
