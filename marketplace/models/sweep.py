"""Result of a background sweep run (maturation, scheduled plan changes)."""

from typing import List

from pydantic import BaseModel, Field


class SweepFailure(BaseModel):
    key: str
    error: str


class SweepReport(BaseModel):
    job: str
    processed: int = 0
    skipped: int = 0
    failures: List[SweepFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures
