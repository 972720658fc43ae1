from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreateLoanRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    materialId: Optional[str] = None
    startDate: Optional[str] = None
    endDate: Optional[str] = None
    purpose: Optional[str] = None
    studentName: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    adminNotes: Optional[str] = None


class DecisionNotesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = None


class RejectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None
