from typing import List, Optional

from pydantic import BaseModel, Field


class ParticipantIn(BaseModel):
    full_name: str
    email: str
    phone: str
    student_id: Optional[str] = None
    institution: Optional[str] = None
    faculty: Optional[str] = None
    major: Optional[str] = None
    batch: Optional[str] = None


class RegistrationCreate(BaseModel):
    event_id: str
    tier_id: str
    quantity: int = 1
    participant: ParticipantIn
    source: Optional[str] = None
    referral_code: Optional[str] = None
    custom_fields: Optional[dict] = None


class CancelIn(BaseModel):
    reason: Optional[str] = None


class RefundRequestIn(BaseModel):
    reason: str = Field(min_length=1)


class CredentialIn(BaseModel):
    credential: str


class ScanIn(CredentialIn):
    location: Optional[str] = None
    device: Optional[str] = None


class CheckInIn(BaseModel):
    registration_id: str
    location: Optional[str] = None
    device: Optional[str] = None


class BulkCheckInIn(BaseModel):
    registration_ids: List[str] = Field(min_length=1, max_length=500)
    location: Optional[str] = None
    device: Optional[str] = None


class UndoCheckInIn(BaseModel):
    registration_id: str
    reason: Optional[str] = None
