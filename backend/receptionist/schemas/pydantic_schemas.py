from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
import json


# Voice provider webhook envelope

class ProviderModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class VapiPhoneNumber(ProviderModel):
    number: Optional[str] = None


class VapiCustomer(ProviderModel):
    number: Optional[str] = None
    name: Optional[str] = None


class VapiCall(ProviderModel):
    id: Optional[str] = None
    type: Optional[str] = None
    phoneNumber: Optional[VapiPhoneNumber] = None
    customer: Optional[VapiCustomer] = None
    startedAt: Optional[Any] = None
    endedAt: Optional[Any] = None
    duration: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None


class VapiFunctionCall(ProviderModel):
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("parameters", mode="before")
    @classmethod
    def _decode_parameters(cls, value):
        # Some providers send arguments as a JSON string
        if isinstance(value, str):
            try:
                return json.loads(value) if value.strip() else {}
            except ValueError:
                return {}
        return value or {}


class VapiMessage(ProviderModel):
    type: str = "unknown"
    call: Optional[VapiCall] = None
    phoneNumber: Optional[VapiPhoneNumber] = None
    customer: Optional[VapiCustomer] = None
    timestamp: Optional[Any] = None
    # status-update
    status: Optional[str] = None
    endedReason: Optional[str] = None
    # transcript
    role: Optional[str] = None
    transcript: Optional[str] = None
    transcriptType: Optional[str] = None
    # function-call
    functionCall: Optional[VapiFunctionCall] = None
    # end-of-call-report
    summary: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None
    artifact: Optional[Dict[str, Any]] = None
    recording: Optional[Dict[str, Any]] = None
    recordingUrl: Optional[str] = None
    startedAt: Optional[Any] = None
    endedAt: Optional[Any] = None
    durationSeconds: Optional[float] = None


class VapiWebhook(ProviderModel):
    message: VapiMessage = Field(default_factory=VapiMessage)


# Booking endpoints

class BookingCreateRequest(BaseModel):
    businessId: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    start: Optional[str] = None
    notes: Optional[str] = None
    callId: Optional[str] = None


class BookingCancelRequest(BaseModel):
    businessId: str
    reason: Optional[str] = None


class BookingRescheduleRequest(BaseModel):
    businessId: str
    start: str


class BookingRead(BaseModel):
    id: str
    business_id: str
    call_id: Optional[str] = None
    calcom_booking_id: Optional[int] = None
    calcom_uid: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    scheduled_at: str
    duration_minutes: int = 30
    status: str
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    cancelled_at: Optional[str] = None


class AvailableSlot(BaseModel):
    iso: str
    time: str


class AvailabilityResponse(BaseModel):
    success: bool = True
    date: str
    timePreference: str
    availableSlots: List[AvailableSlot]
    count: int


# Calls

class TranscriptTurn(BaseModel):
    role: str
    text: str
    sequence_number: int
    spoken_at: Optional[str] = None
    confidence: Optional[float] = None


class CallRead(BaseModel):
    id: str
    business_id: str
    vapi_call_id: Optional[str] = None
    direction: str
    from_phone: Optional[str] = None
    to_phone: Optional[str] = None
    customer_phone: Optional[str] = None
    status: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    duration_seconds: Optional[int] = None
    ended_reason: Optional[str] = None
    recording_url: Optional[str] = None
    summary: Optional[str] = None
    intent: Optional[str] = None
    sentiment: Optional[str] = None
    missed: bool = False
    ai_handled: bool = False
    escalation_required: bool = False
    created_at: Optional[str] = None
    full_transcript: Optional[str] = None
    turns: Optional[List[TranscriptTurn]] = None


class CallListResponse(BaseModel):
    items: List[CallRead]
    total: int
    page: int
    page_size: int


# Digest

class DigestError(BaseModel):
    tenantId: str
    error: str


class DigestRunResponse(BaseModel):
    processed: int
    sent: int
    errors: List[DigestError]
