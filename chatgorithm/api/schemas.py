"""Pydantic schemas for the REST endpoints.

Field names are camelCase where the web client sends or expects them.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "chatgorithm"


class SuccessResponse(BaseModel):
    success: bool = True


class AccountInfo(BaseModel):
    """A WhatsApp business line the tenant can send from."""

    id: str
    name: str


# ── Company login ────────────────────────────────────────────────────


class CompanyAuthRequest(BaseModel):
    # Optional so that missing credentials answer 400 instead of 422.
    companyId: str | None = None
    password: str | None = None


class CompanyAuthResponse(BaseModel):
    success: bool = True
    companyId: str
    companyName: str
    backendUrl: str


# ── Agenda ───────────────────────────────────────────────────────────


class AppointmentOut(BaseModel):
    id: str
    date: str | None = None
    status: str | None = None
    clientPhone: str | None = None
    clientName: str | None = None


class AppointmentCreate(BaseModel):
    date: str = Field(..., min_length=1, description="Slot start, ISO 8601 (UTC)")


class AppointmentUpdate(BaseModel):
    status: str | None = None
    clientPhone: str | None = None
    clientName: str | None = None


class ScheduleConfigIn(BaseModel):
    """Weekly schedule; ``days`` uses 0 = Sunday … 6 = Saturday."""

    days: list[int] = Field(default_factory=list)
    startTime: str = Field(..., pattern=r"^\d{1,2}:\d{2}$")
    endTime: str = Field(..., pattern=r"^\d{1,2}:\d{2}$")
    duration: int = Field(..., gt=0, le=24 * 60)


# ── Templates ────────────────────────────────────────────────────────


class TemplateOut(BaseModel):
    id: str
    name: str | None = None
    status: str | None = None
    body: str | None = None
    variableMapping: dict = Field(default_factory=dict)


class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    language: str = Field(..., min_length=2)
    footer: str | None = None
    variableExamples: dict[str, str] | None = None


class TemplateSendRequest(BaseModel):
    templateName: str = Field(..., min_length=1)
    language: str = Field(..., min_length=2)
    phone: str = Field(..., min_length=1)
    variables: list[str] = Field(default_factory=list)
    senderName: str | None = None
    originPhoneId: str | None = None


# ── Bot settings ─────────────────────────────────────────────────────


class BotConfig(BaseModel):
    prompt: str = Field(..., min_length=1)
