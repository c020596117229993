"""FastAPI route definitions for the Chatgorithm REST API.

Airtable and Graph API calls are blocking, so every handler offloads them
with ``asyncio.to_thread`` to keep the event loop (and the Socket.IO server
sharing it) responsive.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time
from datetime import UTC, datetime

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, Response

from chatgorithm.api.deps import get_service
from chatgorithm.api.schemas import (
    AccountInfo,
    AppointmentCreate,
    AppointmentOut,
    AppointmentUpdate,
    BotConfig,
    CompanyAuthRequest,
    CompanyAuthResponse,
    HealthResponse,
    ScheduleConfigIn,
    SuccessResponse,
    TemplateCreate,
    TemplateOut,
    TemplateSendRequest,
)
from chatgorithm.config import DEFAULT_BACKEND_URL
from chatgorithm.phone import clean_number
from chatgorithm.prompts import DEFAULT_SYSTEM_PROMPT
from chatgorithm.services.airtable_store import (
    SETTING_SCHEDULE,
    SETTING_SYSTEM_PROMPT,
    AirtableStoreError,
    decode_json_field,
)
from chatgorithm.services.analytics import compute_analytics
from chatgorithm.services.scheduling import STATUS_AVAILABLE, run_schedule_maintenance
from chatgorithm.services.templates import build_template_payload
from chatgorithm.services.whatsapp_client import WhatsAppAPIError

logger = logging.getLogger(__name__)

router = APIRouter()


def _internal_error(request: Request, what: str) -> HTTPException:
    """Log the traceback server-side and build a generic 500."""
    logger.exception("[%s] %s", getattr(request.state, "request_id", "?"), what)
    return HTTPException(status_code=500, detail="An internal error occurred. Please try again.")


# ── Service info ─────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.get("/accounts", response_model=list[AccountInfo])
async def list_accounts(request: Request):
    """Business lines configured for this tenant."""
    whatsapp = get_service(request, "whatsapp")
    return [AccountInfo(id=line, name=f"Línea {line[-4:]}") for line in whatsapp.accounts()]


@router.post("/company-auth", response_model=CompanyAuthResponse)
async def company_auth(payload: CompanyAuthRequest, request: Request):
    """Tenant login: returns the backend the client should talk to."""
    if not payload.companyId or not payload.password:
        raise HTTPException(status_code=400, detail="Faltan credenciales")

    store = get_service(request, "store")
    try:
        company = await asyncio.to_thread(store.find_company, payload.companyId)
    except AirtableStoreError as e:
        raise _internal_error(request, "Company lookup failed") from e

    if company is None:
        logger.info("Company login rejected, unknown company %s", payload.companyId)
        raise HTTPException(status_code=401, detail="Empresa no encontrada")

    fields = company["fields"]
    stored = str(fields.get("Password") or "")
    if not secrets.compare_digest(stored.encode(), payload.password.encode()):
        logger.info("Company login rejected, wrong password for %s", payload.companyId)
        raise HTTPException(status_code=401, detail="Contraseña incorrecta")

    logger.info("Company login accepted for %s", payload.companyId)
    return CompanyAuthResponse(
        companyId=payload.companyId,
        companyName=fields.get("CompanyName") or payload.companyId,
        backendUrl=fields.get("BackendUrl") or DEFAULT_BACKEND_URL,
    )


# ── Agenda ───────────────────────────────────────────────────────────


@router.get("/appointments", response_model=list[AppointmentOut])
async def list_appointments(request: Request):
    store = get_service(request, "store")
    try:
        records = await asyncio.to_thread(store.list_appointments)
    except AirtableStoreError as e:
        raise _internal_error(request, "Listing appointments failed") from e
    return [
        AppointmentOut(
            id=r["id"],
            date=r["fields"].get("Date"),
            status=r["fields"].get("Status"),
            clientPhone=r["fields"].get("ClientPhone"),
            clientName=r["fields"].get("ClientName"),
        )
        for r in records
    ]


@router.post("/appointments", response_model=SuccessResponse)
async def create_appointment(payload: AppointmentCreate, request: Request):
    store = get_service(request, "store")
    try:
        await asyncio.to_thread(
            store.create_appointment, {"Date": payload.date, "Status": STATUS_AVAILABLE},
        )
    except AirtableStoreError as e:
        logger.warning("Creating appointment failed: %s", e)
        raise HTTPException(status_code=400, detail="Error creating") from e
    return SuccessResponse()


@router.put("/appointments/{record_id}", response_model=SuccessResponse)
async def update_appointment(record_id: str, payload: AppointmentUpdate, request: Request):
    store = get_service(request, "store")
    fields = {}
    if payload.status:
        fields["Status"] = payload.status
    if payload.clientPhone is not None:
        fields["ClientPhone"] = payload.clientPhone
    if payload.clientName is not None:
        fields["ClientName"] = payload.clientName
    try:
        await asyncio.to_thread(store.update_appointment, record_id, fields)
    except AirtableStoreError as e:
        logger.warning("Updating appointment %s failed: %s", record_id, e)
        raise HTTPException(status_code=400, detail="Error updating") from e
    return SuccessResponse()


@router.delete("/appointments/{record_id}", response_model=SuccessResponse)
async def delete_appointment(record_id: str, request: Request):
    store = get_service(request, "store")
    try:
        await asyncio.to_thread(store.delete_appointments, [record_id])
    except AirtableStoreError as e:
        logger.warning("Deleting appointment %s failed: %s", record_id, e)
        raise HTTPException(status_code=400, detail="Error deleting") from e
    return SuccessResponse()


@router.get("/schedule")
async def get_schedule(request: Request):
    """The stored weekly schedule, or ``null`` when none is configured."""
    store = get_service(request, "store")
    try:
        raw = await asyncio.to_thread(store.get_setting, SETTING_SCHEDULE)
    except AirtableStoreError as e:
        raise _internal_error(request, "Reading schedule failed") from e
    return decode_json_field(raw, None)


def _run_maintenance(store) -> None:
    try:
        run_schedule_maintenance(store)
    except (AirtableStoreError, ValueError):
        logger.exception("Schedule maintenance after config change failed")


@router.post("/schedule", response_model=SuccessResponse)
async def save_schedule(payload: ScheduleConfigIn, request: Request, background_tasks: BackgroundTasks):
    """Store the schedule and regenerate free slots in the background."""
    store = get_service(request, "store")
    try:
        await asyncio.to_thread(store.put_setting, SETTING_SCHEDULE, json.dumps(payload.model_dump()))
    except AirtableStoreError as e:
        raise _internal_error(request, "Saving schedule failed") from e
    background_tasks.add_task(_run_maintenance, store)
    return SuccessResponse()


# ── Templates ────────────────────────────────────────────────────────


@router.get("/templates", response_model=list[TemplateOut])
async def list_templates(request: Request):
    store = get_service(request, "store")
    try:
        records = await asyncio.to_thread(store.list_templates)
    except AirtableStoreError as e:
        raise _internal_error(request, "Listing templates failed") from e
    return [
        TemplateOut(
            id=r["id"],
            name=r["fields"].get("Name"),
            status=r["fields"].get("Status"),
            body=r["fields"].get("Body"),
            variableMapping=decode_json_field(r["fields"].get("VariableMapping"), {}) or {},
        )
        for r in records
    ]


@router.post("/create-template")
async def create_template(payload: TemplateCreate, request: Request):
    """Submit a template to Meta (when a business id is set) and record it."""
    store = get_service(request, "store")
    whatsapp = get_service(request, "whatsapp")

    meta_payload = build_template_payload(
        payload.name, payload.category, payload.language,
        payload.body, payload.footer, payload.variableExamples,
    )
    meta_id, status = f"meta_{int(time.time() * 1000)}", "PENDING"

    if whatsapp.business_id:
        try:
            created = await asyncio.to_thread(whatsapp.create_message_template, meta_payload)
        except WhatsAppAPIError as e:
            logger.warning("Meta rejected template %s: %s", meta_payload["name"], e)
            reason = e.user_message or "Error desconocido de Meta"
            raise HTTPException(status_code=400, detail=f"Meta rechazó la plantilla: {reason}") from e
        meta_id = created.get("id", meta_id)
        status = created.get("status") or status

    try:
        record = await asyncio.to_thread(store.create_template, {
            "Name": meta_payload["name"],
            "Category": payload.category,
            "Language": payload.language,
            "Body": payload.body,
            "Footer": payload.footer or "",
            "Status": status,
            "MetaId": meta_id,
            "VariableMapping": json.dumps(payload.variableExamples or {}),
        })
    except AirtableStoreError as e:
        raise _internal_error(request, "Saving template failed") from e

    return {"success": True, "template": {"id": record["id"], "name": meta_payload["name"], "status": status}}


@router.delete("/delete-template/{record_id}", response_model=SuccessResponse)
async def delete_template(record_id: str, request: Request):
    store = get_service(request, "store")
    try:
        await asyncio.to_thread(store.delete_template, record_id)
    except AirtableStoreError as e:
        raise _internal_error(request, "Deleting template failed") from e
    return SuccessResponse()


@router.post("/send-template", response_model=SuccessResponse)
async def send_template(payload: TemplateSendRequest, request: Request):
    """Send an approved template and mirror it in the conversation."""
    whatsapp = get_service(request, "whatsapp")
    chat = get_service(request, "chat")
    origin = whatsapp.resolve_origin(payload.originPhoneId)
    to = clean_number(payload.phone)

    try:
        await asyncio.to_thread(
            whatsapp.send_template, origin, to, payload.templateName, payload.language, payload.variables,
        )
    except WhatsAppAPIError as e:
        logger.warning("Sending template %s to %s failed: %s", payload.templateName, to, e)
        raise HTTPException(status_code=400, detail="Error envío") from e

    await asyncio.to_thread(chat.save_and_emit_message, {
        "text": f"📝 [Plantilla] {payload.templateName}",
        "sender": payload.senderName or "Agente",
        "recipient": to,
        "type": "template",
        "origin_phone_id": origin,
    })
    return SuccessResponse()


# ── Dashboard, media and bot settings ────────────────────────────────


@router.get("/analytics")
async def analytics(request: Request):
    store = get_service(request, "store")
    try:
        contacts = await asyncio.to_thread(store.list_contacts)
        messages = await asyncio.to_thread(store.list_messages)
    except AirtableStoreError as e:
        raise _internal_error(request, "Computing analytics failed") from e
    return compute_analytics(contacts, messages, datetime.now(UTC).date())


@router.get("/media/{media_id}")
async def media(media_id: str, request: Request):
    """Proxy a WhatsApp media file (the Graph URL needs the access token)."""
    whatsapp = get_service(request, "whatsapp")
    try:
        content, content_type = await asyncio.to_thread(whatsapp.download_media, media_id)
    except (WhatsAppAPIError, KeyError) as e:
        logger.warning("Media %s unavailable: %s", media_id, e)
        raise HTTPException(status_code=404, detail="Media not found") from e
    return Response(content=content, media_type=content_type)


@router.get("/bot-config")
async def get_bot_config(request: Request):
    store = get_service(request, "store")
    try:
        prompt = await asyncio.to_thread(store.get_setting, SETTING_SYSTEM_PROMPT)
    except AirtableStoreError as e:
        raise _internal_error(request, "Reading bot config failed") from e
    return {"prompt": prompt or DEFAULT_SYSTEM_PROMPT}


@router.post("/bot-config", response_model=SuccessResponse)
async def save_bot_config(payload: BotConfig, request: Request):
    store = get_service(request, "store")
    try:
        await asyncio.to_thread(store.put_setting, SETTING_SYSTEM_PROMPT, payload.prompt)
    except AirtableStoreError as e:
        raise _internal_error(request, "Saving bot config failed") from e
    return SuccessResponse()
