"""Chatgorithm: a multi-tenant WhatsApp inbox with a booking assistant.

Architecture Overview
=====================

Agents work from a web/mobile client connected over **Socket.IO** and REST.
The server bridges three external systems:

1. **WhatsApp Cloud API**: inbound webhooks and outbound text, interactive
   list and template messages, one access token per business line.
2. **Gemini** via LangGraph: "Laura", a booking assistant that answers new
   leads, walks them through a two-step booking (day, then hour, then option
   number) and hands the chat to a human department when needed.
3. **Airtable**: contacts, messages, the agenda, templates, agents and
   settings.

Key Design Decisions
--------------------
- **Real-time first**: messages are broadcast before they are persisted.
- **Deterministic shortcut**: a bare option number with a pending list books
  directly, without an LLM round-trip to decide it.
- **Option maps survive restarts**: mirrored to the contact's
  ``appointment_cache`` column.
- **Phone matching**: digits only, suffix match with a 7-digit minimum, so
  ``+34 600 11 22 33`` and ``600112233`` are the same customer.
- **Resilience**: HTTP clients retry timeouts and 5xx with exponential
  backoff; the assistant retries Gemini overloads.

Package Structure
-----------------
- ``chatgorithm/agent.py``: LangGraph StateGraph definition
- ``chatgorithm/config.py``: configuration from env vars / SSM
- ``chatgorithm/phone.py``: phone normalisation and message matching
- ``chatgorithm/prompts.py``: the assistant's system prompt
- ``chatgorithm/server.py``: FastAPI + Socket.IO ASGI application
- ``chatgorithm/services/``: Airtable, WhatsApp, chat, booking, assistant
- ``chatgorithm/tools/``: LangChain booking tools
- ``chatgorithm/api/``: REST routes, webhook, Socket.IO handlers, schemas
"""
