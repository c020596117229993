"""LangGraph booking assistant for Chatgorithm.

Architecture:
  A StateGraph with four nodes:

    1. **router**      deterministic, no LLM: spots a bare option number
                       ("3", "opción 2", "la 1") while the customer has a
                       numbered list pending
    2. **quick_book**  emits a synthetic ``book_appointment`` tool call
    3. **chatbot**     Gemini with the five booking tools bound
    4. **tools**       executes the requested tool calls

  Routing:
    router → (option number + pending list?) → quick_book → tools → chatbot
    router → (anything else)                 → chatbot → (tool calls?) → tools → chatbot (loop)
                                                       → (no tool calls?) → END

  Context:
    There is no checkpointer.  Each turn is invoked with the conversation
    history rebuilt from Airtable, and the per-conversation context goes in
    ``config["configurable"]``::

        graph.invoke(
            {"messages": history, "system_prompt": prompt, "intent": ""},
            config={"configurable": {
                "booking": booking_service,
                "phone": "34600111222",
                "origin_phone_id": "1029384756",
                "contact_name": "Ana",
            }},
        )
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Annotated

from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig
from langchain_google_genai import ChatGoogleGenerativeAI, HarmBlockThreshold, HarmCategory
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from langgraph.prebuilt import ToolNode
from typing_extensions import TypedDict

from chatgorithm.config import GEMINI_API_KEY, MODEL_NAME
from chatgorithm.prompts import get_system_prompt
from chatgorithm.services.metrics import metrics
from chatgorithm.tools.booking import BOOKING_TOOLS

logger = logging.getLogger(__name__)

INTENT_QUICK_BOOK = "quick_book"
INTENT_CHAT = "chat"

# "3", "opción 2", "la 1", "Opcion 4.", "número 10"
_OPTION_CHOICE_RE = re.compile(
    r"^\s*(?:la\s+|el\s+)?(?:opci[oó]n\s*|n[uú]mero\s*)?#?(\d{1,2})\s*[.!]?\s*$",
    re.IGNORECASE,
)


# ── State schema ─────────────────────────────────────────────────────


class AgentState(TypedDict):
    """The state that flows through the graph.

    ``messages`` uses the ``add_messages`` reducer so each node appends.
    ``system_prompt`` is resolved once per turn by the caller.
    ``intent`` is written by the router and read by its conditional edge.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    system_prompt: str
    intent: str


# ── LLM builder ──────────────────────────────────────────────────────


def _build_llm():
    """Build the Gemini chat model with the booking tools bound."""
    llm = ChatGoogleGenerativeAI(
        model=MODEL_NAME,
        google_api_key=GEMINI_API_KEY,
        temperature=0.2,
        max_retries=1,  # overload retries are handled by the assistant
        safety_settings={
            HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_NONE,
            HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_NONE,
            HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_NONE,
            HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_NONE,
        },
    )
    return llm.bind_tools(BOOKING_TOOLS)


# ── Node: router (no LLM) ────────────────────────────────────────────


def detect_option_choice(text: str | None) -> int | None:
    """Return the option number when *text* is nothing but a list choice."""
    match = _OPTION_CHOICE_RE.match(text or "")
    if not match:
        return None
    number = int(match.group(1))
    return number or None


def _last_human_text(messages: list[AnyMessage]) -> str:
    for msg in reversed(messages):
        if isinstance(msg, HumanMessage):
            return msg.content if isinstance(msg.content, str) else ""
    return ""


def router_node(state: AgentState, config: RunnableConfig) -> dict:
    """Short-circuit bare option numbers straight to a booking."""
    ctx = config.get("configurable") or {}
    choice = detect_option_choice(_last_human_text(state["messages"]))
    booking = ctx.get("booking")

    if choice is not None and booking is not None and booking.has_pending_options(ctx.get("phone", "")):
        logger.info("Router: option %d picked by %s, booking directly", choice, ctx.get("phone"))
        return {"intent": INTENT_QUICK_BOOK}
    return {"intent": INTENT_CHAT}


# ── Node: quick_book ─────────────────────────────────────────────────


def quick_book_node(state: AgentState) -> dict:
    """Emit the ``book_appointment`` call the model would have made."""
    choice = detect_option_choice(_last_human_text(state["messages"]))
    call = AIMessage(
        content="",
        tool_calls=[{
            "name": "book_appointment",
            "args": {"option_index": choice},
            "id": f"quick_book_{uuid.uuid4().hex[:12]}",
            "type": "tool_call",
        }],
    )
    return {"messages": [call]}


# ── Node: chatbot (Gemini with tools) ────────────────────────────────


def _make_chatbot_node():
    """Create the chatbot node.

    The bound model is captured in the closure so the chatbot → tools →
    chatbot loop reuses one client.
    """
    llm_with_tools = _build_llm()

    def chatbot_node(state: AgentState) -> dict:
        logger.debug("chatbot node invoked, model: %s", MODEL_NAME)
        system = SystemMessage(content=state.get("system_prompt") or get_system_prompt())
        t0 = time.perf_counter()
        try:
            response = llm_with_tools.invoke([system] + state["messages"])
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_success("gemini", "llm_invoke", latency_ms=elapsed)
            logger.debug("chatbot responded in %.0fms", elapsed)
            return {"messages": [response]}
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "gemini", "llm_invoke",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise

    return chatbot_node


# ── Conditional edges ────────────────────────────────────────────────


def route_by_intent(state: AgentState) -> str:
    if state.get("intent") == INTENT_QUICK_BOOK:
        return "quick_book"
    return "chatbot"


def should_use_tools(state: AgentState) -> str:
    """Route to the tools node while the model keeps calling tools."""
    last_message = state["messages"][-1]
    if getattr(last_message, "tool_calls", None):
        return "tools"
    return END


# ── Graph assembly ───────────────────────────────────────────────────


def create_booking_agent():
    """Build and compile the booking assistant graph."""
    graph = StateGraph(AgentState)

    graph.add_node("router", router_node)
    graph.add_node("quick_book", quick_book_node)
    graph.add_node("chatbot", _make_chatbot_node())
    graph.add_node("tools", ToolNode(BOOKING_TOOLS))

    graph.set_entry_point("router")
    graph.add_conditional_edges(
        "router",
        route_by_intent,
        {"quick_book": "quick_book", "chatbot": "chatbot"},
    )
    graph.add_edge("quick_book", "tools")
    graph.add_conditional_edges(
        "chatbot", should_use_tools, {"tools": "tools", END: END},
    )
    graph.add_edge("tools", "chatbot")

    compiled = graph.compile()
    logger.debug("Booking agent compiled, model: %s, tools: %d", MODEL_NAME, len(BOOKING_TOOLS))
    return compiled
