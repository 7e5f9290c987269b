import logging
import time
import uuid
from typing import Any

import httpx

from ..config import settings

logger = logging.getLogger(__name__)

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"

HELP_TEXT = (
    "I can help you schedule, reschedule, or cancel appointments, register as a "
    "new patient, or answer questions about our practice. How can I help you today?"
)

PRACTICE_INFO = {
    "insurance": (
        "We accept all major dental insurance plans, including:\n"
        "Delta Dental\nCigna\nAetna\nMetLife\nUnited Healthcare\nGuardian\n"
        "BlueCross BlueShield\n\n"
        "For specific coverage details, please have your insurance card ready when you visit."
    ),
    "self_pay": (
        "For patients without insurance, we offer several options:\n"
        "Flexible payment plans available\n"
        "Membership plans for regular preventive care\n"
        "Cash, credit cards, and HSA/FSA accepted\n"
        "CareCredit financing available\n\n"
        "Our membership plan includes:\n"
        "Two cleanings per year included\nX-rays included\n"
        "Discounts on additional treatments\nNo waiting periods\nNo annual maximums"
    ),
    "payment": (
        "We offer flexible payment options:\n"
        "• All major credit cards accepted\n"
        "• CareCredit financing available\n"
        "• Payment plans for major procedures\n"
        "• HSA/FSA accounts accepted\n\n"
        "For patients without insurance, we also offer an affordable membership plan."
    ),
    "hours": (
        "Our office hours are:\n"
        "Monday-Saturday: 8:00 AM - 6:00 PM\n"
        "Sunday: Closed\n\n"
        "We also accommodate emergency appointments during business hours."
    ),
    "location": (
        "We are located at:\n"
        "123 Dental Way, Suite 100\n"
        "Dentalville, ST 12345\n\n"
        "Free parking available\n"
        "Wheelchair accessible"
    ),
}

# Checked in order; the first topic with a matching keyword answers.
INQUIRY_KEYWORDS = [
    ("insurance", ("insurance", "coverage", "covered", "plan", "provider")),
    ("self_pay", ("no insurance", "without insurance", "self pay", "self-pay", "membership")),
    ("payment", ("payment", "pay", "cost", "price", "fee", "cash", "credit", "finance")),
    ("hours", ("hours", "open", "close", "time", "schedule", "when")),
    ("location", ("where", "location", "address", "directions", "parking")),
]


def practice_answer(message: str) -> str | None:
    lowered = message.lower()
    for topic, keywords in INQUIRY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return PRACTICE_INFO[topic]
    return None


def build_system_prompt(hints: dict[str, Any]) -> str:
    if hints.get("authenticated"):
        audience = f"You are talking to {hints.get('patient_name') or 'a patient'}"
        if hints.get("has_family_members"):
            audience += " who has family members registered with us"
        audience += "."
    else:
        audience = "You are talking to a new patient."

    if hints.get("has_family_members"):
        family = (
            "- Patient has registered family members\n"
            "- Can schedule back-to-back appointments for family\n"
            "- Actively suggest family scheduling when appropriate"
        )
    else:
        family = (
            "- No family members registered yet\n"
            "- Suggest adding family members when family-related keywords are used"
        )

    state = []
    if hints.get("is_verified"):
        state.append("- The patient has already verified their identity")
    if hints.get("has_appointments"):
        state.append("- The patient has upcoming appointments")
    if hints.get("is_rescheduling"):
        state.append("- The patient is in the middle of rescheduling")

    return (
        f"You are a dental practice assistant chatbot. {audience}\n\n"
        "Practice Information:\n"
        "- Hours: Monday-Saturday, 8am-6pm\n"
        "- Services: Cleanings, General Checkups, Emergency Care\n"
        "- Insurance: Accepts all major dental insurance plans\n\n"
        "Important rules:\n"
        "- When verifying patient identity, ask for the information in this exact format:\n"
        "  [Full Name], [10-digit phone], [YYYY-MM-DD]\n"
        '- Example: "John Smith, 1234567890, 1990-01-01"\n'
        "- For emergencies, express urgency and care\n"
        "- Guide new patients through registration\n"
        "- For appointment cancellations, always ask for verification first\n"
        "- Be concise but thorough\n\n"
        f"Family Booking Context:\n{family}\n"
        + ("\n".join(state) + "\n" if state else "")
    )


def _anthropic_messages(history: list[dict[str, str]]) -> list[dict[str, str]]:
    messages = [
        {"role": "assistant" if item["role"] == "assistant" else "user", "content": item["content"]}
        for item in history
        if item.get("content")
    ]
    # The Messages API expects the conversation to open with a user turn.
    while messages and messages[0]["role"] == "assistant":
        messages.pop(0)
    return messages


async def generate_reply(history: list[dict[str, str]], hints: dict[str, Any]) -> str:
    """Free-form reply for messages the router could not place.

    Raises ``httpx.HTTPError`` when the model call fails or its body is not a
    Messages API reply; never retries.
    """
    request_id = uuid.uuid4().hex
    start = time.perf_counter()
    fallback = None
    try:
        last = history[-1] if history else None
        if last and last["role"] == "user":
            answer = practice_answer(last["content"])
            if answer:
                fallback = "practice_info"
                return answer

        messages = _anthropic_messages(history)
        if not settings.anthropic_api_key or not messages:
            fallback = "missing_api_key" if messages else "empty_history"
            return HELP_TEXT

        payload = {
            "model": settings.anthropic_model,
            "max_tokens": 250,
            "temperature": 0.7,
            "system": build_system_prompt(hints),
            "messages": messages,
        }
        headers = {
            "x-api-key": settings.anthropic_api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

        async with httpx.AsyncClient(timeout=15) as client:
            response = await client.post(ANTHROPIC_URL, json=payload, headers=headers)
            response.raise_for_status()
            try:
                data = response.json()
            except ValueError as exc:
                raise httpx.DecodingError("Model reply was not JSON", request=response.request) from exc

        if not isinstance(data, dict) or not isinstance(data.get("content", []), list):
            raise httpx.DecodingError("Model reply had no content list", request=response.request)
        text = "".join(
            part.get("text", "")
            for part in data.get("content", [])
            if isinstance(part, dict) and part.get("type") == "text"
        ).strip()
        if not text:
            fallback = "empty_reply"
            return HELP_TEXT
        return text
    finally:
        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "assistant_reply request_id=%s latency_ms=%s fallback=%s",
            request_id,
            latency_ms,
            fallback,
        )
