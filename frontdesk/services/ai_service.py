import json
import re
from typing import Iterable, List, Optional

import httpx

from frontdesk.config import BotPersona, settings
from frontdesk.logging_config import get_logger
from frontdesk.schemas.conversation import Turn, TurnRole
from frontdesk.services.llm import LLMProvider
from frontdesk.services.result import AI_ERROR, Result

logger = get_logger("ai_service")

REPLY_MODEL = settings.openai_model
FAST_MODEL = settings.fast_model
LLM_TIMEOUT_SECONDS = settings.llm_timeout_seconds
CLASSIFY_TIMEOUT_SECONDS = settings.classify_timeout_seconds
LLM_MAX_TOKENS = settings.llm_max_tokens
LLM_HISTORY_TURNS = settings.llm_history_turns

GREETING_PHRASES = {
    "привет",
    "здравствуйте",
    "здравствуй",
    "добрый день",
    "добрый вечер",
    "доброе утро",
    "салам",
    "салам алейкум",
    "ассаламу алейкум",
}

THANKS_PHRASES = {
    "спасибо",
    "благодарю",
    "спасибо большое",
    "большое спасибо",
    "спасибо вам",
    "спс",
}

ACKNOWLEDGEMENT_PHRASES = {
    "ок",
    "окей",
    "ok",
    "ага",
    "угу",
    "понял",
    "поняла",
    "понятно",
    "ясно",
    "хорошо",
}

SUMMARIZATION_PROMPT = (
    "Кратко перескажи ключевые факты, имена, адреса, номера квартир и намерения жителя "
    "из этого разговора. Этот пересказ будет твоей единственной памятью о прошлом. "
    "Пиши сжато и информативно, без вступлений."
)

SPEAKER_LABELS = {
    TurnRole.USER: "Житель",
    TurnRole.ASSISTANT: "Бот",
    TurnRole.SYSTEM: "Система",
}

OPERATOR_PREFIX = "[Оператор] "


def normalize_for_matching(text: str) -> str:
    """Normalize text for matching short phrases (casefold + trim punctuation)."""
    if not text:
        return ""

    normalized = text.strip().casefold().replace("ё", "е")
    normalized = re.sub(r"\s+", " ", normalized)
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized


def is_greeting_message(text: str) -> bool:
    return normalize_for_matching(text) in GREETING_PHRASES


def is_thanks_message(text: str) -> bool:
    normalized = normalize_for_matching(text)
    if normalized in THANKS_PHRASES:
        return True
    return normalized.startswith("спасибо") and len(normalized.split()) <= 4


def is_acknowledgement_message(text: str) -> bool:
    return normalize_for_matching(text) in ACKNOWLEDGEMENT_PHRASES


def is_small_talk(text: str) -> bool:
    """Greeting, gratitude or a bare acknowledgement: never a request."""
    return is_greeting_message(text) or is_thanks_message(text) or is_acknowledgement_message(text)


def parse_json_object(content: Optional[str]) -> Optional[dict]:
    """Pull the first JSON object out of an LLM answer, tolerating code fences."""
    if not content:
        return None
    cleaned = content.strip()
    cleaned = re.sub(r"^```(?:json)?\s*|\s*```$", "", cleaned)
    try:
        payload = json.loads(cleaned)
    except (TypeError, ValueError):
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not match:
            return None
        try:
            payload = json.loads(match.group(0))
        except (TypeError, ValueError):
            return None
    return payload if isinstance(payload, dict) else None


def _tail(turns: Iterable[Turn], limit: int) -> List[Turn]:
    """Last ``limit`` turns, keeping the latest summary turn in front of them."""
    turns = list(turns)
    if limit and len(turns) > limit:
        head = [turn for turn in turns[:-limit] if turn.summary]
        return head[-1:] + turns[-limit:]
    return turns


def history_to_messages(turns: Iterable[Turn], limit: int = LLM_HISTORY_TURNS) -> List[dict]:
    """Convert stored turns to chat messages for the LLM.

    Operator turns stay assistant-side but are labelled, so the model
    treats them as continuity rather than as its own words.
    """
    messages = []
    for turn in _tail(turns, limit):
        content = turn.content
        if turn.is_operator:
            content = f"{OPERATOR_PREFIX}{content}"
        messages.append({"role": turn.role.value, "content": content})
    return messages


def render_transcript(turns: Iterable[Turn], limit: int = LLM_HISTORY_TURNS) -> str:
    """Plain-text transcript used inside classification prompts."""
    lines = []
    for turn in _tail(turns, limit):
        label = "Оператор" if turn.is_operator else SPEAKER_LABELS[turn.role]
        lines.append(f"{label}: {turn.content}")
    return "\n".join(lines)


async def generate_reply(
    llm: LLMProvider,
    persona: BotPersona,
    turns: List[Turn],
    *,
    hint: Optional[str] = None,
) -> Result[str]:
    """Conversational answer from the persona. Fails softly with ai_error."""
    system_prompt = persona.system_prompt
    if hint:
        system_prompt = f"{system_prompt}\n\n{hint}"
    messages = [{"role": "system", "content": system_prompt}] + history_to_messages(turns)

    try:
        response = await llm.generate(
            messages,
            purpose="reply",
            model=REPLY_MODEL,
            temperature=0.5,
            max_tokens=LLM_MAX_TOKENS,
            timeout_seconds=LLM_TIMEOUT_SECONDS,
        )
    except httpx.TimeoutException as exc:
        logger.warning(f"Reply LLM timeout after {LLM_TIMEOUT_SECONDS}s: {exc}")
        return Result.failure("LLM timeout", AI_ERROR)
    except Exception as exc:
        logger.error(f"Reply generation failed: {exc}")
        return Result.from_exception(exc, AI_ERROR)

    content = (response.content or "").strip()
    if not content:
        return Result.failure("Empty LLM response", AI_ERROR)
    return Result.success(content)


async def summarize_turns(llm: LLMProvider, turns: List[Turn]) -> str:
    """Condense turns into one paragraph. Raises on failure so callers keep the history."""
    messages = history_to_messages(turns, limit=0)
    messages.append({"role": "user", "content": SUMMARIZATION_PROMPT})
    response = await llm.generate(
        messages,
        purpose="summary",
        model=REPLY_MODEL,
        temperature=0.2,
        max_tokens=LLM_MAX_TOKENS,
        timeout_seconds=LLM_TIMEOUT_SECONDS,
    )
    summary = (response.content or "").strip()
    if not summary:
        raise ValueError("Received empty summary from LLM")
    return summary


async def ask_json(llm: LLMProvider, purpose: str, prompt: str, max_tokens: int = 200) -> Optional[dict]:
    """One classification/extraction call. Returns the parsed JSON object or None on any failure."""
    try:
        response = await llm.generate(
            [{"role": "user", "content": prompt}],
            purpose=purpose,
            model=FAST_MODEL,
            temperature=0.0,
            max_tokens=max_tokens,
            timeout_seconds=CLASSIFY_TIMEOUT_SECONDS,
            json_output=True,
        )
    except httpx.TimeoutException as exc:
        logger.warning(f"{purpose} LLM timeout after {CLASSIFY_TIMEOUT_SECONDS}s: {exc}")
        return None
    except Exception as exc:
        logger.error(f"{purpose} LLM call failed: {exc}")
        return None

    payload = parse_json_object(response.content)
    if payload is None:
        logger.warning(
            "Malformed LLM JSON output",
            extra={"context": {"purpose": purpose, "content": (response.content or "")[:200]}},
        )
    return payload
