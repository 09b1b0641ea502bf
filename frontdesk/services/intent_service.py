import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from frontdesk.config import settings
from frontdesk.logging_config import get_logger
from frontdesk.schemas.conversation import Turn
from frontdesk.schemas.ticket import DedupRecord, RoutingCategory, TicketPayload
from frontdesk.services.ai_service import (
    ask_json,
    is_small_talk,
    normalize_for_matching,
    render_transcript,
)
from frontdesk.services.llm import LLMProvider

logger = get_logger("intent_service")

MAX_CLARIFYING_QUESTIONS = settings.max_clarifying_questions


class ConfirmationIntent(str, Enum):
    CONFIRM = "confirm"
    DENY = "deny"
    NEITHER = "neither"


@dataclass
class CompletenessResult:
    complete: bool
    questions: List[str] = field(default_factory=list)
    full_name: Optional[str] = None


NAME_QUESTION = "Подскажите, пожалуйста, ваши фамилию и имя полностью."
GENERIC_CLARIFY_QUESTION = "Уточните, пожалуйста, ваши ФИО, адрес с номером квартиры и суть проблемы."

ROUTING_PROMPT = """Ты диспетчер управляющей компании. По переписке с жителем определи, нужна ли заявка и куда её направить.
Категории:
- general — ремонт, аварии, протечки, электричество, лифт, уборка, обслуживание дома
- accounting — начисления, оплата, квитанции, перерасчёт, лицевой счёт
- admin — жалобы на сотрудников, документы, справки, вопросы к руководству
- none — приветствие, благодарность, болтовня, уточняющие вопросы, справочная информация

Если житель только благодарит, здоровается или пишет не по делу — none.

Переписка:
{transcript}

Верни JSON: {{"category": "general|accounting|admin|none"}}"""

COMPLETENESS_PROMPT = """Проверь, хватает ли данных для заявки категории «{category}».
Обязательно нужны:
- ФИО жителя: и фамилия, и имя (одно имя не подходит)
- адрес: улица, дом и квартира
- суть проблемы или вопроса
{known}
Переписка:
{transcript}

Верни JSON: {{"complete": true|false, "full_name": "ФИО или null", "questions": ["короткий уточняющий вопрос", ...]}}
Не больше {max_questions} вопросов. Если всё есть — questions пустой."""

CONFIRMATION_PROMPT = """Житель отвечает на вопрос «Всё верно, оформляем заявку?».
Ответ жителя: «{message}»

Правила:
- согласие без оговорок (да, верно, всё так, да конечно) — confirm
- отказ или исправление (нет, не так, неверный адрес) — deny
- согласие с оговоркой или исключением («да, но квартира 12», «верно, кроме телефона») — deny
- всё остальное (другой вопрос, другая тема) — neither

Верни JSON: {{"intent": "confirm|deny|neither"}}"""

TOPIC_CHANGE_PROMPT = """Жителю предложили подтвердить заявку:
{summary}

Житель ответил: «{message}»

Ответ — это смена темы, отмахивание или сообщение не про эту заявку?
Верни JSON: {{"topic_change": true|false}}"""

INSIST_PROMPT = """Похожая заявка от жителя уже в работе. Житель пишет:
«{message}»

Житель явно настаивает на НОВОЙ, отдельной заявке (например, «это другая проблема», «создайте ещё одну»)?
Верни JSON: {{"insist": true|false}}"""

SEMANTIC_DUPLICATE_PROMPT = """Новая заявка:
адрес: {address}
проблема: {issue}

Недавние заявки этого жителя:
{recent}

Новая заявка описывает ту же самую проблему по тому же адресу, что одна из недавних?
Верни JSON: {{"duplicate": true|false}}"""

CONFIRM_EXACT = {
    "да",
    "ага",
    "верно",
    "все верно",
    "да верно",
    "да все верно",
    "да все так",
    "все так",
    "правильно",
    "подтверждаю",
    "оформляйте",
    "да оформляйте",
    "конечно",
    "да конечно",
    "ок",
    "ok",
    "хорошо",
}

DENY_EXACT = {
    "нет",
    "не",
    "неверно",
    "не верно",
    "не так",
    "нет не так",
    "отмена",
    "отменить",
    "не надо",
    "не нужно",
}

CONFIRM_KEYWORDS = {"да", "верно", "правильно", "подтверждаю", "оформляйте", "согласен", "согласна"}
DENY_KEYWORDS = {"нет", "неверно", "неправильно", "отмена", "отменить", "отменяю"}
CONTRADICTION_MARKERS = {"но", "кроме", "только", "однако", "исправьте", "поменяйте"}

DISMISSIVE_PHRASES = [
    "не важно",
    "неважно",
    "забудь",
    "забудьте",
    "потом",
    "не сейчас",
    "другой вопрос",
]

INSIST_PHRASES = [
    "новую заявку",
    "еще одну заявку",
    "другая проблема",
    "другую заявку",
    "отдельную заявку",
    "это другое",
]


def _words(text: str) -> List[str]:
    normalized = normalize_for_matching(text)
    return re.sub(r"[^\w\s/]", " ", normalized).split()


def _flat(text: str) -> str:
    return " ".join(_words(text))


def _has_phrase(flat: str, phrases: Sequence[str]) -> bool:
    padded = f" {flat} "
    return any(f" {phrase} " in padded for phrase in phrases)


def _as_bool(value) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    return None


def has_full_name(name: Optional[str]) -> bool:
    """Given name and family name: at least two alphabetic words."""
    if not name:
        return False
    words = [word for word in re.split(r"[\s,]+", name.strip()) if re.fullmatch(r"[^\W\d_]+(?:-[^\W\d_]+)*\.?", word)]
    return len(words) >= 2


async def classify_routing(llm: LLMProvider, turns: Sequence[Turn], latest_text: str = "") -> RoutingCategory:
    """Route the conversation to a ticket category, or NONE. Fails safe to NONE."""
    if latest_text and is_small_talk(latest_text):
        return RoutingCategory.NONE

    payload = await ask_json(llm, "routing", ROUTING_PROMPT.format(transcript=render_transcript(turns)))
    if payload is None:
        return RoutingCategory.NONE

    raw = str(payload.get("category", "")).strip().lower()
    try:
        category = RoutingCategory(raw)
    except ValueError:
        logger.warning(f"Unknown routing category from LLM: {raw!r}")
        return RoutingCategory.NONE
    logger.info("Routing classified", extra={"context": {"category": category.value}})
    return category


def known_details(full_name: Optional[str] = None, address: Optional[str] = None) -> str:
    """Prompt lines for resident details already confirmed by the directory."""
    lines = []
    if has_full_name(full_name):
        lines.append(f"ФИО жителя уже известно: {full_name}.")
    if address:
        lines.append(f"Адрес жителя уже известен: {address}.")
    if not lines:
        return ""
    return "\n" + "\n".join(lines) + "\n"


def _questions(raw) -> List[str]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    return [str(q).strip() for q in raw if isinstance(q, (str, int, float)) and str(q).strip()]


async def check_completeness(
    llm: LLMProvider,
    category: RoutingCategory,
    turns: Sequence[Turn],
    known_full_name: Optional[str] = None,
    known_address: Optional[str] = None,
) -> CompletenessResult:
    """Are the mandatory ticket fields present? Full name is enforced locally."""
    prompt = COMPLETENESS_PROMPT.format(
        category=category.value,
        known=known_details(known_full_name, known_address),
        transcript=render_transcript(turns),
        max_questions=MAX_CLARIFYING_QUESTIONS,
    )
    payload = await ask_json(llm, "completeness", prompt, max_tokens=300)
    if payload is None:
        return CompletenessResult(complete=False, questions=[GENERIC_CLARIFY_QUESTION])

    complete = _as_bool(payload.get("complete")) is True
    full_name = payload.get("full_name")
    full_name = full_name.strip() if isinstance(full_name, str) and full_name.strip().lower() != "null" else None
    if not has_full_name(full_name) and has_full_name(known_full_name):
        full_name = known_full_name

    questions = _questions(payload.get("questions"))
    if not has_full_name(full_name):
        complete = False
        if not any("фамил" in q.lower() or "фио" in q.lower() for q in questions):
            questions.insert(0, NAME_QUESTION)
    if not complete and not questions:
        questions = [GENERIC_CLARIFY_QUESTION]
    if complete:
        questions = []

    return CompletenessResult(
        complete=complete,
        questions=questions[:MAX_CLARIFYING_QUESTIONS],
        full_name=full_name if has_full_name(full_name) else None,
    )


def classify_confirmation_by_keywords(message: str) -> ConfirmationIntent:
    words = _words(message)
    if not words:
        return ConfirmationIntent.NEITHER
    flat = " ".join(words)
    if flat in DENY_EXACT or any(word in DENY_KEYWORDS for word in words):
        return ConfirmationIntent.DENY
    if any(word in CONFIRM_KEYWORDS for word in words) or flat in CONFIRM_EXACT:
        if any(word in CONTRADICTION_MARKERS for word in words):
            return ConfirmationIntent.DENY
        return ConfirmationIntent.CONFIRM
    return ConfirmationIntent.NEITHER


async def classify_confirmation(llm: LLMProvider, message: str) -> ConfirmationIntent:
    """Yes/no/neither for a reply to the confirmation prompt."""
    flat = _flat(message)
    if flat in CONFIRM_EXACT:
        return ConfirmationIntent.CONFIRM
    if flat in DENY_EXACT:
        return ConfirmationIntent.DENY

    payload = await ask_json(llm, "confirmation", CONFIRMATION_PROMPT.format(message=message))
    if payload is not None:
        raw = str(payload.get("intent", "")).strip().lower()
        try:
            return ConfirmationIntent(raw)
        except ValueError:
            logger.warning(f"Unknown confirmation intent from LLM: {raw!r}")

    return classify_confirmation_by_keywords(message)


async def is_topic_change(llm: LLMProvider, payload: TicketPayload, message: str) -> bool:
    summary = f"адрес: {payload.address}; проблема: {payload.issue}"
    result = await ask_json(llm, "topic_change", TOPIC_CHANGE_PROMPT.format(summary=summary, message=message))
    if result is not None:
        flag = _as_bool(result.get("topic_change"))
        if flag is not None:
            return flag
    flat = _flat(message)
    return _has_phrase(flat, DISMISSIVE_PHRASES)


async def insists_on_new_request(llm: LLMProvider, message: str) -> bool:
    """Does the resident explicitly want a separate ticket despite a duplicate?"""
    flat = _flat(message)
    if _has_phrase(flat, INSIST_PHRASES):
        return True
    result = await ask_json(llm, "insist", INSIST_PROMPT.format(message=message))
    if result is None:
        return False
    return _as_bool(result.get("insist")) is True


async def is_semantic_duplicate(llm: LLMProvider, payload: TicketPayload, recent: Sequence[DedupRecord]) -> bool:
    if not recent:
        return False
    listing = "\n".join(
        f"- {record.ticket_id}: {json.dumps({'address': record.normalized_address, 'issue': record.issue}, ensure_ascii=False)}"
        for record in recent
    )
    prompt = SEMANTIC_DUPLICATE_PROMPT.format(address=payload.address, issue=payload.issue, recent=listing)
    result = await ask_json(llm, "semantic_duplicate", prompt)
    if result is None:
        return False
    return _as_bool(result.get("duplicate")) is True
