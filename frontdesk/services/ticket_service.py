import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from frontdesk.config import BotPersona
from frontdesk.logging_config import conversation_logger, get_logger
from frontdesk.schemas.conversation import Turn, utcnow
from frontdesk.schemas.ticket import (
    CATEGORY_TITLES,
    DedupRecord,
    PendingTicketConfirmation,
    RoutingCategory,
    TicketPayload,
)
from frontdesk.services import alert_service, state_machine
from frontdesk.services.ai_service import ask_json, normalize_for_matching, render_transcript
from frontdesk.services.conversation_service import ConversationSession
from frontdesk.services.intent_service import (
    ConfirmationIntent,
    classify_confirmation,
    has_full_name,
    insists_on_new_request,
    is_semantic_duplicate,
    is_topic_change,
    known_details,
)
from frontdesk.services.llm import LLMProvider
from frontdesk.services.result import CONFIG_ERROR, DISPATCH_ERROR, Result
from frontdesk.services.state_machine import TicketState
from frontdesk.services.transport import phone_from_chat_id

logger = get_logger("ticket_service")

SendFunc = Callable[[str, str], Awaitable[bool]]

BUSINESS_DAYS = range(0, 5)
BUSINESS_START_HOUR = 9
BUSINESS_END_HOUR = 18
BUSINESS_TIMEZONE = ZoneInfo("Europe/Moscow")

ADDRESS_NOISE_WORDS = {
    "г",
    "город",
    "ул",
    "улица",
    "пр",
    "пр-т",
    "проспект",
    "д",
    "дом",
    "кв",
    "квартира",
}

EXTRACTION_PROMPT = """Собери заявку категории «{category}» из переписки с жителем.
Поля:
- full_name — ФИО жителя (фамилия и имя)
- address — адрес: улица, дом, квартира
- contact — телефон, если житель его назвал, иначе null
- issue — суть проблемы одной короткой фразой
- detail — подробности, если есть, иначе null
{known}
Переписка:
{transcript}

Верни JSON: {{"full_name": "...", "address": "...", "contact": null, "issue": "...", "detail": null}}"""

DUPLICATE_REPLY = (
    "Ваша заявка {ticket_id} по этому адресу уже в работе, специалисты с вами свяжутся. "
    "Если это другая проблема, напишите, пожалуйста, что нужна новая заявка."
)
DENY_REPLY = "Хорошо, заявку не отправляю. Подскажите, пожалуйста, что нужно исправить?"
DISPATCH_FAILED_REPLY = (
    "Извините, не получилось передать заявку специалистам из-за технической ошибки. "
    "Пожалуйста, позвоните диспетчеру по телефону {phone}."
)
PENDING_HINT = (
    "Житель ещё не подтвердил заявку ({issue}, {address}). "
    "Ответь на его сообщение и в конце коротко спроси, отправлять ли заявку."
)
HOURS_WORKING = "Специалист свяжется с вами в ближайшее время."
HOURS_CLOSED = "Сейчас нерабочее время, специалист свяжется с вами в ближайший рабочий день (пн–пт, 9:00–18:00)."


@dataclass
class TicketDecision:
    """What the pipeline should do after the coordinator ran.

    ``reply`` is sent as is. ``handled=False`` hands the turn to the
    conversational responder (with ``hint`` if set). ``reprocess`` asks for
    the batch to be treated as a fresh turn.
    """

    handled: bool
    reply: Optional[str] = None
    hint: Optional[str] = None
    reprocess: bool = False
    ticket_id: Optional[str] = None
    mute_for: Optional[timedelta] = None


def new_ticket_id() -> str:
    return f"#{uuid.uuid4().hex[:8].upper()}"


def _flatten(text: str) -> List[str]:
    normalized = normalize_for_matching(text)
    return re.sub(r"[^\w\s-]", " ", normalized).split()


def normalize_address(address: str) -> str:
    words = [word for word in _flatten(address) if word not in ADDRESS_NOISE_WORDS]
    return " ".join(words)


def normalize_issue(issue: str) -> str:
    return " ".join(_flatten(issue))


def is_business_hours(now: datetime) -> bool:
    local = now.astimezone(BUSINESS_TIMEZONE)
    return local.weekday() in BUSINESS_DAYS and BUSINESS_START_HOUR <= local.hour < BUSINESS_END_HOUR


def contact_time_hint(now: datetime) -> str:
    return HOURS_WORKING if is_business_hours(now) else HOURS_CLOSED


def format_confirmation(payload: TicketPayload, category: RoutingCategory) -> str:
    lines = [
        "Проверьте, пожалуйста, данные заявки:",
        f"*{CATEGORY_TITLES[category]}*",
        f"ФИО: {payload.full_name}",
        f"Адрес: {payload.address}",
    ]
    if payload.contact:
        lines.append(f"Телефон: {payload.contact}")
    lines.append(f"Проблема: {payload.issue}")
    if payload.detail:
        lines.append(f"Подробности: {payload.detail}")
    lines.append("")
    lines.append("Всё верно? Ответьте «да», чтобы отправить заявку, или напишите, что исправить.")
    return "\n".join(lines)


def format_ticket(
    ticket_id: str,
    payload: TicketPayload,
    category: RoutingCategory,
    persona: BotPersona,
    conversation_id: str,
) -> str:
    lines = [
        f"*{CATEGORY_TITLES[category]}* {ticket_id}",
        f"ФИО: {payload.full_name}",
        f"Адрес: {payload.address}",
        f"Телефон: {payload.contact or '+' + phone_from_chat_id(conversation_id)}",
        f"Проблема: {payload.issue}",
    ]
    if payload.detail:
        lines.append(f"Подробности: {payload.detail}")
    lines.append(f"Принял: {persona.display_name}, WhatsApp +{phone_from_chat_id(conversation_id)}")
    return "\n".join(lines)


def format_success(ticket_id: str, now: datetime) -> str:
    return f"Заявка {ticket_id} принята и передана специалистам. {contact_time_hint(now)}"


def _field(payload: Optional[dict], name: str) -> Optional[str]:
    value = (payload or {}).get(name)
    if value is None:
        return None
    value = str(value).strip()
    if not value or value.lower() == "null":
        return None
    return value


class TicketCoordinator:
    """Proposal, confirmation and dispatch of tickets for one persona."""

    def __init__(
        self,
        llm: LLMProvider,
        persona: BotPersona,
        send: SendFunc,
        *,
        confirmation_ttl_seconds: float,
        dedup_window_seconds: float,
        admin_mute_hours: float,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.llm = llm
        self.persona = persona
        self.send = send
        self.confirmation_ttl_seconds = confirmation_ttl_seconds
        self.dedup_window_seconds = dedup_window_seconds
        self.admin_mute = timedelta(hours=admin_mute_hours)
        self.clock = clock

    async def extract(
        self,
        category: RoutingCategory,
        turns: Sequence[Turn],
        known_full_name: Optional[str] = None,
        known_address: Optional[str] = None,
    ) -> Optional[TicketPayload]:
        prompt = EXTRACTION_PROMPT.format(
            category=category.value,
            known=known_details(known_full_name, known_address),
            transcript=render_transcript(turns),
        )
        raw = await ask_json(self.llm, "extraction", prompt, max_tokens=400)
        full_name = _field(raw, "full_name")
        if not has_full_name(full_name):
            full_name = known_full_name
        address = _field(raw, "address") or known_address
        issue = _field(raw, "issue")
        if not has_full_name(full_name) or not address or not issue:
            logger.warning(f"Ticket extraction incomplete: name={bool(full_name)}, address={bool(address)}, issue={bool(issue)}")
            return None
        return TicketPayload(
            full_name=full_name,
            address=address,
            issue=issue,
            contact=_field(raw, "contact"),
            detail=_field(raw, "detail"),
        )

    def find_exact_duplicate(self, session: ConversationSession, payload: TicketPayload) -> Optional[DedupRecord]:
        address = normalize_address(payload.address)
        issue = normalize_issue(payload.issue)
        for record in session.recent_tickets(self.dedup_window_seconds, self.clock()):
            if record.normalized_address == address and record.normalized_issue == issue:
                return record
        return None

    async def find_duplicate(self, session: ConversationSession, payload: TicketPayload) -> Optional[DedupRecord]:
        exact = self.find_exact_duplicate(session, payload)
        if exact is not None:
            return exact
        recent = session.recent_tickets(self.dedup_window_seconds, self.clock())
        if recent and await is_semantic_duplicate(self.llm, payload, recent):
            return recent[-1]
        return None

    async def propose(
        self,
        session: ConversationSession,
        category: RoutingCategory,
        turns: Sequence[Turn],
        latest_text: str,
        known_full_name: Optional[str] = None,
        known_address: Optional[str] = None,
    ) -> TicketDecision:
        """Routing and completeness passed: extract, dedup, ask for confirmation."""
        log = conversation_logger(logger, session.conversation_id, category=category.value)
        if session.state != TicketState.NONE:
            raise state_machine.InvalidTransitionError(session.state, TicketState.PROPOSED)

        payload = await self.extract(category, turns, known_full_name, known_address)
        if payload is None:
            return TicketDecision(handled=False)

        duplicate = await self.find_duplicate(session, payload)
        if duplicate is not None:
            if not await insists_on_new_request(self.llm, latest_text):
                log.info("Duplicate ticket suppressed", context={"ticket_id": duplicate.ticket_id})
                return TicketDecision(
                    handled=True,
                    reply=DUPLICATE_REPLY.format(ticket_id=duplicate.ticket_id),
                    ticket_id=duplicate.ticket_id,
                )
            log.info("Resident insists on a new ticket", context={"duplicate_of": duplicate.ticket_id})

        session.propose(
            PendingTicketConfirmation(
                payload=payload,
                category=category,
                history_snapshot=list(turns),
                created_at=self.clock(),
            )
        )
        log.info("Ticket proposed")
        return TicketDecision(handled=True, reply=format_confirmation(payload, category))

    def expire_stale(self, session: ConversationSession) -> bool:
        pending = session.pending
        if session.state != TicketState.PROPOSED or pending is None:
            return False
        if not pending.is_expired(self.clock(), self.confirmation_ttl_seconds):
            return False
        session.finish(state_machine.expire)
        logger.info("Pending confirmation expired", extra={"context": {"conversation_id": session.conversation_id}})
        return True

    async def handle_reply(self, session: ConversationSession, message: str) -> TicketDecision:
        """A turn arrived while a ticket waits for confirmation."""
        if self.expire_stale(session) or session.state != TicketState.PROPOSED:
            return TicketDecision(handled=False, reprocess=True)

        pending = session.pending
        intent = await classify_confirmation(self.llm, message)
        logger.info(
            "Confirmation classified",
            extra={"context": {"conversation_id": session.conversation_id, "intent": intent.value}},
        )

        if session.state != TicketState.PROPOSED or session.pending is not pending:
            return TicketDecision(handled=False, reprocess=True)

        if intent == ConfirmationIntent.CONFIRM:
            return await self.confirm(session)

        if intent == ConfirmationIntent.DENY:
            session.finish(state_machine.deny)
            return TicketDecision(handled=True, reply=DENY_REPLY)

        if await is_topic_change(self.llm, pending.payload, message):
            if session.pending is pending:
                session.finish(state_machine.change_topic)
            logger.info("Topic changed, confirmation dropped", extra={"context": {"conversation_id": session.conversation_id}})
            return TicketDecision(handled=False, reprocess=True)

        return TicketDecision(
            handled=False,
            hint=PENDING_HINT.format(issue=pending.payload.issue, address=pending.payload.address),
        )

    async def dispatch(self, session: ConversationSession, pending: PendingTicketConfirmation) -> Result[str]:
        """Send the ticket to its human channel. Returns the ticket id."""
        ticket_id = new_ticket_id()
        channel = self.persona.channel_for(pending.category.value)
        if not channel:
            return Result.failure(f"No channel configured for {pending.category.value}", CONFIG_ERROR)

        message = format_ticket(ticket_id, pending.payload, pending.category, self.persona, session.conversation_id)
        try:
            sent = await self.send(channel, message)
        except Exception as exc:
            logger.error(f"Ticket dispatch raised: {exc}")
            return Result.from_exception(exc, DISPATCH_ERROR)
        if not sent:
            return Result.failure(f"Channel {channel} rejected ticket", DISPATCH_ERROR)
        return Result.success(ticket_id)

    async def confirm(self, session: ConversationSession) -> TicketDecision:
        pending = session.pending
        result = await self.dispatch(session, pending)

        if not result.ok:
            if session.pending is pending:
                session.finish(state_machine.fail)
            logger.error(
                "Ticket dispatch failed",
                extra={"context": {"conversation_id": session.conversation_id, "error": result.error}},
            )
            await alert_service.alert_error(
                "Ticket dispatch failed",
                {
                    "instance": self.persona.key,
                    "conversation_id": session.conversation_id,
                    "category": pending.category.value,
                    "error": result.error,
                },
            )
            return TicketDecision(handled=True, reply=DISPATCH_FAILED_REPLY.format(phone=self.persona.fallback_phone))

        ticket_id = result.value
        now = self.clock()
        session.dedup.append(
            DedupRecord(
                normalized_address=normalize_address(pending.payload.address),
                normalized_issue=normalize_issue(pending.payload.issue),
                issue=pending.payload.issue,
                ticket_id=ticket_id,
                category=pending.category,
                created_at=now,
            )
        )
        if session.pending is pending:
            session.finish(state_machine.confirm)
        logger.info(
            "Ticket dispatched",
            extra={
                "context": {
                    "conversation_id": session.conversation_id,
                    "ticket_id": ticket_id,
                    "category": pending.category.value,
                }
            },
        )
        return TicketDecision(
            handled=True,
            reply=format_success(ticket_id, now),
            ticket_id=ticket_id,
            mute_for=self.admin_mute if pending.category == RoutingCategory.ADMIN else None,
        )
