import asyncio
from datetime import timedelta
from functools import partial
from typing import Any, Awaitable, Callable, List, Optional

from frontdesk.config import BotPersona, Settings, get_persona, settings
from frontdesk.logging_config import conversation_logger, get_logger
from frontdesk.schemas.conversation import Turn, TurnKind, assistant_turn, user_turn
from frontdesk.schemas.ticket import RoutingCategory
from frontdesk.schemas.webhook import WhatsAppEvent
from frontdesk.services import alert_service
from frontdesk.services.account_service import AccountResolver, HttpResidentDirectory, ResidentDirectory, mentions_account
from frontdesk.services.ai_service import generate_reply, summarize_turns
from frontdesk.services.command_service import CommandHandler
from frontdesk.services.conversation_service import ConversationSession, PendingItem, SessionRegistry
from frontdesk.services.conversation_store import ConversationStore
from frontdesk.services.debounce_service import Debouncer
from frontdesk.services.intent_service import check_completeness, classify_routing
from frontdesk.services.llm import LLMProvider, OpenAIProvider
from frontdesk.services.mute_service import MuteRegistry
from frontdesk.services.operator_service import FingerprintCache, OperatorArbiter
from frontdesk.services.result import SEND_ERROR, Result
from frontdesk.services.state_machine import TicketState
from frontdesk.services.storage import build_store
from frontdesk.services.ticket_service import TicketCoordinator, TicketDecision
from frontdesk.services.transport import (
    STATUS_BROADCAST,
    HttpWhatsAppTransport,
    WhatsAppTransport,
    format_for_whatsapp,
    is_group_chat_id,
)

logger = get_logger("pipeline")

RESET_COMMAND = "!reset"
RESET_REPLY = "История диалога очищена. Чем могу помочь?"
FALLBACK_REPLY = (
    "Извините, сейчас не получается ответить. "
    "Попробуйте, пожалуйста, написать чуть позже или позвоните диспетчеру по телефону {phone}."
)
CLARIFY_HINT = (
    "Житель хочет оставить заявку, но не хватает данных. "
    "Вежливо попроси уточнить:\n{questions}"
)

MEDIA_KINDS = {
    "image": TurnKind.IMAGE,
    "sticker": TurnKind.IMAGE,
    "audio": TurnKind.AUDIO,
    "ptt": TurnKind.AUDIO,
    "video": TurnKind.VIDEO,
    "document": TurnKind.FILE,
}

MEDIA_PLACEHOLDERS = {
    TurnKind.IMAGE: "[Изображение]",
    TurnKind.AUDIO: "[Голосовое сообщение]",
    TurnKind.VIDEO: "[Видео]",
    TurnKind.FILE: "[Файл]",
}


def turn_from_event(event: WhatsAppEvent) -> Turn:
    """Inbound event as a user turn; media becomes a placeholder plus caption."""
    kind = MEDIA_KINDS.get(event.type, TurnKind.FILE if event.has_media else TurnKind.TEXT)
    body = (event.body or "").strip()
    if kind == TurnKind.TEXT:
        content = body
    else:
        content = f"{MEDIA_PLACEHOLDERS[kind]} {body}".strip()
    return user_turn(content, kind=kind, timestamp=event.received_at)


class FrontDeskPipeline:
    """Per-event handling for one persona: intake, batching, decisions, replies."""

    def __init__(
        self,
        *,
        persona: BotPersona,
        llm: LLMProvider,
        transport: WhatsAppTransport,
        store: ConversationStore,
        mutes: MuteRegistry,
        directory: Optional[ResidentDirectory] = None,
        config: Settings = settings,
        sleep_func: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.persona = persona
        self.llm = llm
        self.transport = transport
        self.store = store
        self.mutes = mutes
        self.config = config
        self.sleep_func = sleep_func or asyncio.sleep

        self.sessions = SessionRegistry()
        self.fingerprints = FingerprintCache(config.fingerprint_ttl_seconds)
        self.debouncer = Debouncer(self.sessions, self.process_batch, config.debounce_seconds)
        self.arbiter = OperatorArbiter(
            self.fingerprints,
            self.debouncer,
            self.sessions,
            self.store,
            grace_seconds=config.operator_echo_grace_seconds,
            poll_seconds=config.operator_echo_poll_seconds,
        )
        self.tickets = TicketCoordinator(
            llm,
            persona,
            self.send_to_channel,
            confirmation_ttl_seconds=config.confirmation_ttl_seconds,
            dedup_window_seconds=config.dedup_window_hours * 3600,
            admin_mute_hours=config.admin_mute_hours,
        )
        self.accounts = AccountResolver(llm, directory, config.identity_cache_seconds)
        self.commands = CommandHandler(mutes, self.arbiter.preempt, config.admin_mute_hours)

    # Intake

    async def handle_incoming(self, event: WhatsAppEvent) -> str:
        """Route one webhook event. Returns a short status for the caller."""
        if event.from_me:
            return await self.handle_own_message(event)

        chat_id = event.chat_id
        if event.is_status or chat_id == STATUS_BROADCAST:
            return "ignored_status"

        if event.is_group_chat or is_group_chat_id(chat_id):
            if self.persona.admin_rights and chat_id == self.persona.admin_chat_id and self.commands.is_command(event.body):
                reply = await self.commands.execute(event.body)
                if reply:
                    await self.send_reply(chat_id, reply, record=False)
                return "command"
            return "ignored_group"

        if (event.body or "").strip().lower() == RESET_COMMAND:
            await self.reset(chat_id)
            await self.send_reply(chat_id, RESET_REPLY, record=False)
            return "reset"

        turn = turn_from_event(event)
        if not turn.content:
            return "ignored_empty"

        if await self.mutes.is_muted(chat_id):
            await self.store.append(chat_id, turn)
            logger.info("Muted conversation, turn recorded", extra={"context": {"conversation_id": chat_id}})
            return "muted"

        self.debouncer.enqueue(chat_id, turn, handle=event.id)
        return "queued"

    async def handle_own_message(self, event: WhatsAppEvent) -> str:
        destination = event.chat_id
        body = event.body or ""
        if event.is_group_chat or is_group_chat_id(destination) or destination == STATUS_BROADCAST:
            self.fingerprints.consume(destination, body)
            return "own_group_message"

        if await self.arbiter.handle_outgoing(destination, body, content=turn_from_event(event).content):
            return "operator"
        return "echo"

    async def reset(self, conversation_id: str) -> None:
        self.debouncer.cancel(conversation_id)
        self.sessions.reset(conversation_id)
        await self.store.delete(conversation_id)
        logger.info("Conversation reset", extra={"context": {"conversation_id": conversation_id}})

    async def mute(self, conversation_id: str, duration: Optional[timedelta], reason: Optional[str] = None) -> None:
        self.arbiter.preempt(conversation_id)
        await self.mutes.mute(conversation_id, duration, reason=reason)

    # Processing

    async def process_batch(self, session: ConversationSession, items: List[PendingItem], generation: int) -> None:
        """Debounce fired: record the batch, decide, reply."""
        conversation_id = session.conversation_id
        log = conversation_logger(logger, conversation_id, generation=generation)

        if self.sessions.peek(conversation_id) is not session:
            log.info("Batch discarded, conversation was reset")
            return

        turns = [item.turn for item in items]
        await self.store.append(conversation_id, *turns)
        if session.generation != generation:
            log.info("Batch recorded without reply, conversation was interrupted")
            return
        text = "\n".join(turn.content for turn in turns)
        log.info("Processing batch", context={"turns": len(turns), "state": session.state.value})

        try:
            decision = await self.decide(session, text)
        except Exception as exc:
            log.exception("Batch processing failed", context={"error": str(exc)})
            await alert_service.alert_critical(
                "Reply pipeline failed",
                {"instance": self.persona.key, "conversation_id": conversation_id, "error": str(exc)},
            )
            decision = TicketDecision(handled=True, reply=FALLBACK_REPLY.format(phone=self.persona.fallback_phone))

        if session.generation != generation:
            log.info("Reply dropped, conversation was interrupted")
            return

        if decision.reply:
            await self.send_reply(conversation_id, decision.reply, session=session, generation=generation)

        if decision.mute_for is not None:
            await self.mute(conversation_id, decision.mute_for, reason="admin_ticket")

        await self.compact(conversation_id)

    async def decide(self, session: ConversationSession, text: str) -> TicketDecision:
        history = await self.store.read(session.conversation_id)

        if session.state == TicketState.PROPOSED:
            decision = await self.tickets.handle_reply(session, text)
            if decision.handled:
                return decision
            if not decision.reprocess:
                return await self.converse(history, hint=decision.hint)

        if mentions_account(text):
            resolution = await self.accounts.resolve(session, history)
            if resolution.handled:
                return TicketDecision(handled=True, reply=resolution.message)

        category = await classify_routing(self.llm, history, text)
        if category == RoutingCategory.NONE:
            return await self.converse(history)

        identity = session.cached_identity()
        known_name = identity.full_name if identity else None
        known_address = identity.full_address if identity else None
        completeness = await check_completeness(self.llm, category, history, known_name, known_address)
        if not completeness.complete:
            questions = "\n".join(f"- {question}" for question in completeness.questions)
            return await self.converse(
                history,
                hint=CLARIFY_HINT.format(questions=questions),
                fallback="\n".join(completeness.questions),
            )

        decision = await self.tickets.propose(
            session,
            category,
            history,
            text,
            known_full_name=completeness.full_name or known_name,
            known_address=known_address,
        )
        if decision.handled:
            return decision
        return await self.converse(history)

    async def converse(
        self,
        history: List[Turn],
        hint: Optional[str] = None,
        fallback: Optional[str] = None,
    ) -> TicketDecision:
        result = await generate_reply(self.llm, self.persona, history, hint=hint)
        if result.ok:
            return TicketDecision(handled=False, reply=result.value)

        logger.error(f"Conversational reply failed: {result.error}")
        if fallback:
            return TicketDecision(handled=False, reply=fallback)
        await alert_service.alert_error(
            "Conversational reply failed",
            {"instance": self.persona.key, "error": result.error, "code": result.error_code},
        )
        return TicketDecision(handled=False, reply=FALLBACK_REPLY.format(phone=self.persona.fallback_phone))

    async def compact(self, conversation_id: str) -> bool:
        history = await self.store.read(conversation_id)
        if not self.store.needs_compaction(len(history)):
            return False
        return await self.store.compact(conversation_id, partial(summarize_turns, self.llm))

    # Outbound

    async def simulate_typing(self, chat_id: str, text: str) -> None:
        if self.config.typing_max_seconds <= 0:
            return
        delay = min(len(text) / self.config.typing_chars_per_second, self.config.typing_max_seconds)
        await self.transport.send_typing(chat_id)
        try:
            await self.sleep_func(delay)
        finally:
            await self.transport.clear_typing(chat_id)

    async def send_to_channel(self, destination: str, body: str) -> bool:
        self.fingerprints.record(destination, body)
        return await self.transport.send(destination, body)

    async def send_reply(
        self,
        chat_id: str,
        text: str,
        *,
        record: bool = True,
        session: Optional[ConversationSession] = None,
        generation: Optional[int] = None,
    ) -> Result[bool]:
        formatted = format_for_whatsapp(text)
        if not formatted:
            return Result.failure("Empty reply", SEND_ERROR)

        await self.simulate_typing(chat_id, formatted)
        if session is not None and generation is not None and session.generation != generation:
            logger.info("Reply dropped after typing", extra={"context": {"conversation_id": chat_id}})
            return Result.failure("Conversation interrupted", SEND_ERROR)

        self.fingerprints.record(chat_id, formatted)
        if not await self.transport.send(chat_id, formatted):
            logger.error("Reply send failed", extra={"context": {"conversation_id": chat_id}})
            return Result.failure(f"Send to {chat_id} failed", SEND_ERROR)

        if record:
            await self.store.append(chat_id, assistant_turn(formatted))
        return Result.success(True)

    # Maintenance

    async def sweep(self) -> dict:
        """Expire confirmations and drop stale ephemeral state."""
        expired = 0
        for session in self.sessions:
            if self.tickets.expire_stale(session):
                expired += 1
            session.prune(window_seconds=self.tickets.dedup_window_seconds)
        stats = {
            "expired_confirmations": expired,
            "expired_mutes": await self.mutes.sweep(),
            "expired_fingerprints": self.fingerprints.purge(),
            "idle_sessions": self.sessions.prune_idle(),
        }
        stats["evicted_histories"] = self.store.evict(session.conversation_id for session in self.sessions)
        logger.info("Sweep finished", extra={"context": stats})
        return stats

    async def shutdown(self) -> None:
        await self.debouncer.shutdown()


def build_pipeline(config: Settings = settings) -> FrontDeskPipeline:
    """Wire the production collaborators for the configured persona."""
    persona = get_persona(config)
    storage = build_store(
        config.storage_backend,
        history_dir=config.history_dir,
        redis_url=config.redis_url,
        database_url=config.database_url,
        namespace=persona.key,
    )
    directory = None
    if config.resident_directory_url:
        directory = HttpResidentDirectory(config.resident_directory_url, token=config.resident_directory_token)
    return FrontDeskPipeline(
        persona=persona,
        llm=OpenAIProvider(
            config.openai_api_key,
            default_model=config.openai_model,
            default_timeout_seconds=config.llm_timeout_seconds,
        ),
        transport=HttpWhatsAppTransport(config.whatsapp_gateway_url, token=config.whatsapp_gateway_token),
        store=ConversationStore(storage, max_turns=config.history_max_turns, keep_recent=config.history_keep_recent),
        mutes=MuteRegistry(storage),
        directory=directory,
        config=config,
    )
