from frontdesk.schemas.conversation import MuteEntry, Turn, TurnKind, TurnRole
from frontdesk.schemas.ticket import (
    DedupRecord,
    PendingTicketConfirmation,
    ResidentIdentity,
    RoutingCategory,
    TicketPayload,
)
from frontdesk.schemas.webhook import WebhookResponse, WhatsAppEvent

__all__ = [
    "Turn",
    "TurnKind",
    "TurnRole",
    "MuteEntry",
    "RoutingCategory",
    "TicketPayload",
    "PendingTicketConfirmation",
    "DedupRecord",
    "ResidentIdentity",
    "WhatsAppEvent",
    "WebhookResponse",
]
