import re
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from frontdesk.schemas.conversation import Turn, utcnow


class RoutingCategory(str, Enum):
    GENERAL = "general"  # Ремонт, аварии, обслуживание дома
    ACCOUNTING = "accounting"  # Начисления, оплата, лицевой счёт
    ADMIN = "admin"  # Жалобы, документы, вопросы к руководству
    NONE = "none"  # Не заявка


TICKET_CATEGORIES = (RoutingCategory.GENERAL, RoutingCategory.ACCOUNTING, RoutingCategory.ADMIN)

CATEGORY_TITLES = {
    RoutingCategory.GENERAL: "Заявка в диспетчерскую",
    RoutingCategory.ACCOUNTING: "Вопрос в бухгалтерию",
    RoutingCategory.ADMIN: "Обращение к администрации",
}


class TicketPayload(BaseModel):
    full_name: str
    address: str
    issue: str
    contact: Optional[str] = None
    detail: Optional[str] = None


class PendingTicketConfirmation(BaseModel):
    payload: TicketPayload
    category: RoutingCategory
    history_snapshot: List[Turn] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime, ttl_seconds: float) -> bool:
        return (now - self.created_at).total_seconds() >= ttl_seconds


class DedupRecord(BaseModel):
    normalized_address: str
    normalized_issue: str
    issue: str
    ticket_id: str
    category: RoutingCategory
    created_at: datetime = Field(default_factory=utcnow)

    def in_window(self, now: datetime, window_seconds: float) -> bool:
        return (now - self.created_at).total_seconds() < window_seconds


class ResidentIdentity(BaseModel):
    account_number: str
    full_name: str
    apartment_number: Optional[str] = None
    address: Optional[str] = None

    @property
    def full_address(self) -> Optional[str]:
        """Directory address with the apartment, for ticket fields."""
        if not self.address:
            return None
        if self.apartment_number and not re.search(rf"\bкв\.?\s*{re.escape(self.apartment_number)}\b", self.address):
            return f"{self.address}, кв. {self.apartment_number}"
        return self.address
