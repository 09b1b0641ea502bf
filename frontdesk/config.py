from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    bot_instance: str = "admin"
    personas_file: Optional[str] = None

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4.1"
    fast_model: str = "gpt-4.1-mini"
    llm_timeout_seconds: float = 20.0
    classify_timeout_seconds: float = 10.0
    llm_max_tokens: int = 600

    debounce_seconds: float = 8.0
    history_max_turns: int = 50
    history_keep_recent: int = 10
    llm_history_turns: int = 30

    confirmation_ttl_seconds: int = 600
    dedup_window_hours: int = 24
    admin_mute_hours: int = 24
    identity_cache_seconds: int = 3600
    max_clarifying_questions: int = 3

    fingerprint_ttl_seconds: float = 120.0
    operator_echo_grace_seconds: float = 2.0
    operator_echo_poll_seconds: float = 0.2

    typing_chars_per_second: float = 40.0
    typing_max_seconds: float = 4.0

    sweep_interval_seconds: float = 60.0
    sweep_worker_enabled: bool = True

    storage_backend: str = "file"  # memory, file, redis, sql
    history_dir: str = "./histories"
    redis_url: str = "redis://localhost:6379/0"
    database_url: str = "sqlite:///./frontdesk.db"

    whatsapp_gateway_url: str = "http://localhost:3000"
    whatsapp_gateway_token: Optional[str] = None
    resident_directory_url: Optional[str] = None
    resident_directory_token: Optional[str] = None

    alert_bot_token: Optional[str] = None
    alert_chat_id: Optional[str] = None

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()


class BotPersona(BaseModel):
    """One bot instance: prompt, rights and where its tickets go."""

    key: str
    display_name: str
    system_prompt: str
    admin_rights: bool = False
    admin_chat_id: Optional[str] = None
    channels: dict[str, str] = Field(default_factory=dict)
    fallback_phone: str = "+7 (8722) 55-00-00"

    def channel_for(self, category: str) -> Optional[str]:
        return self.channels.get(category)


BASE_PROMPT = (
    "Ты — {name}, сотрудник диспетчерской управляющей компании. "
    "Отвечаешь жителям в WhatsApp вежливо, коротко и по-русски. "
    "Помогаешь с заявками на ремонт и обслуживание, вопросами по начислениям "
    "и лицевому счёту, административными вопросами. "
    "Для заявки нужны: ФИО полностью (фамилия и имя), адрес с номером квартиры, "
    "описание проблемы. Не выдумывай сроки, суммы и номера заявок. "
    "Если не знаешь ответа — честно скажи и предложи передать вопрос специалисту."
)

DEFAULT_CHANNELS = {
    "general": "120363000000000001@g.us",
    "accounting": "120363000000000002@g.us",
    "admin": "120363000000000003@g.us",
}

BUILTIN_PERSONAS = {
    "admin": BotPersona(
        key="admin",
        display_name="Кристина",
        system_prompt=BASE_PROMPT.format(name="Кристина, администратор"),
        admin_rights=True,
        admin_chat_id="120363000000000099@g.us",
        channels=dict(DEFAULT_CHANNELS),
    ),
    "dispatcher1": BotPersona(
        key="dispatcher1",
        display_name="Диспетчер 1",
        system_prompt=BASE_PROMPT.format(name="диспетчер"),
        channels=dict(DEFAULT_CHANNELS),
    ),
    "dispatcher2": BotPersona(
        key="dispatcher2",
        display_name="Диспетчер 2",
        system_prompt=BASE_PROMPT.format(name="диспетчер"),
        channels=dict(DEFAULT_CHANNELS),
    ),
    "dispatcher3": BotPersona(
        key="dispatcher3",
        display_name="Диспетчер 3",
        system_prompt=BASE_PROMPT.format(name="диспетчер"),
        channels=dict(DEFAULT_CHANNELS),
    ),
}


def load_personas(path: Optional[str] = None) -> dict[str, BotPersona]:
    """Built-in personas, overridden or extended by a YAML file if given.

    The file maps persona keys to partial persona fields, e.g.::

        dispatcher1:
          display_name: Марина
          channels:
            general: 120363...@g.us
    """
    personas = {key: persona.model_copy(deep=True) for key, persona in BUILTIN_PERSONAS.items()}
    if not path:
        return personas

    raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Personas file {path} must contain a mapping")

    for key, overrides in raw.items():
        overrides = dict(overrides or {})
        base = personas.get(key)
        if base is not None:
            data = base.model_dump()
            channels = dict(data.get("channels") or {})
            channels.update(overrides.pop("channels", None) or {})
            data.update(overrides)
            data["channels"] = channels
        else:
            data = {"key": key, **overrides}
            data.setdefault("display_name", key)
            data.setdefault("system_prompt", BASE_PROMPT.format(name=data["display_name"]))
        data["key"] = key
        personas[key] = BotPersona(**data)
    return personas


def get_persona(config: Settings = settings) -> BotPersona:
    personas = load_personas(config.personas_file)
    persona = personas.get(config.bot_instance)
    if persona is None:
        raise ValueError(f"Unknown bot instance: {config.bot_instance}")
    return persona
