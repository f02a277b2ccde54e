"""
Auto-Response Policy Configuration

Typed view of a tenant's AutoResponsePolicy row. The row stores structured
settings as JSON documents; these models validate them on the way in and out.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from wacore.clock import as_utc

from wa_integration.persistence.models import AutoResponsePolicy

DEFAULT_TIMEZONE = "America/Lima"
DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_WELCOME_MESSAGE = "¡Hola! Soy tu asistente virtual. ¿En qué puedo ayudarte hoy?"

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class ResponseMode(str, Enum):
    """When the engine answers inbound messages."""

    ALWAYS = "always"
    BUSINESS_HOURS = "business_hours"
    OUTSIDE_HOURS = "outside_hours"
    KEYWORDS = "keywords"
    MANUAL = "manual"


class Personality(str, Enum):
    PROFESSIONAL = "professional"
    FRIENDLY = "friendly"
    TECHNICAL = "technical"
    SALES = "sales"
    CUSTOM = "custom"


def parse_hhmm(value: str) -> int:
    """Minutes since midnight for an HH:MM string."""
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


class DayWindow(BaseModel):
    """Opening window for one weekday, inclusive on both ends."""

    start: str = Field(..., description="Opening time, HH:MM")
    end: str = Field(..., description="Closing time, HH:MM")

    @field_validator("start", "end")
    @classmethod
    def _validate_time(cls, value: str) -> str:
        try:
            hours, minutes = value.split(":")
            hours_i, minutes_i = int(hours), int(minutes)
        except ValueError:
            raise ValueError(f"Invalid time '{value}', expected HH:MM")
        if not (0 <= hours_i <= 23 and 0 <= minutes_i <= 59):
            raise ValueError(f"Invalid time '{value}', expected HH:MM")
        return f"{hours_i:02d}:{minutes_i:02d}"

    @model_validator(mode="after")
    def _check_order(self) -> "DayWindow":
        if parse_hhmm(self.start) > parse_hhmm(self.end):
            raise ValueError("Window start must not be after its end")
        return self

    def contains(self, minute_of_day: int) -> bool:
        return parse_hhmm(self.start) <= minute_of_day <= parse_hhmm(self.end)


class BusinessHours(BaseModel):
    """Per-weekday windows in the tenant's timezone. A missing day is closed."""

    timezone: str = DEFAULT_TIMEZONE
    monday: DayWindow | None = None
    tuesday: DayWindow | None = None
    wednesday: DayWindow | None = None
    thursday: DayWindow | None = None
    friday: DayWindow | None = None
    saturday: DayWindow | None = None
    sunday: DayWindow | None = None

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}")
        return value

    def window_for(self, weekday: int) -> DayWindow | None:
        """Window for a weekday number (Monday is 0)."""
        return getattr(self, WEEKDAYS[weekday])


class GenerationSettings(BaseModel):
    temperature: float = Field(0.7, ge=0, le=2)
    max_tokens: int = Field(150, gt=0)
    context_window: int = Field(5, ge=0, description="Recent messages sent as context")
    reply_delay_ms: int = Field(1000, ge=0, description="Pause before the reply is released")
    language: str | None = "es"
    industry: str | None = None


class UsageQuotas(BaseModel):
    """Hard limits. None disables a limit."""

    tokens_per_day: int | None = Field(10000, ge=0)
    tokens_per_month: int | None = Field(100000, ge=0)
    conversations_per_day: int | None = Field(100, ge=0)


class UsageCounters(BaseModel):
    tokens_today: int = 0
    tokens_this_month: int = 0
    conversations_today: int = 0
    reset_at: datetime | None = None


class TenantPolicy(BaseModel):
    """Complete auto-response configuration of one tenant."""

    enabled: bool = False
    response_mode: ResponseMode = ResponseMode.ALWAYS
    personality: Personality = Personality.PROFESSIONAL
    model: str = DEFAULT_MODEL
    system_prompt: str | None = None
    welcome_message: str | None = DEFAULT_WELCOME_MESSAGE
    business_hours: BusinessHours = Field(default_factory=BusinessHours)
    keywords: list[str] = Field(default_factory=list)
    blocked_phrases: list[str] = Field(default_factory=list)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    quotas: UsageQuotas = Field(default_factory=UsageQuotas)
    usage: UsageCounters = Field(default_factory=UsageCounters)

    @classmethod
    def from_model(cls, row: AutoResponsePolicy) -> "TenantPolicy":
        """Build the typed policy from a database row."""
        return cls(
            enabled=row.enabled,
            response_mode=row.response_mode,
            personality=row.personality,
            model=row.model,
            system_prompt=row.system_prompt,
            welcome_message=row.welcome_message,
            business_hours=row.business_hours or {},
            keywords=row.keywords or [],
            blocked_phrases=row.blocked_phrases or [],
            generation=row.generation or {},
            quotas=row.quotas or {},
            usage=UsageCounters(
                tokens_today=row.tokens_today or 0,
                tokens_this_month=row.tokens_this_month or 0,
                conversations_today=row.conversations_today or 0,
                reset_at=as_utc(row.usage_reset_at),
            ),
        )

    def to_columns(self) -> dict[str, Any]:
        """Column values for the policy row. Usage counters are not included."""
        return {
            "enabled": self.enabled,
            "response_mode": self.response_mode.value,
            "personality": self.personality.value,
            "model": self.model,
            "system_prompt": self.system_prompt,
            "welcome_message": self.welcome_message,
            "business_hours": self.business_hours.model_dump(mode="json", exclude_none=True),
            "keywords": list(self.keywords),
            "blocked_phrases": list(self.blocked_phrases),
            "generation": self.generation.model_dump(mode="json"),
            "quotas": self.quotas.model_dump(mode="json"),
        }


class PolicyUpdate(BaseModel):
    """Partial policy update. Only fields that are set are applied."""

    enabled: bool | None = None
    response_mode: ResponseMode | None = None
    personality: Personality | None = None
    model: str | None = None
    system_prompt: str | None = None
    welcome_message: str | None = None
    business_hours: BusinessHours | None = None
    keywords: list[str] | None = None
    blocked_phrases: list[str] | None = None
    generation: GenerationSettings | None = None
    quotas: UsageQuotas | None = None

    def apply_to(self, policy: TenantPolicy) -> TenantPolicy:
        """Return a copy of `policy` with this update applied and revalidated."""
        merged = policy.model_dump()
        merged.update(self.model_dump(exclude_unset=True))
        return TenantPolicy.model_validate(merged)
