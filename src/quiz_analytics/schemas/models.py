"""Pydantic models for quiz sessions, store orders and attribution records."""
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AttributionTier(str, Enum):
    """Confidence classification of an order-to-session match."""

    SESSION_REFERENCE = "session-reference"
    EXACT_CUSTOMER = "exact-customer"
    TIME_PROXIMITY = "time-proximity"
    NONE = "none"


class QuizSession(BaseModel):
    """A shopper's run through one quiz."""

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(..., description="Opaque, globally unique session id")
    shop: str = Field(..., description="Shop domain the quiz belongs to")
    quiz_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    is_completed: bool = False
    customer_id: Optional[str] = Field(
        None, description="Customer reference, set once it becomes known"
    )
    page_url: Optional[str] = None
    user_agent: Optional[str] = None

    @field_validator("started_at", "completed_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _check_completion(self) -> "QuizSession":
        if self.is_completed != (self.completed_at is not None):
            raise ValueError("completed_at must be set if and only if is_completed")
        if self.completed_at is not None and self.completed_at < self.started_at:
            raise ValueError("completed_at must not precede started_at")
        return self


class AnswerSelection(BaseModel):
    """Answer picked for one question within a session."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    question_id: str
    answer_id: str
    selected_at: datetime

    @field_validator("selected_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class Order(BaseModel):
    """Read-only view of a store order from the order feed."""

    model_config = ConfigDict(frozen=True)

    order_id: str
    shop: str
    created_at: datetime
    total_price: float = 0.0
    customer_id: Optional[str] = None
    order_name: Optional[str] = None
    currency: str = "USD"
    line_items_count: int = 0
    session_reference: Optional[str] = Field(
        None, description="Quiz session id stamped on the cart or order note"
    )

    @field_validator("created_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class Attribution(BaseModel):
    """Outcome of matching one order against the quiz sessions of its shop."""

    model_config = ConfigDict(frozen=True)

    order_id: str
    shop: str
    order_created_at: datetime
    matched_session_id: Optional[str] = None
    quiz_id: Optional[str] = None
    tier: AttributionTier = AttributionTier.NONE
    matched_at: datetime
    order_total: float = 0.0
    currency: str = "USD"

    @field_validator("order_created_at", "matched_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_tier(self) -> "Attribution":
        if (self.tier == AttributionTier.NONE) != (self.matched_session_id is None):
            raise ValueError("tier 'none' is used exactly when no session matched")
        return self

    @property
    def is_matched(self) -> bool:
        return self.matched_session_id is not None


class AnalyticsSummary(BaseModel):
    """Per shop, quiz and calendar date rollup row."""

    shop: str
    quiz_id: str
    summary_date: date
    session_count: int = 0
    completed_count: int = 0
    attributed_order_count: int = 0
    attributed_revenue: float = 0.0

    @property
    def completion_rate(self) -> float:
        if self.session_count <= 0:
            return 0.0
        return self.completed_count / self.session_count

    @property
    def conversion_rate(self) -> float:
        if self.completed_count <= 0:
            return 0.0
        return self.attributed_order_count / self.completed_count


class SummaryDelta(BaseModel):
    """Increment applied to one AnalyticsSummary row."""

    model_config = ConfigDict(frozen=True)

    shop: str
    quiz_id: str
    summary_date: date
    session_count: int = 0
    completed_count: int = 0
    attributed_order_count: int = 0
    attributed_revenue: float = 0.0

    @property
    def key(self) -> tuple[str, str, date]:
        return (self.shop, self.quiz_id, self.summary_date)

    @property
    def is_zero(self) -> bool:
        return (
            self.session_count == 0
            and self.completed_count == 0
            and self.attributed_order_count == 0
            and round(self.attributed_revenue, 2) == 0
        )


class TimeWindow(BaseModel):
    """Half-open time range [start, end)."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def span(self) -> timedelta:
        return self.end - self.start

    def contains(self, moment: datetime) -> bool:
        return self.start <= ensure_utc(moment) < self.end


class SyncResult(BaseModel):
    """Structured result of one reconciliation pass for a shop."""

    shop: str
    window_processed: Optional[TimeWindow] = Field(
        None, description="Window reconciled by this pass (None when nothing was due)"
    )
    orders_processed: int = 0
    orders_attributed: int = 0
    summaries_touched: int = 0


class AnswerStat(BaseModel):
    """Popularity of one answer within a question."""

    answer_id: str
    selection_count: int
    selection_percentage: int


class QuestionStat(BaseModel):
    """Answer breakdown for one question."""

    question_id: str
    total_responses: int
    answers: list[AnswerStat] = Field(default_factory=list)


class DailyPerformance(BaseModel):
    """One day of rolled-up quiz performance."""

    summary_date: date
    sessions: int
    completions: int
    completion_rate: int
    attributed_orders: int
    attributed_revenue: float
    conversion_rate: int


class QuizReport(BaseModel):
    """Merchant-facing analytics for a single quiz."""

    shop: str
    quiz_id: str
    total_sessions: int
    completed_sessions: int
    completion_rate: int
    average_completion_seconds: int
    attributed_orders: int
    attributed_revenue: float
    questions: list[QuestionStat] = Field(default_factory=list)
    daily: list[DailyPerformance] = Field(default_factory=list)
