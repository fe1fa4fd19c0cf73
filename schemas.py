from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    AggregateDateKind,
    AggregatePeriod,
    PostingKind,
    ReportInterval,
    SecurityPostingSubType,
)
from report_engine import ReportPoint


class ReportAggregationFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_ids: Optional[list[int]] = None
    contact_ids: Optional[list[int]] = None
    savings_plan_ids: Optional[list[int]] = None
    security_ids: Optional[list[int]] = None
    contact_category_ids: Optional[list[int]] = None
    savings_plan_category_ids: Optional[list[int]] = None
    security_category_ids: Optional[list[int]] = None
    security_sub_types: Optional[list[SecurityPostingSubType]] = None
    include_dividend_related: bool = False


class ReportQueryIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    posting_kind: PostingKind = PostingKind.contact
    posting_kinds: Optional[list[PostingKind]] = None
    interval: ReportInterval = ReportInterval.month
    take: int = Field(default=24, ge=0, le=1000)
    include_category: bool = False
    compare_previous: bool = False
    compare_year: bool = False
    use_valuta_date: bool = False
    analysis_date: Optional[date] = None
    filters: Optional[ReportAggregationFilters] = None

    def kinds(self) -> list[PostingKind]:
        if self.posting_kinds:
            return list(dict.fromkeys(self.posting_kinds))
        return [self.posting_kind]


class ReportAggregationQuery(ReportQueryIn):
    owner_user_id: int


class PostingIn(BaseModel):
    kind: PostingKind
    account_id: Optional[int] = None
    contact_id: Optional[int] = None
    savings_plan_id: Optional[int] = None
    security_id: Optional[int] = None
    booking_date: date
    valuta_date: Optional[date] = None
    amount_cents: int
    security_sub_type: Optional[SecurityPostingSubType] = None
    group_id: Optional[str] = Field(default=None, max_length=36)
    quantity: Optional[Decimal] = None
    subject: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = None


class PostingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: PostingKind
    account_id: Optional[int]
    contact_id: Optional[int]
    savings_plan_id: Optional[int]
    security_id: Optional[int]
    booking_date: date
    valuta_date: Optional[date]
    amount_cents: int
    security_sub_type: Optional[SecurityPostingSubType]
    group_id: Optional[str]


class AggregatePointOut(BaseModel):
    period_start: date
    amount_cents: int


class AggregateSeriesOut(BaseModel):
    kind: PostingKind
    entity_id: Optional[int] = None
    period: AggregatePeriod
    date_kind: AggregateDateKind
    points: list[AggregatePointOut]


class ReportPointOut(BaseModel):
    period_start: date
    group_key: str
    group_name: str
    category_name: Optional[str]
    amount_cents: int
    parent_group_key: Optional[str]
    previous_amount_cents: Optional[int]
    year_ago_amount_cents: Optional[int]

    @classmethod
    def from_point(cls, point: ReportPoint) -> "ReportPointOut":
        return cls(
            period_start=point.period_start,
            group_key=str(point.group_key),
            group_name=point.group_name,
            category_name=point.category_name,
            amount_cents=point.amount_cents,
            parent_group_key=(
                str(point.parent_group_key) if point.parent_group_key else None
            ),
            previous_amount_cents=point.previous_amount_cents,
            year_ago_amount_cents=point.year_ago_amount_cents,
        )


class ReportAggregationOut(BaseModel):
    interval: ReportInterval
    compare_previous: bool
    compare_year: bool
    points: list[ReportPointOut]


class RebuildTaskOut(BaseModel):
    user_id: int
    status: Literal["queued", "running", "completed", "failed"]
    processed: int = 0
    total: int = 0
    message: Optional[str] = None
    queued_at: datetime
    finished_at: Optional[datetime] = None
