from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    literal_column,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class PostingKind(str, Enum):
    bank = "bank"
    contact = "contact"
    savings_plan = "savings_plan"
    security = "security"


class SecurityPostingSubType(str, Enum):
    buy = "buy"
    sell = "sell"
    dividend = "dividend"
    fee = "fee"
    tax = "tax"


class AggregatePeriod(str, Enum):
    month = "month"
    quarter = "quarter"
    half_year = "half_year"
    year = "year"


class AggregateDateKind(str, Enum):
    booking = "booking"
    valuta = "valuta"


class ReportInterval(str, Enum):
    month = "month"
    quarter = "quarter"
    half_year = "half_year"
    year = "year"
    ytd = "ytd"
    all_history = "all_history"


# Posting column holding the entity reference for each kind.
KIND_REFERENCE_COLUMNS: dict[PostingKind, str] = {
    PostingKind.bank: "account_id",
    PostingKind.contact: "contact_id",
    PostingKind.savings_plan: "savings_plan_id",
    PostingKind.security: "security_id",
}


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class ContactCategory(Base, TimestampMixin):
    __tablename__ = "contact_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class SavingsPlanCategory(Base, TimestampMixin):
    __tablename__ = "savings_plan_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class SecurityCategory(Base, TimestampMixin):
    __tablename__ = "security_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    iban: Mapped[Optional[str]] = mapped_column(String(34))
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    __table_args__ = (Index("ix_accounts_user", "user_id"),)


class Contact(Base, TimestampMixin):
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("contact_categories.id")
    )

    category: Mapped[Optional["ContactCategory"]] = relationship("ContactCategory")

    __table_args__ = (Index("ix_contacts_user", "user_id"),)


class SavingsPlan(Base, TimestampMixin):
    __tablename__ = "savings_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("savings_plan_categories.id")
    )

    category: Mapped[Optional["SavingsPlanCategory"]] = relationship(
        "SavingsPlanCategory"
    )

    __table_args__ = (Index("ix_savings_plans_user", "user_id"),)


class Security(Base, TimestampMixin):
    __tablename__ = "securities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    identifier: Mapped[Optional[str]] = mapped_column(String(50))
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("security_categories.id")
    )

    category: Mapped[Optional["SecurityCategory"]] = relationship("SecurityCategory")

    __table_args__ = (Index("ix_securities_user", "user_id"),)


class Posting(Base, TimestampMixin):
    __tablename__ = "postings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[PostingKind] = mapped_column(SAEnum(PostingKind), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    contact_id: Mapped[Optional[int]] = mapped_column(ForeignKey("contacts.id"))
    savings_plan_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("savings_plans.id")
    )
    security_id: Mapped[Optional[int]] = mapped_column(ForeignKey("securities.id"))
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    valuta_date: Mapped[Optional[date]] = mapped_column(Date)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    security_sub_type: Mapped[Optional[SecurityPostingSubType]] = mapped_column(
        SAEnum(SecurityPostingSubType)
    )
    group_id: Mapped[Optional[str]] = mapped_column(String(36))
    quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6))
    subject: Mapped[Optional[str]] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_postings_account_date", "account_id", "booking_date"),
        Index("ix_postings_contact_date", "contact_id", "booking_date"),
        Index("ix_postings_savings_plan_date", "savings_plan_id", "booking_date"),
        Index("ix_postings_security_date", "security_id", "booking_date"),
        Index("ix_postings_group", "group_id"),
    )

    @property
    def entity_id(self) -> Optional[int]:
        return getattr(self, KIND_REFERENCE_COLUMNS[self.kind])


class PostingAggregate(Base, TimestampMixin):
    __tablename__ = "posting_aggregates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[PostingKind] = mapped_column(SAEnum(PostingKind), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    contact_id: Mapped[Optional[int]] = mapped_column(ForeignKey("contacts.id"))
    savings_plan_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("savings_plans.id")
    )
    security_id: Mapped[Optional[int]] = mapped_column(ForeignKey("securities.id"))
    security_sub_type: Mapped[Optional[SecurityPostingSubType]] = mapped_column(
        SAEnum(SecurityPostingSubType)
    )
    period: Mapped[AggregatePeriod] = mapped_column(
        SAEnum(AggregatePeriod), nullable=False
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    date_kind: Mapped[AggregateDateKind] = mapped_column(
        SAEnum(AggregateDateKind), nullable=False, default=AggregateDateKind.booking
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index(
            "ix_posting_aggregates_kind_period",
            "kind",
            "period",
            "date_kind",
            "period_start",
        ),
    )

    @property
    def entity_id(self) -> Optional[int]:
        return getattr(self, KIND_REFERENCE_COLUMNS[self.kind])


# NULL never collides with NULL in a plain unique constraint, so the nullable
# key columns are coalesced.
Index(
    "uq_posting_aggregate_key",
    PostingAggregate.kind,
    func.coalesce(PostingAggregate.account_id, literal_column("-1")),
    func.coalesce(PostingAggregate.contact_id, literal_column("-1")),
    func.coalesce(PostingAggregate.savings_plan_id, literal_column("-1")),
    func.coalesce(PostingAggregate.security_id, literal_column("-1")),
    func.coalesce(PostingAggregate.security_sub_type, literal_column("''")),
    PostingAggregate.period,
    PostingAggregate.period_start,
    PostingAggregate.date_kind,
    unique=True,
)
