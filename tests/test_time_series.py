from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import AggregateDateKind, AggregatePeriod, Contact, Posting, PostingKind
from services import (
    AggregatePoint,
    PostingAggregateService,
    PostingTimeSeriesService,
    clamp_series_take,
    series_floor,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def add_posting(session, contact, booking, amount_cents, valuta=None) -> None:
    session.add(
        Posting(
            kind=PostingKind.contact,
            contact_id=contact.id,
            booking_date=booking,
            valuta_date=valuta,
            amount_cents=amount_cents,
        )
    )


def seed(session):
    grocer = Contact(user_id=1, name="Grocer")
    bakery = Contact(user_id=1, name="Bakery")
    foreign = Contact(user_id=2, name="Foreign")
    session.add_all([grocer, bakery, foreign])
    session.flush()
    for month in range(1, 6):
        add_posting(session, grocer, date(2024, month, 10), month * 1_000)
    add_posting(session, bakery, date(2024, 5, 2), 300, valuta=date(2024, 6, 1))
    add_posting(session, foreign, date(2024, 5, 2), 99_999)
    session.commit()
    aggregates = PostingAggregateService(session)
    aggregates.rebuild_for_user(1)
    aggregates.rebuild_for_user(2)
    return grocer, bakery, foreign


def test_series_returns_most_recent_periods_ascending() -> None:
    session = make_session()
    grocer, _, _ = seed(session)
    series = PostingTimeSeriesService(session, today=date(2024, 6, 15))

    points = series.get(1, PostingKind.contact, grocer.id, AggregatePeriod.month, 3)

    assert points == [
        AggregatePoint(date(2024, 3, 1), 3_000),
        AggregatePoint(date(2024, 4, 1), 4_000),
        AggregatePoint(date(2024, 5, 1), 5_000),
    ]
    all_points = series.get(1, PostingKind.contact, grocer.id, AggregatePeriod.month, 0)
    assert len(all_points) == 5
    quarters = series.get(1, PostingKind.contact, grocer.id, AggregatePeriod.quarter, 0)
    assert quarters == [
        AggregatePoint(date(2024, 1, 1), 6_000),
        AggregatePoint(date(2024, 4, 1), 9_000),
    ]


def test_series_for_foreign_entity_is_none() -> None:
    session = make_session()
    _, _, foreign = seed(session)
    series = PostingTimeSeriesService(session, today=date(2024, 6, 15))

    assert series.get(1, PostingKind.contact, foreign.id, AggregatePeriod.month, 12) is None
    assert series.get(1, PostingKind.contact, 4_711, AggregatePeriod.month, 12) is None


def test_series_reads_requested_date_kind() -> None:
    session = make_session()
    _, bakery, _ = seed(session)
    series = PostingTimeSeriesService(session, today=date(2024, 6, 15))

    booking = series.get(1, PostingKind.contact, bakery.id, AggregatePeriod.month, 12)
    valuta = series.get(
        1,
        PostingKind.contact,
        bakery.id,
        AggregatePeriod.month,
        12,
        date_kind=AggregateDateKind.valuta,
    )

    assert booking == [AggregatePoint(date(2024, 5, 1), 300)]
    assert valuta == [AggregatePoint(date(2024, 6, 1), 300)]


def test_cross_entity_series_sums_owned_entities_only() -> None:
    session = make_session()
    seed(session)
    series = PostingTimeSeriesService(session, today=date(2024, 6, 15))

    points = series.get_all(1, PostingKind.contact, AggregatePeriod.month, 2)

    assert points == [
        AggregatePoint(date(2024, 4, 1), 4_000),
        AggregatePoint(date(2024, 5, 1), 5_300),
    ]


def test_series_respects_years_back_floor() -> None:
    session = make_session()
    grocer = Contact(user_id=1, name="Grocer")
    session.add(grocer)
    session.flush()
    add_posting(session, grocer, date(2024, 9, 30), 100)
    add_posting(session, grocer, date(2024, 11, 1), 200)
    session.commit()
    PostingAggregateService(session).rebuild_for_user(1)
    series = PostingTimeSeriesService(session, today=date(2026, 10, 17))

    points = series.get(
        1, PostingKind.contact, grocer.id, AggregatePeriod.month, 0, max_years_back=2
    )

    assert points == [AggregatePoint(date(2024, 11, 1), 200)]


def test_take_and_floor_clamping() -> None:
    assert clamp_series_take(AggregatePeriod.month, 0) == 36
    assert clamp_series_take(AggregatePeriod.quarter, -1) == 16
    assert clamp_series_take(AggregatePeriod.half_year, 0) == 12
    assert clamp_series_take(AggregatePeriod.year, 0) == 10
    assert clamp_series_take(AggregatePeriod.month, 500) == 200

    today = date(2026, 10, 17)
    assert series_floor(None, today) is None
    assert series_floor(0, today) == date(2025, 10, 1)
    assert series_floor(25, today) == date(2016, 10, 1)
