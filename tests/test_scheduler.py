from contextlib import contextmanager
from datetime import date

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from models import Account, Contact, Posting, PostingAggregate, PostingKind
from scheduler import SchedulerManager, rebuild_job_id


def make_manager():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def scope():
        session = SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return SchedulerManager(session_factory=scope), SessionLocal


def test_run_rebuild_records_completed_task() -> None:
    manager, SessionLocal = make_manager()
    with SessionLocal() as session:
        grocer = Contact(user_id=1, name="Grocer")
        session.add(grocer)
        session.flush()
        session.add(
            Posting(
                kind=PostingKind.contact,
                contact_id=grocer.id,
                booking_date=date(2024, 1, 1),
                amount_cents=500,
            )
        )
        session.commit()

    info = manager.run_rebuild(1)

    assert info.status == "completed"
    assert info.processed == info.total == 8
    assert info.finished_at is not None
    assert manager.task_info(1) is info
    with SessionLocal() as session:
        assert session.scalar(select(func.count(PostingAggregate.id))) == 8


def test_run_rebuild_records_failure() -> None:
    manager, SessionLocal = make_manager()
    with SessionLocal() as session:
        grocer = Contact(user_id=1, name="Grocer")
        checking = Account(user_id=1, name="Checking")
        session.add_all([grocer, checking])
        session.flush()
        session.add(
            Posting(
                kind=PostingKind.bank,
                account_id=checking.id,
                contact_id=grocer.id,
                booking_date=date(2024, 1, 1),
                amount_cents=500,
            )
        )
        session.commit()

    info = manager.run_rebuild(1)

    assert info.status == "failed"
    assert "exactly" in info.message


def test_enqueue_returns_pending_task() -> None:
    manager, _ = make_manager()

    first = manager.enqueue_rebuild(3)
    second = manager.enqueue_rebuild(3)

    assert first is second
    assert first.status == "queued"
    assert manager.scheduler.get_job(rebuild_job_id(3)) is not None


def test_nightly_rebuild_covers_every_owner() -> None:
    manager, SessionLocal = make_manager()
    with SessionLocal() as session:
        session.add_all([Contact(user_id=1, name="A"), Contact(user_id=4, name="B")])
        session.commit()

    manager._run_nightly()

    assert manager.task_info(1).status == "completed"
    assert manager.task_info(4).status == "completed"
