import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, ContextManager, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from services import PostingAggregateService, owner_user_ids


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


@dataclass
class RebuildTaskInfo:
    user_id: int
    status: str = "queued"
    processed: int = 0
    total: int = 0
    message: Optional[str] = None
    queued_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None


def rebuild_job_id(user_id: int) -> str:
    return f"rebuild_aggregates:{user_id}"


class SchedulerManager:
    def __init__(
        self, session_factory: Callable[[], ContextManager[Session]] = session_scope
    ) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.session_factory = session_factory
        self._tasks: dict[int, RebuildTaskInfo] = {}
        self._owner_locks: dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def _owner_lock(self, user_id: int) -> threading.Lock:
        with self._guard:
            lock = self._owner_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._owner_locks[user_id] = lock
            return lock

    def task_info(self, user_id: int) -> Optional[RebuildTaskInfo]:
        return self._tasks.get(user_id)

    def enqueue_rebuild(self, user_id: int) -> RebuildTaskInfo:
        with self._guard:
            current = self._tasks.get(user_id)
            if current and current.status in ("queued", "running"):
                return current
            info = RebuildTaskInfo(user_id=user_id)
            self._tasks[user_id] = info
        self.scheduler.add_job(
            self.run_rebuild,
            args=[user_id],
            id=rebuild_job_id(user_id),
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=None,
        )
        logger.info(f"rebuild_enqueued: user_id={user_id}")
        return info

    def run_rebuild(self, user_id: int) -> RebuildTaskInfo:
        with self._owner_lock(user_id):
            with self._guard:
                info = self._tasks.get(user_id)
                if info is None or info.status not in ("queued", "running"):
                    info = RebuildTaskInfo(user_id=user_id)
                    self._tasks[user_id] = info
            info.status = "running"

            def progress(processed: int, total: int) -> None:
                info.processed = processed
                info.total = total

            try:
                with self.session_factory() as session:
                    PostingAggregateService(session).rebuild_for_user(user_id, progress)
            except Exception as exc:
                info.status = "failed"
                info.message = str(exc)
                info.finished_at = datetime.utcnow()
                logger.exception(f"rebuild_failed: user_id={user_id}")
                return info

            info.status = "completed"
            info.message = f"Rebuilt {info.total} aggregate rows"
            info.finished_at = datetime.utcnow()
            return info

    def _run_nightly(self) -> None:
        with self.session_factory() as session:
            user_ids = owner_user_ids(session)
        logger.info(f"nightly_rebuild: owners={len(user_ids)}")
        for user_id in user_ids:
            self.run_rebuild(user_id)

    def start(self) -> None:
        hour = get_settings().nightly_rebuild_hour
        if hour >= 0:
            self.scheduler.add_job(
                self._run_nightly,
                CronTrigger(hour=hour, minute=0),
                id="rebuild_aggregates_nightly",
                replace_existing=True,
                misfire_grace_time=3600,
            )
        self.scheduler.start()
        if hour >= 0:
            logger.info(f"Scheduler started with nightly rebuild at {hour:02d}:00")
        else:
            logger.info("Scheduler started without nightly rebuild")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
