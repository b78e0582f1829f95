"""Periodic assignment pass with stop support."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Event
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from ..core.config import InboxSettings, get_inbox_settings
from ..models.session import session_scope
from .audit import AuditSink
from .messaging import MessagingDispatcher
from .repository import SqlAlchemyInboxRepository, tenants_with_queue
from .service import InboxService

logger = logging.getLogger(__name__)


class QueueAssignmentScheduler:
    """Run :meth:`InboxService.assign_queue` for every tenant with a queue.

    Each tenant gets its own transaction so a failure in one tenant never
    blocks the others. The background loop checks a :class:`threading.Event`
    between passes and exits promptly once :meth:`stop` sets it.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        settings: InboxSettings | None = None,
        audit_sink: AuditSink | None = None,
        dispatcher: MessagingDispatcher | None = None,
        service_factory: Callable[[SqlAlchemyInboxRepository], InboxService] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_inbox_settings()
        self._audit_sink = audit_sink
        self._dispatcher = dispatcher
        self._service_factory = service_factory or self._default_service
        self._stop_event = Event()
        self._executor: ThreadPoolExecutor | None = None
        self._future: Future | None = None

    def _default_service(self, repository: SqlAlchemyInboxRepository) -> InboxService:
        return InboxService(
            repository,
            dispatcher=self._dispatcher,
            audit_sink=self._audit_sink,
            settings=self._settings,
        )

    def run_once(self) -> dict[UUID, int]:
        """Run one pass and return the number of sessions assigned per tenant."""

        with session_scope(self._session_factory) as session:
            tenant_ids = tenants_with_queue(session)

        results: dict[UUID, int] = {}
        for tenant_id in tenant_ids:
            if self._stop_event.is_set():
                break
            try:
                with session_scope(self._session_factory) as session:
                    repository = SqlAlchemyInboxRepository(session, tenant_id=tenant_id)
                    results[tenant_id] = self._service_factory(repository).assign_queue()["assigned"]
            except Exception:
                logger.exception("Assignment pass failed for tenant %s", tenant_id)
        return results

    def _loop(self, stop_event: Event) -> None:
        interval = self._settings.scheduler_interval_seconds
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Assignment scheduler pass failed")
            stop_event.wait(interval)

    def start(self) -> None:
        if self._future is not None and not self._future.done():
            return
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="inbox-assign")
        self._future = self._executor.submit(self._loop, self._stop_event)
        logger.info(
            "Assignment scheduler started (every %ss)", self._settings.scheduler_interval_seconds
        )

    def stop(self, *, wait: bool = True) -> None:
        self._stop_event.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        self._future = None

    @property
    def running(self) -> bool:
        return self._future is not None and not self._future.done()


__all__ = ["QueueAssignmentScheduler"]
