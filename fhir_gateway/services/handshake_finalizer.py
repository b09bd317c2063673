"""
Subscription handshake finalizer

Commits the terminal status of a handshake (active or error) and removes the
handshake tracking tag. Runs on a dedicated single-worker executor, each call
in its own fresh session and transaction, so a failed delivery can never roll
back the Subscription's creation and at most one finalize runs at a time.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional

from fhir_gateway.core.database import transaction
from fhir_gateway.core.logging import get_logger
from fhir_gateway.core.metrics import handshake_finalized_total
from fhir_gateway.core.resilience import retry_database_operation
from fhir_gateway.integrations.fhir import (
    HANDSHAKE_PENDING_STATUSES,
    FHIRResourceType,
    ResourceNotFoundError,
    ResourceStore,
    SubscriptionStatus,
    get_tags,
    remove_tag,
)
from sqlalchemy.orm import Session

logger = get_logger(__name__)


class SubscriptionHandshakeFinalizer:
    """Sets a handshaking Subscription to active/error in an isolated transaction."""

    def __init__(self, session_factory: Callable[[], Session], store: ResourceStore):
        self._session_factory = session_factory
        self._store = store
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="handshake-finalizer")
        self._lock = threading.Lock()
        self._pending: set = set()

    def submit(self, subscription_id: str, mark_system: str, mark_code: str, ok: bool) -> Future:
        """Queue ``finalize_status`` on the finalizer worker without waiting for it."""
        future = self._executor.submit(self._finalize_logged, subscription_id, mark_system, mark_code, ok)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    @retry_database_operation()
    def finalize_status(self, subscription_id: str, mark_system: str, mark_code: str, ok: bool) -> Optional[str]:
        """
        Finalize one handshake.

        Re-reads the Subscription; only if it is still ``off``/``requested`` is
        its status set (active when ``ok``, else error) and the tracking tag
        (mark_system, mark_code) removed. Any other state means another writer
        got there first and the call is a no-op.

        Args:
            subscription_id: Subscription id
            mark_system: Tracking tag system
            mark_code: Tracking tag code
            ok: Whether the handshake delivery succeeded

        Returns:
            The status written, or None when skipped
        """
        with self._session_factory() as db, transaction(db):
            try:
                latest = self._store.read(db, FHIRResourceType.SUBSCRIPTION.value, subscription_id)
            except ResourceNotFoundError:
                logger.info("handshake_finalize_skipped", subscription_id=subscription_id, reason="deleted")
                handshake_finalized_total.labels(status="skipped").inc()
                return None

            current = latest.get("status")
            if current not in HANDSHAKE_PENDING_STATUSES:
                logger.debug("handshake_finalize_skipped", subscription_id=subscription_id, status=current)
                handshake_finalized_total.labels(status="skipped").inc()
                return None

            new_status = SubscriptionStatus.ACTIVE.value if ok else SubscriptionStatus.ERROR.value
            latest["status"] = new_status
            logger.debug("handshake_tags_before_removal", subscription_id=subscription_id, tags=get_tags(latest))
            remove_tag(latest, mark_system, mark_code)

            updated = self._store.update(db, latest)

        logger.info(
            "handshake_finalized",
            subscription_id=subscription_id,
            status=new_status,
            version=updated["meta"]["versionId"],
            tags=len(get_tags(updated)),
        )
        handshake_finalized_total.labels(status=new_status).inc()
        return new_status

    def _finalize_logged(self, subscription_id: str, mark_system: str, mark_code: str, ok: bool) -> Optional[str]:
        try:
            return self.finalize_status(subscription_id, mark_system, mark_code, ok)
        except Exception:
            logger.exception("handshake_finalize_failed", subscription_id=subscription_id, ok=ok)
            raise

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def pending(self) -> List[Future]:
        with self._lock:
            return list(self._pending)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
