"""
Audit, event and notification collaborators.

In-process implementations of the collaborator interfaces the migration and
backup core emits to. Delivery failures are logged here and never reach the
core: these are observability signals, not control dependencies.
"""

import json
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from care_migration.contracts.collaborators import AuditService, EventPublisher, NotificationService
from care_migration.lib.db_manager import DatabaseManager
from care_migration.models import metadata
from care_migration.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

EventListener = Callable[[str, Dict[str, Any]], None]

WILDCARD = '*'


class EventBus(EventPublisher):
    """
    Thread-safe in-process publish/subscribe for lifecycle events

    Listeners subscribe to one event name or to ``'*'`` for every event.
    A failing listener is logged and does not stop the remaining listeners.
    """

    def __init__(self):
        self._listeners: Dict[str, List[EventListener]] = defaultdict(list)
        self._lock = threading.RLock()
        self._stats = {
            'events_published': 0,
            'listeners_invoked': 0,
            'listener_errors': 0,
        }

    def subscribe(self, event_name: str, listener: EventListener) -> None:
        with self._lock:
            self._listeners[event_name].append(listener)

    def subscribe_all(self, listener: EventListener) -> None:
        self.subscribe(WILDCARD, listener)

    def unsubscribe(self, event_name: str, listener: EventListener) -> bool:
        with self._lock:
            listeners = self._listeners.get(event_name, [])
            if listener in listeners:
                listeners.remove(listener)
                return True
            return False

    def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event_name, [])) + list(self._listeners.get(WILDCARD, []))
            self._stats['events_published'] += 1

        logger.debug(f"Event {event_name} -> {len(listeners)} listener(s)")

        for listener in listeners:
            try:
                listener(event_name, payload)
                with self._lock:
                    self._stats['listeners_invoked'] += 1
            except Exception as e:
                with self._lock:
                    self._stats['listener_errors'] += 1
                logger.error(f"Listener for event '{event_name}' failed: {e}", exc_info=True)

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)


def _json_safe(details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if details is None:
        return None
    return json.loads(json.dumps(details, default=str))


class DatabaseAuditTrail(AuditService):
    """Persists audit events to the ``audit_log`` table"""

    def __init__(self, db_manager: DatabaseManager, create_tables: bool = True):
        self.db_manager = db_manager
        if create_tables:
            self.db_manager.initialize()
            metadata.create_all(self.db_manager.engine, tables=[AuditLog.__table__])

    def log_event(self, action: str, entity_type: str, entity_id: str,
                  details: Optional[Dict[str, Any]] = None, user_id: str = 'system') -> None:
        entry = AuditLog.log_operation(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=_json_safe(details),
            user_id=user_id,
        )

        try:
            with self.db_manager.transaction() as session:
                session.add(entry)
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist audit event {action} for {entity_type}/{entity_id}: {e}")
            return

        logger.debug(f"Audit: {action} {entity_type}/{entity_id}")

    def recent_events(self, limit: int = 50, action: Optional[str] = None) -> List[Dict[str, Any]]:
        """Most recent audit entries, newest first"""
        with self.db_manager.get_session() as session:
            query = session.query(AuditLog)
            if action:
                query = query.filter(AuditLog.action == action)
            entries = query.order_by(AuditLog.created_at.desc()).limit(limit).all()
            return [entry.to_dict() for entry in entries]


class LoggingAuditTrail(AuditService):
    """Writes audit events to the application log"""

    def __init__(self, logger_name: str = 'care_migration.audit'):
        self._logger = logging.getLogger(logger_name)

    def log_event(self, action: str, entity_type: str, entity_id: str,
                  details: Optional[Dict[str, Any]] = None, user_id: str = 'system') -> None:
        self._logger.info(
            f"AUDIT {action} {entity_type}/{entity_id} by {user_id}",
            extra={'extra_data': {
                'action': action,
                'entity_type': entity_type,
                'entity_id': entity_id,
                'user_id': user_id,
                'details': _json_safe(details),
            }}
        )


class LoggingNotificationService(NotificationService):
    """Logs operator notifications; priority maps to log level"""

    _LEVELS = {
        'low': logging.INFO,
        'medium': logging.INFO,
        'high': logging.WARNING,
        'critical': logging.ERROR,
    }

    def __init__(self, logger_name: str = 'care_migration.notifications'):
        self._logger = logging.getLogger(logger_name)

    def send_notification(self, subject: str, message: str, data: Optional[Dict[str, Any]] = None,
                          priority: str = 'medium') -> None:
        self._logger.log(
            self._LEVELS.get(priority, logging.INFO),
            f"[{priority.upper()}] {subject}: {message}",
            extra={'extra_data': {'subject': subject, 'data': _json_safe(data)}}
        )
