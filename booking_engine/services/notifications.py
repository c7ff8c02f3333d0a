"""Notification transport adapters.

The core only knows ``publish(topic, payload)``. Delivery is the collaborator's
concern, so ``publish_safely`` is the one place where a failed publish is logged
and ignored instead of propagated.
"""

import json
import logging
from datetime import date, datetime, time
from threading import Lock
from typing import Any, Protocol

import redis
from sqlalchemy import func
from sqlalchemy.orm import Session

from booking_engine.core import config
from booking_engine.database import utc_now
from booking_engine.models.appointment import APPOINTMENT_STATUSES, Appointment

logger = logging.getLogger(__name__)

SETTINGS_UPDATED = 'settings-updated'
ANALYTICS_UPDATED = 'analytics-updated'
APPOINTMENT_STATUS_CHANGED = 'appointment-status-changed'


class Notifier(Protocol):
    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        ...


def _json_default(value: Any) -> str:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    raise TypeError(f'Object of type {type(value).__name__} is not JSON serializable')


def encode_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, default=_json_default, sort_keys=True)


class LoggingNotifier:
    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        logger.info('Publishing %s: %s', topic, encode_payload(payload))


class RecordingNotifier:
    """Keeps published events in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._lock = Lock()

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.events.append((topic, payload))

    def topics(self) -> list[str]:
        return [topic for topic, _payload in self.events]


class RedisNotifier:
    def __init__(self, client: redis.Redis, channel_prefix: str = config.NOTIFIER_CHANNEL_PREFIX) -> None:
        self._client = client
        self._channel_prefix = channel_prefix

    @classmethod
    def from_url(cls, url: str) -> 'RedisNotifier':
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        return cls(client)

    def channel_for(self, topic: str) -> str:
        return f'{self._channel_prefix}:{topic}'

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        self._client.publish(self.channel_for(topic), encode_payload(payload))


def build_notifier() -> Notifier:
    if config.NOTIFIER_BACKEND == 'redis':
        logger.info('Using Redis notifier')
        return RedisNotifier.from_url(config.REDIS_URL)
    return LoggingNotifier()


def publish_safely(notifier: Notifier, topic: str, payload: dict[str, Any]) -> bool:
    try:
        notifier.publish(topic, payload)
    except Exception:
        logger.warning('Failed to publish %s notification', topic, exc_info=True)
        return False
    return True


def analytics_snapshot(db: Session) -> dict[str, Any]:
    rows = db.query(Appointment.status, func.count(Appointment.id)).filter(
        Appointment.deleted_at.is_(None),
    ).group_by(Appointment.status).all()

    counts = {status: 0 for status in APPOINTMENT_STATUSES}
    counts.update({status: count for status, count in rows})

    return {
        'appointments_by_status': counts,
        'total_appointments': sum(counts.values()),
    }


def publish_analytics_updated(notifier: Notifier, db: Session) -> bool:
    try:
        snapshot = analytics_snapshot(db)
    except Exception:
        logger.warning('Failed to build analytics snapshot', exc_info=True)
        return False
    return publish_safely(notifier, ANALYTICS_UPDATED, {'analytics': snapshot, 'timestamp': utc_now()})
