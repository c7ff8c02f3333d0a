import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.core import config
from booking_engine.core.errors import InvalidPolicy, PersistenceUnavailable
from booking_engine.database import transaction_scope, utc_now
from booking_engine.models.policy import CapacityPolicy, CapacityPolicyChange
from booking_engine.schemas import PolicySnapshot
from booking_engine.services.notifications import (
    SETTINGS_UPDATED,
    LoggingNotifier,
    Notifier,
    publish_safely,
)

logger = logging.getLogger(__name__)

DEFAULT_POLICY_DESCRIPTION = 'Default appointment settings'


@dataclass(frozen=True)
class PolicyUpdate:
    old_limit: int
    policy: CapacityPolicy


class PolicyStore:
    """Reads and writes the organization's single capacity policy row.

    Reads always hit the database; admission decisions must never see a stale limit.
    """

    def __init__(self, notifier: Notifier | None = None, default_limit: int = config.DEFAULT_DAILY_LIMIT):
        self._notifier = notifier or LoggingNotifier()
        self._default_limit = default_limit

    def _current(self, db: Session, *, for_update: bool = False) -> CapacityPolicy | None:
        query = db.query(CapacityPolicy).order_by(CapacityPolicy.id.asc())
        if for_update:
            query = query.with_for_update()
        return query.first()

    def _materialize_default(self, db: Session) -> CapacityPolicy:
        # Two racing first reads may both insert; the lowest id is always the one read back.
        policy = CapacityPolicy(
            daily_limit_per_user=self._default_limit,
            is_active=True,
            description=DEFAULT_POLICY_DESCRIPTION,
        )
        db.add(policy)
        db.flush()
        logger.info('Created default capacity policy (limit=%s)', self._default_limit)
        return self._current(db)

    def get_active_policy(self, db: Session) -> CapacityPolicy:
        try:
            policy = self._current(db)
            if policy is None:
                policy = self._materialize_default(db)
                db.commit()
            return policy
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('Failed to load capacity policy')
            raise PersistenceUnavailable('Capacity policy is unavailable.', cause=exc) from exc

    def snapshot(self, db: Session) -> PolicySnapshot:
        """Read the policy inside the caller's transaction without committing it."""
        policy = self._current(db) or self._materialize_default(db)
        return PolicySnapshot(
            policy_id=policy.id,
            daily_limit_per_user=policy.daily_limit_per_user,
            is_active=bool(policy.is_active),
        )

    def update_policy(
        self,
        db: Session,
        new_limit: int,
        active: bool = True,
        description: str | None = None,
        updated_by: int | None = None,
    ) -> PolicyUpdate:
        if isinstance(new_limit, bool) or not isinstance(new_limit, int) or new_limit < 0:
            raise InvalidPolicy('Daily booking limit must be a non-negative integer.')

        try:
            with transaction_scope(db):
                policy = self._current(db, for_update=True) or self._materialize_default(db)
                old_limit = policy.daily_limit_per_user

                policy.daily_limit_per_user = new_limit
                policy.is_active = active
                policy.description = description
                policy.last_updated_by = updated_by
                db.flush()

                db.add(
                    CapacityPolicyChange(
                        policy_id=policy.id,
                        old_limit=old_limit,
                        new_limit=new_limit,
                        is_active=active,
                        description=description,
                        updated_by=updated_by,
                    )
                )
        except SQLAlchemyError as exc:
            logger.exception('Failed to update capacity policy')
            raise PersistenceUnavailable('Capacity policy could not be updated.', cause=exc) from exc

        db.refresh(policy)
        logger.info('Capacity policy %s updated: limit %s -> %s (active=%s)', policy.id, old_limit, new_limit, active)

        publish_safely(
            self._notifier,
            SETTINGS_UPDATED,
            {
                'id': policy.id,
                'old_limit': old_limit,
                'new_limit': new_limit,
                'is_active': bool(policy.is_active),
                'description': policy.description,
                'updated_at': utc_now(),
                'message': f'Appointment settings changed from {old_limit} to {new_limit} bookings per day',
            },
        )
        return PolicyUpdate(old_limit=old_limit, policy=policy)

    def policy_history(self, db: Session, limit: int = 50) -> list[CapacityPolicyChange]:
        return db.query(CapacityPolicyChange).order_by(
            CapacityPolicyChange.changed_at.desc(),
            CapacityPolicyChange.id.desc(),
        ).limit(limit).all()
