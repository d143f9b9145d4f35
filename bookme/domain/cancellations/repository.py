"""Cancellation policy repository"""

import uuid
from typing import Optional

from sqlalchemy.orm import Session, selectinload

from ...models import CancellationPolicy


class CancellationPolicyRepository:
    @staticmethod
    def get_active_policies(db: Session) -> list[CancellationPolicy]:
        return (
            db.query(CancellationPolicy)
            .options(selectinload(CancellationPolicy.conditions))
            .filter(CancellationPolicy.is_active.is_(True))
            .order_by(CancellationPolicy.reason_key)
            .all()
        )

    @staticmethod
    def get_policy(db: Session, policy_id: uuid.UUID) -> Optional[CancellationPolicy]:
        return (
            db.query(CancellationPolicy)
            .filter(CancellationPolicy.id == policy_id, CancellationPolicy.is_active.is_(True))
            .first()
        )

    @staticmethod
    def get_policy_by_key(db: Session, reason_key: str) -> Optional[CancellationPolicy]:
        return db.query(CancellationPolicy).filter(CancellationPolicy.reason_key == reason_key).first()
