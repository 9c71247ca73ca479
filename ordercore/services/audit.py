"""Audit trail recording"""
from typing import Any, Dict, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from ordercore.models.audit import AuditAction, AuditLog, ResourceType

logger = logging.getLogger(__name__)


class AuditService:
    """Best-effort audit sink; a failed write never fails the business operation"""

    @staticmethod
    def record(
        db: Session,
        actor_id: int,
        action: AuditAction,
        resource_type: ResourceType,
        resource_id: Optional[int],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Write one audit row in its own transaction, after the business commit"""
        try:
            db.add(AuditLog(
                actor_id=actor_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                old_values=old_value,
                new_values=new_value,
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record audit {action.value} {resource_type.value}:{resource_id}: {e}")
            return False

        logger.debug(f"Audit {action.value} {resource_type.value}:{resource_id} by user {actor_id}")
        return True
