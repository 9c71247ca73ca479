"""
Audit trail records
"""
from sqlalchemy import Column, DateTime, Enum as SQLEnum, Integer, JSON
from sqlalchemy.sql import func
from ordercore.db.database import Base
import enum


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ResourceType(str, enum.Enum):
    ORDER = "ORDER"
    PRODUCT = "PRODUCT"


class AuditLog(Base):
    """Audit log model"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(Integer, nullable=False, index=True)
    action = Column(SQLEnum(AuditAction), nullable=False)
    resource_type = Column(SQLEnum(ResourceType), nullable=False)
    resource_id = Column(Integer, index=True)
    old_values = Column(JSON)
    new_values = Column(JSON)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, actor={self.actor_id}, action={self.action}, resource={self.resource_type}:{self.resource_id})>"
