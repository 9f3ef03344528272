"""
SQLAlchemy Base Model and Common Utilities

This module provides the declarative base and common columns for the
care-migration bookkeeping tables (currently the audit log).
"""

import re
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import Column, DateTime, MetaData, Uuid
from sqlalchemy.orm import declarative_base, declared_attr
from sqlalchemy.sql import func

# Create metadata with naming convention for constraints
# This ensures consistent constraint naming across different databases
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


class BaseModel:
    """
    Base model class providing common fields and functionality

    All model classes inherit from this base to get a UUID primary key and
    timestamp tracking.
    """

    @declared_attr
    def __tablename__(cls):
        """Generate table name from class name (convert CamelCase to snake_case)"""
        name = re.sub('(.)([A-Z][a-z]+)', r'\1_\2', cls.__name__)
        return re.sub('([a-z0-9])([A-Z])', r'\1_\2', name).lower()

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        comment="Unique identifier"
    )

    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        comment="Record creation timestamp"
    )

    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        comment="Record last update timestamp"
    )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert model instance to dictionary

        Returns:
            Dictionary representation of the model
        """
        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            if isinstance(value, uuid.UUID):
                value = str(value)
            elif isinstance(value, datetime):
                value = value.isoformat()
            result[column.name] = value
        return result

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(id={self.id})>"


Base = declarative_base(cls=BaseModel, metadata=metadata)


class OperationType:
    """Operation families recorded in the audit log"""
    MIGRATION = "migration"
    BACKUP = "backup"
    RESTORE = "restore"
    RETENTION = "retention"
    IMPORT = "import"
    SYSTEM = "system"

    ALL = (MIGRATION, BACKUP, RESTORE, RETENTION, IMPORT, SYSTEM)


class OperationStatus:
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"
    IN_PROGRESS = "in_progress"
