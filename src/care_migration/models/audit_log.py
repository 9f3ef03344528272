"""
AuditLog Model

Persistent audit trail for migration, backup, restore and retention actions.
"""

from sqlalchemy import Column, String, Text, CheckConstraint, JSON
from sqlalchemy.orm import validates

from . import Base, OperationStatus, OperationType

# Action name prefix -> operation family
_ACTION_FAMILIES = (
    ('MIGRATION_', OperationType.MIGRATION),
    ('TABLE_MIGRATION_', OperationType.MIGRATION),
    ('BACKUP_EXPIRED_', OperationType.RETENTION),
    ('BACKUP_', OperationType.BACKUP),
    ('SCHEDULE_', OperationType.BACKUP),
    ('RESTORE_', OperationType.RESTORE),
    ('FILE_IMPORT_', OperationType.IMPORT),
)


def operation_type_for(action: str) -> str:
    for prefix, family in _ACTION_FAMILIES:
        if action.startswith(prefix):
            return family
    return OperationType.SYSTEM


def operation_status_for(action: str) -> str:
    if action.endswith('_FAILED'):
        return OperationStatus.FAILURE
    if action.endswith('_STARTED'):
        return OperationStatus.IN_PROGRESS
    return OperationStatus.SUCCESS


class AuditLog(Base):
    """Audit trail entry for one core action"""

    operation_type = Column(
        String(50),
        nullable=False,
        comment="Type of operation: migration, backup, restore, retention, system"
    )

    action = Column(
        String(100),
        nullable=False,
        comment="Action name, e.g. BACKUP_EXPIRED_DELETED"
    )

    entity_type = Column(
        String(100),
        nullable=False,
        comment="Type of entity affected: MigrationBackup, MigrationTable, etc."
    )

    entity_id = Column(
        String(255),
        nullable=False,
        comment="ID of the affected entity"
    )

    operation_status = Column(
        String(20),
        nullable=False,
        comment="Operation result: success, failure, warning, in_progress"
    )

    user_context = Column(
        String(255),
        nullable=True,
        comment="User or system context that initiated the operation"
    )

    details = Column(
        JSON,
        nullable=True,
        comment="Operation payload"
    )

    error_message = Column(
        Text,
        nullable=True,
        comment="Error message if operation failed"
    )

    __table_args__ = (
        CheckConstraint(
            "operation_type IN ('migration', 'backup', 'restore', 'retention', 'import', 'system')",
            name="valid_operation_type"
        ),
        CheckConstraint(
            "operation_status IN ('success', 'failure', 'warning', 'in_progress')",
            name="valid_operation_status"
        ),
    )

    @validates('action')
    def validate_action(self, key: str, action: str) -> str:
        """Validate action is not empty"""
        if not action or not action.strip():
            raise ValueError("action cannot be empty")
        return action.strip().upper()

    @classmethod
    def log_operation(cls, action: str, entity_type: str, entity_id: str,
                      details=None, user_id: str = 'system'):
        """
        Helper method to create audit log entries

        Args:
            action: Upper-case action name
            entity_type: Type of entity affected
            entity_id: ID of affected entity
            details: JSON-serializable payload; an ``error`` key is copied to error_message
            user_id: Initiating user or system context
        """
        error_message = None
        if isinstance(details, dict) and details.get('error'):
            error_message = str(details['error'])

        return cls(
            operation_type=operation_type_for(action),
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            operation_status=operation_status_for(action),
            user_context=user_id,
            details=details,
            error_message=error_message,
        )

    def __repr__(self) -> str:
        return f"<AuditLog(action='{self.action}', status='{self.operation_status}', entity='{self.entity_type}')>"
