from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    insert,
)

from care_migration.contracts.backup_service import BackupSettings
from care_migration.contracts.collaborators import AuditService, EventPublisher, NotificationService
from care_migration.lib.crypto import EncryptionService
from care_migration.lib.db_manager import DatabaseManager
from care_migration.services.backup_manager import BackupManager
from care_migration.services.backup_storage import BackupStorage
from care_migration.services.pipeline_store import SqlPipelineDataStore
from care_migration.services.restore_manager import RestoreManager

VALID_NHS_NUMBER = "9434765919"
INVALID_NHS_NUMBER = "1234567890"


class RecordingAudit(AuditService):
    """Keeps every audit event in memory"""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    def log_event(self, action, entity_type, entity_id, details=None, user_id='system'):
        self.events.append({
            'action': action,
            'entity_type': entity_type,
            'entity_id': entity_id,
            'details': details,
            'user_id': user_id,
        })

    def actions(self) -> List[str]:
        return [event['action'] for event in self.events]


class RecordingEvents(EventPublisher):
    """Keeps every emitted lifecycle event in memory"""

    def __init__(self):
        self.emitted: List[Tuple[str, Dict[str, Any]]] = []

    def emit(self, event_name, payload):
        self.emitted.append((event_name, payload))

    def names(self) -> List[str]:
        return [name for name, _ in self.emitted]

    def payloads(self, event_name: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.emitted if name == event_name]


class RecordingNotifications(NotificationService):
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def send_notification(self, subject, message, data=None, priority='medium'):
        self.sent.append({'subject': subject, 'message': message, 'data': data, 'priority': priority})


def sqlite_url(tmp_path: Path, name: str) -> str:
    return f"sqlite:///{tmp_path / name}.db"


def make_database(tmp_path: Path, name: str) -> DatabaseManager:
    db = DatabaseManager(sqlite_url(tmp_path, name), name=name)
    db.initialize()
    return db


def patients_source_table(metadata: MetaData) -> Table:
    return Table(
        'patients', metadata,
        Column('id', Integer, primary_key=True),
        Column('nhs_number', String(20)),
        Column('name', String(100)),
    )


def patients_target_table(metadata: MetaData, name_limit: Optional[int] = None) -> Table:
    constraints = []
    if name_limit is not None:
        constraints.append(CheckConstraint(f"length(name) <= {name_limit}", name='name_length'))
    return Table(
        'patients', metadata,
        Column('patient_id', Integer, primary_key=True),
        Column('nhs_number', String(255)),
        Column('nhs_number_encrypted', Boolean),
        Column('name', String(100)),
        Column('migrated_at', DateTime(timezone=True)),
        Column('migration_source', String(50)),
        *constraints
    )


def care_tables(metadata: MetaData) -> Tuple[Table, Table]:
    """A parent/child pair used as a backup pipeline"""
    residents = Table(
        'residents', metadata,
        Column('resident_id', Integer, primary_key=True),
        Column('first_name', String(100), nullable=False),
        Column('date_of_birth', Date),
        Column('admitted_at', DateTime),
    )
    contacts = Table(
        'emergency_contacts', metadata,
        Column('contact_id', Integer, primary_key=True),
        Column('resident_id', Integer, ForeignKey('residents.resident_id')),
        Column('contact_name', String(100), nullable=False),
    )
    return residents, contacts


def seed_care_data(db: DatabaseManager, residents: int = 100) -> None:
    metadata = MetaData()
    resident_table, contact_table = care_tables(metadata)
    metadata.create_all(db.engine)

    with db.transaction() as session:
        session.execute(insert(resident_table), [
            {
                'resident_id': i,
                'first_name': f"Resident {i}",
                'date_of_birth': date(1940, 1, 1 + i % 28),
                'admitted_at': datetime(2023, 5, 1, 9, 30),
            }
            for i in range(1, residents + 1)
        ])
        session.execute(insert(contact_table), [
            {'contact_id': i, 'resident_id': i, 'contact_name': f"Contact {i}"}
            for i in range(1, residents // 10 + 1)
        ])


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture
def events() -> RecordingEvents:
    return RecordingEvents()


@pytest.fixture
def notifications() -> RecordingNotifications:
    return RecordingNotifications()


@pytest.fixture(scope="session")
def encryption() -> EncryptionService:
    return EncryptionService(secret="test-backup-secret")


@pytest.fixture
def source_db(tmp_path: Path):
    db = make_database(tmp_path, "source")
    yield db
    db.close()


@pytest.fixture
def target_db(tmp_path: Path):
    db = make_database(tmp_path, "target")
    yield db
    db.close()


@pytest.fixture
def care_db(tmp_path: Path):
    """Target database holding a seeded residents/emergency_contacts pipeline"""
    db = make_database(tmp_path, "care")
    seed_care_data(db)
    yield db
    db.close()


@pytest.fixture
def data_store(care_db: DatabaseManager) -> SqlPipelineDataStore:
    store = SqlPipelineDataStore()
    store.register_pipeline('resident-service', care_db, ['residents', 'emergency_contacts'])
    return store


@pytest.fixture
def storage(tmp_path: Path) -> BackupStorage:
    return BackupStorage(tmp_path / "backups")


@pytest.fixture
def backup_manager(storage, data_store, encryption, events, audit, notifications) -> BackupManager:
    return BackupManager(
        storage,
        data_store,
        settings=BackupSettings(storage_path=str(storage.root)),
        encryption=encryption,
        events=events,
        audit=audit,
        notifications=notifications,
    )


@pytest.fixture
def restore_manager(storage, data_store, backup_manager, encryption, events, audit, notifications) -> RestoreManager:
    return RestoreManager(
        storage,
        data_store,
        backup_manager,
        encryption=encryption,
        events=events,
        audit=audit,
        notifications=notifications,
    )


@pytest.fixture
def utc_now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
