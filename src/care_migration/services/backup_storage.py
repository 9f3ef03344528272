"""
Backup Storage

Directory layout for backup artifacts and their metadata::

    <root>/full/<backup_id>.backup[.gz][.enc]
    <root>/incremental/...
    <root>/differential/...
    <root>/metadata/<backup_id>.json
    <root>/temp/

Metadata is one JSON document per backup, written atomically and readable
without touching the artifact. Artifact bytes are staged under ``temp/`` and
moved into place, so a type directory never holds two versions of one backup.
"""

import gzip
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from care_migration.contracts.backup_service import BackupMetadata, BackupType
from care_migration.contracts.collaborators import LogicalDataset, TableSnapshot
from care_migration.lib.crypto import EncryptionService
from care_migration.lib.exceptions import BackupException, BackupNotFoundException, CryptoException
from care_migration.lib.json_codec import (
    FORMAT_VERSION,
    dataset_from_dict,
    dataset_to_dict,
    json_dumps,
    json_loads,
)

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIX = '.backup'
COMPRESSED_SUFFIX = '.gz'
ENCRYPTED_SUFFIX = '.enc'
METADATA_DIR = 'metadata'
TEMP_DIR = 'temp'
SCHEDULES_FILE = 'schedules.json'

DELTA_KIND = 'delta'


class BackupStorage:
    """Filesystem store for backup artifacts and metadata"""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        for directory in [t.value for t in BackupType] + [METADATA_DIR, TEMP_DIR]:
            (self.root / directory).mkdir(parents=True, exist_ok=True)

    # Paths

    def type_dir(self, backup_type: BackupType) -> Path:
        return self.root / backup_type.value

    def temp_path(self, name: str) -> Path:
        return self.root / TEMP_DIR / name

    def artifact_path(self, backup_id: str, backup_type: BackupType,
                      compressed: bool = False, encrypted: bool = False) -> Path:
        name = backup_id + ARTIFACT_SUFFIX
        if compressed:
            name += COMPRESSED_SUFFIX
        if encrypted:
            name += ENCRYPTED_SUFFIX
        return self.type_dir(backup_type) / name

    def artifact_path_for(self, metadata: BackupMetadata) -> Path:
        """Final artifact location implied by the stages a backup went through"""
        return self.artifact_path(
            metadata.backup_id,
            metadata.backup_type,
            compressed=metadata.compression_ratio is not None,
            encrypted=metadata.encryption_algorithm is not None,
        )

    def existing_artifacts(self, backup_id: str) -> List[Path]:
        """Every artifact file of a backup, whatever stage it reached"""
        found = []
        for backup_type in BackupType:
            found.extend(sorted(self.type_dir(backup_type).glob(f"{backup_id}{ARTIFACT_SUFFIX}*")))
        found.extend(sorted((self.root / TEMP_DIR).glob(f"{backup_id}*")))
        return found

    # Artifact bytes

    def write_new(self, destination: Path, data: bytes) -> Path:
        """Write bytes to a temp file, then move them to ``destination``"""
        staging = self.temp_path(destination.name + '.partial')
        with open(staging, 'wb') as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(staging, destination)
        return destination

    def replace_artifact(self, current: Path, destination: Path, data: bytes) -> Path:
        """
        Swap ``current`` for a new artifact holding ``data`` at ``destination``

        The new bytes are staged under temp/, the old artifact is deleted, and
        only then is the new one moved into the type directory.
        """
        staging = self.temp_path(destination.name + '.partial')
        with open(staging, 'wb') as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())

        current.unlink()
        os.replace(staging, destination)
        return destination

    def compress_artifact(self, current: Path, level: int) -> Path:
        """Gzip an artifact in place of the original; returns the new path"""
        destination = current.with_name(current.name + COMPRESSED_SUFFIX)
        staging = self.temp_path(destination.name + '.partial')

        with open(current, 'rb') as source, gzip.open(staging, 'wb', compresslevel=level) as target:
            shutil.copyfileobj(source, target)

        current.unlink()
        os.replace(staging, destination)
        return destination

    def delete_artifacts(self, backup_id: str) -> int:
        """Remove every artifact file of a backup; returns bytes reclaimed"""
        reclaimed = 0
        for path in self.existing_artifacts(backup_id):
            reclaimed += path.stat().st_size
            path.unlink()
            logger.debug(f"Deleted backup artifact {path}")
        return reclaimed

    # Metadata

    def metadata_path(self, backup_id: str) -> Path:
        return self.root / METADATA_DIR / f"{backup_id}.json"

    def save_metadata(self, metadata: BackupMetadata) -> None:
        path = self.metadata_path(metadata.backup_id)
        staging = self.temp_path(path.name + '.partial')
        with open(staging, 'w', encoding='utf-8') as fh:
            json.dump(metadata.to_dict(), fh, indent=2)
        os.replace(staging, path)

    def load_metadata(self, backup_id: str) -> BackupMetadata:
        path = self.metadata_path(backup_id)
        if not path.exists():
            raise BackupNotFoundException(f"Backup not found: {backup_id}", {'backup_id': backup_id})

        with open(path, 'r', encoding='utf-8') as fh:
            return BackupMetadata.from_dict(json.load(fh))

    def delete_metadata(self, backup_id: str) -> bool:
        path = self.metadata_path(backup_id)
        if path.exists():
            path.unlink()
            return True
        return False

    def list_metadata(self, pipeline_id: Optional[str] = None) -> List[BackupMetadata]:
        """All persisted metadata, newest first"""
        records = []
        for path in (self.root / METADATA_DIR).glob('*.json'):
            try:
                with open(path, 'r', encoding='utf-8') as fh:
                    metadata = BackupMetadata.from_dict(json.load(fh))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable backup metadata {path.name}: {e}")
                continue

            if pipeline_id is None or metadata.pipeline_id == pipeline_id:
                records.append(metadata)

        records.sort(key=lambda m: m.created_at, reverse=True)
        return records

    def used_bytes(self) -> int:
        total = 0
        for backup_type in BackupType:
            total += sum(p.stat().st_size for p in self.type_dir(backup_type).iterdir() if p.is_file())
        return total

    # Schedules

    def load_schedules(self) -> Dict[str, Dict[str, Any]]:
        path = self.root / SCHEDULES_FILE
        if not path.exists():
            return {}
        with open(path, 'r', encoding='utf-8') as fh:
            return json.load(fh)

    def save_schedules(self, schedules: Dict[str, Dict[str, Any]]) -> None:
        path = self.root / SCHEDULES_FILE
        staging = self.temp_path(SCHEDULES_FILE + '.partial')
        with open(staging, 'w', encoding='utf-8') as fh:
            json.dump(schedules, fh, indent=2, default=str)
        os.replace(staging, path)

    # Decoding

    def read_document(self, metadata: BackupMetadata,
                      encryption: Optional[EncryptionService] = None) -> Dict[str, Any]:
        """Undo encryption and compression and parse the artifact JSON"""
        path = self.artifact_path_for(metadata)
        if not path.exists():
            raise BackupNotFoundException(
                f"Artifact for backup {metadata.backup_id} is missing",
                {'backup_id': metadata.backup_id, 'path': str(path)}
            )

        payload = path.read_bytes()

        if metadata.encryption_algorithm is not None:
            if encryption is None:
                raise CryptoException(f"Backup {metadata.backup_id} is encrypted but no key is configured")
            payload = encryption.decrypt(payload)

        if metadata.compression_ratio is not None:
            payload = gzip.decompress(payload)

        return json_loads(payload.decode('utf-8'))

    def read_dataset(self, metadata: BackupMetadata,
                     encryption: Optional[EncryptionService] = None,
                     _seen: Optional[set] = None) -> LogicalDataset:
        """
        Materialize the logical dataset a backup represents

        Incremental and differential artifacts are applied on top of their
        base backup, recursively.
        """
        document = self.read_document(metadata, encryption)

        if document.get('kind') != DELTA_KIND:
            return dataset_from_dict(document)

        seen = _seen or set()
        if metadata.backup_id in seen:
            raise BackupException(f"Backup chain loop at {metadata.backup_id}")
        seen.add(metadata.backup_id)

        base = self.load_metadata(document['base_backup_id'])
        base_dataset = self.read_dataset(base, encryption, seen)
        return apply_delta(base_dataset, document)


def encode_full(dataset: LogicalDataset) -> bytes:
    document = dataset_to_dict(dataset)
    document['kind'] = 'full'
    return json_dumps(document).encode('utf-8')


def compute_delta(base: LogicalDataset, current: LogicalDataset, base_backup_id: str) -> Dict[str, Any]:
    """
    Describe ``current`` as changes against ``base``, keyed by primary key

    Returns:
        Delta document with inserted, updated and deleted rows per table
    """
    tables = []
    for snapshot in current.tables:
        base_snapshot = base.table(snapshot.name)
        base_rows = {}
        if base_snapshot is not None:
            base_rows = {base_snapshot.key_of(row): row for row in base_snapshot.rows}

        current_rows = {snapshot.key_of(row): row for row in snapshot.rows}

        inserted = [row for key, row in current_rows.items() if key not in base_rows]
        updated = [row for key, row in current_rows.items() if key in base_rows and base_rows[key] != row]
        deleted = [list(key) for key in base_rows if key not in current_rows]

        tables.append({
            'name': snapshot.name,
            'primary_key': list(snapshot.primary_key),
            'columns': list(snapshot.columns),
            'inserted': inserted,
            'updated': updated,
            'deleted': deleted,
        })

    current_names = {snapshot.name for snapshot in current.tables}
    for base_snapshot in base.tables:
        if base_snapshot.name not in current_names:
            tables.append({
                'name': base_snapshot.name,
                'primary_key': list(base_snapshot.primary_key),
                'columns': list(base_snapshot.columns),
                'inserted': [],
                'updated': [],
                'deleted': [list(base_snapshot.key_of(row)) for row in base_snapshot.rows],
                'dropped': True,
            })

    return {
        'format_version': FORMAT_VERSION,
        'kind': DELTA_KIND,
        'pipeline_id': current.pipeline_id,
        'base_backup_id': base_backup_id,
        'tables': tables,
    }


def delta_change_count(delta: Dict[str, Any]) -> int:
    return sum(
        len(table['inserted']) + len(table['updated']) + len(table['deleted'])
        for table in delta['tables']
    )


def apply_delta(base: LogicalDataset, delta: Dict[str, Any]) -> LogicalDataset:
    """Rebuild a dataset from its base and a delta document"""
    result = LogicalDataset(pipeline_id=delta.get('pipeline_id', base.pipeline_id))
    changes = {table['name']: table for table in delta['tables']}

    for base_snapshot in base.tables:
        change = changes.pop(base_snapshot.name, None)
        if change is not None and change.get('dropped'):
            continue
        if change is None:
            result.tables.append(TableSnapshot(
                name=base_snapshot.name,
                primary_key=list(base_snapshot.primary_key),
                columns=list(base_snapshot.columns),
                rows=list(base_snapshot.rows),
            ))
            continue

        snapshot = TableSnapshot(
            name=base_snapshot.name,
            primary_key=change['primary_key'],
            columns=change['columns'],
        )
        rows = {base_snapshot.key_of(row): row for row in base_snapshot.rows}
        for key in change['deleted']:
            rows.pop(tuple(key), None)
        for row in change['updated'] + change['inserted']:
            rows[snapshot.key_of(row)] = row

        snapshot.rows = list(rows.values())
        result.tables.append(snapshot)

    # tables that first appeared after the base
    for change in changes.values():
        result.tables.append(TableSnapshot(
            name=change['name'],
            primary_key=change['primary_key'],
            columns=change['columns'],
            rows=list(change['inserted']) + list(change['updated']),
        ))

    return result
