"""
Tests for the care-migrate command line interface
"""

import json
import logging
from datetime import date

import pytest
from click.testing import CliRunner
from sqlalchemy import Column, Date, Float, Integer, MetaData, String, Table, insert

from care_migration.cli.main import cli

from conftest import make_database, sqlite_url

ENV_KEYS = (
    'SOURCE_DATABASE_URL', 'AUDIT_DATABASE_URL', 'BACKUP_STORAGE_PATH', 'BACKUP_ENCRYPTION_KEY',
    'PII_ENCRYPTION_KEY', 'LOG_LEVEL', 'LOG_TO_FILE', 'DEBUG', 'MIGRATION_DRY_RUN',
    'BACKUP_ENCRYPTION_ENABLED', 'BACKUP_VERIFICATION_ENABLED', 'BACKUP_COMPRESSION_LEVEL',
    'TARGET_DATABASE_URL_RESIDENT_SERVICE', 'TARGET_DATABASE_URL_MEDICATION_SERVICE',
    'TARGET_DATABASE_URL_FINANCIAL_SERVICE', 'TARGET_DATABASE_URL_HR_SERVICE',
)


@pytest.fixture(autouse=True)
def restore_root_logging():
    """The CLI reconfigures root logging; put it back after each test"""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cli_env(tmp_path, care_db, monkeypatch):
    """Environment with the seeded care database as the resident-service target"""
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv('SOURCE_DATABASE_URL', sqlite_url(tmp_path, 'monolith'))
    monkeypatch.setenv('TARGET_DATABASE_URL_RESIDENT_SERVICE', sqlite_url(tmp_path, 'care'))
    monkeypatch.setenv('BACKUP_STORAGE_PATH', str(tmp_path / 'cli-backups'))
    monkeypatch.setenv('BACKUP_ENCRYPTION_KEY', 'cli-test-secret')
    monkeypatch.setenv('LOG_LEVEL', 'WARNING')
    return tmp_path


def seed_monolith(tmp_path):
    """Source store with every table the default plans read"""
    db = make_database(tmp_path, 'monolith')
    metadata = MetaData()
    residents = Table('residents', metadata, Column('id', Integer, primary_key=True),
                      Column('first_name', String(50)), Column('last_name', String(50)),
                      Column('nhs_number', String(20)), Column('date_of_birth', Date),
                      Column('care_level', String(20)))
    contacts = Table('emergency_contacts', metadata, Column('id', Integer, primary_key=True),
                     Column('resident_id', Integer), Column('name', String(50)),
                     Column('relationship', String(20)), Column('phone', String(20)))
    medications = Table('medications', metadata, Column('id', Integer, primary_key=True),
                        Column('name', String(50)), Column('generic_name', String(50)),
                        Column('strength', String(20)), Column('unit', String(10)))
    prescriptions = Table('prescriptions', metadata, Column('id', Integer, primary_key=True),
                          Column('resident_id', Integer), Column('medication_id', Integer),
                          Column('dosage', Float), Column('frequency', String(20)),
                          Column('prescribed_date', Date))
    billing = Table('billing', metadata, Column('id', Integer, primary_key=True),
                    Column('resident_id', Integer), Column('amount', Float), Column('billing_date', Date))
    staff = Table('staff', metadata, Column('id', Integer, primary_key=True),
                  Column('first_name', String(50)), Column('last_name', String(50)),
                  Column('role', String(20)), Column('email', String(100)))
    metadata.create_all(db.engine)

    with db.transaction() as session:
        session.execute(insert(residents), [{'id': 1, 'first_name': ' Ada ', 'last_name': 'Lovelace',
                                             'nhs_number': '943 476 5919', 'date_of_birth': date(1940, 1, 2),
                                             'care_level': 'Residential'}])
        session.execute(insert(contacts), [{'id': 1, 'resident_id': 1, 'name': 'Byron',
                                            'relationship': 'Son', 'phone': '07700900123'}])
        session.execute(insert(medications), [{'id': 1, 'name': 'Paracetamol', 'generic_name': None,
                                               'strength': '500', 'unit': 'MG'}])
        session.execute(insert(prescriptions), [
            {'id': 1, 'resident_id': 1, 'medication_id': 1, 'dosage': 2.0, 'frequency': 'Daily',
             'prescribed_date': date(2024, 1, 1)},
            {'id': 2, 'resident_id': 1, 'medication_id': 1, 'dosage': 0.0, 'frequency': 'Daily',
             'prescribed_date': date(2024, 1, 1)},
        ])
        session.execute(insert(billing), [{'id': 1, 'resident_id': 1, 'amount': 1250.5,
                                           'billing_date': date(2024, 2, 1)}])
        session.execute(insert(staff), [{'id': 1, 'first_name': 'Mary', 'last_name': 'Seacole',
                                         'role': 'Nurse', 'email': 'mary@example.org'}])
    db.close()


def test_help_lists_commands(runner):
    result = runner.invoke(cli, ['--help'])

    assert result.exit_code == 0
    for command in ('migrate', 'rollback-service', 'backup', 'incremental-backup', 'restore',
                    'list-backups', 'cleanup', 'stats', 'drill', 'schedule', 'import-file', 'show-config'):
        assert command in result.output


def test_version(runner):
    result = runner.invoke(cli, ['--version'])

    assert result.exit_code == 0
    assert '1.0.0' in result.output


def test_backup_list_and_restore(runner, cli_env, care_db):
    backup = runner.invoke(cli, ['backup', 'resident-service', '--tag', 'nightly'])
    assert backup.exit_code == 0, backup.output
    assert 'Records: 110 in 2 table(s)' in backup.output

    listing = runner.invoke(cli, ['list-backups'])
    assert listing.exit_code == 0
    assert 'resident-service: 1 backup(s)' in listing.output

    restore = runner.invoke(cli, ['restore', 'resident-service', '--yes'])
    assert restore.exit_code == 0, restore.output
    assert 'Restore complete!' in restore.output
    assert care_db.count_rows('residents') == 100


def test_incremental_and_differential_backups(runner, cli_env):
    assert runner.invoke(cli, ['backup', 'resident-service']).exit_code == 0

    incremental = runner.invoke(cli, ['incremental-backup', 'resident-service'])
    differential = runner.invoke(cli, ['backup', 'resident-service', '--type', 'differential'])

    assert incremental.exit_code == 0, incremental.output
    assert differential.exit_code == 0, differential.output
    assert 'Records: 0 in 0 table(s)' in differential.output


def test_restore_asks_for_confirmation(runner, cli_env):
    runner.invoke(cli, ['backup', 'resident-service'])

    result = runner.invoke(cli, ['restore', 'resident-service'], input='n\n')

    assert result.exit_code == 1
    assert 'aborted' in result.output


def test_test_restore_needs_no_confirmation(runner, cli_env):
    runner.invoke(cli, ['backup', 'resident-service'])

    result = runner.invoke(cli, ['restore', 'resident-service', '--test'])

    assert result.exit_code == 0, result.output
    assert 'live data untouched' in result.output


def test_restore_without_backup(runner, cli_env):
    result = runner.invoke(cli, ['restore', 'resident-service', '--yes'])

    assert result.exit_code == 4
    assert 'No verified backup found' in result.output


def test_unknown_pipeline(runner, cli_env):
    result = runner.invoke(cli, ['backup', 'billing-service'])

    assert result.exit_code == 2
    assert "Unknown pipeline 'billing-service'" in result.output


def test_backup_without_encryption_key(runner, cli_env, monkeypatch):
    monkeypatch.delenv('BACKUP_ENCRYPTION_KEY')

    result = runner.invoke(cli, ['backup', 'resident-service'])

    assert result.exit_code == 2
    assert 'BACKUP_ENCRYPTION_KEY' in result.output


def test_stats_cleanup_drill_and_schedule(runner, cli_env):
    runner.invoke(cli, ['backup', 'resident-service'])

    stats = runner.invoke(cli, ['stats'])
    assert stats.exit_code == 0
    assert 'Backups: 1' in stats.output

    cleanup = runner.invoke(cli, ['cleanup'])
    assert cleanup.exit_code == 0
    assert 'Deleted: 0' in cleanup.output

    drill = runner.invoke(cli, ['drill', 'resident-service'])
    assert drill.exit_code == 0, drill.output

    schedule = runner.invoke(cli, ['schedule', 'resident-service', '--frequency', 'weekly'])
    assert schedule.exit_code == 0
    assert 'Scheduled weekly backups' in schedule.output


def test_invalid_configuration(runner, cli_env, monkeypatch):
    monkeypatch.setenv('BACKUP_COMPRESSION_LEVEL', '12')

    result = runner.invoke(cli, ['stats'])

    assert result.exit_code == 2
    assert 'BACKUP_COMPRESSION_LEVEL' in result.output


def test_show_config_hides_secrets(runner, cli_env):
    result = runner.invoke(cli, ['show-config'])

    assert result.exit_code == 0
    assert 'backup_encryption_key_set: True' in result.output
    assert 'cli-test-secret' not in result.output


def test_migrate_dry_run_writes_report(runner, cli_env):
    seed_monolith(cli_env)
    report_dir = cli_env / 'reports'

    result = runner.invoke(cli, ['migrate', '--dry-run', '--report-dir', str(report_dir)])

    assert result.exit_code == 0, result.output
    assert 'Migration complete!' in result.output
    reports = list(report_dir.glob('migration_report_*.json'))
    assert len(reports) == 1

    report = json.loads(reports[0].read_text())
    assert report['summary']['total_tables'] == 6
    assert report['summary']['partial_tables'] == 1
    prescriptions = next(r for r in report['table_results'] if r['table_name'] == 'prescriptions')
    assert prescriptions['validation_errors'] == ['dosage: Dosage must be a positive number']


def test_migrate_without_target_fails(runner, cli_env):
    seed_monolith(cli_env)

    result = runner.invoke(cli, ['migrate', '--report-dir', str(cli_env / 'reports')])

    assert result.exit_code == 3
    assert 'Migration failed' in result.output


def test_rollback_service(runner, cli_env, care_db):
    result = runner.invoke(cli, ['rollback-service', 'resident-service', '--yes'])

    assert result.exit_code == 0, result.output
    assert not care_db.table_exists('residents')


def test_rollback_unknown_service(runner, cli_env):
    result = runner.invoke(cli, ['rollback-service', 'nope-service', '--yes'])

    assert result.exit_code == 5


def test_import_file_loads_source_table(runner, cli_env):
    path = cli_env / 'residents.csv'
    path.write_text("resident_id,first_name,care_level\n1,Ada,nursing care\n2,Grace,Residential\n")

    result = runner.invoke(cli, ['import-file', str(path), '--table', 'resident_import'])

    assert result.exit_code == 0, result.output
    assert 'Records: 2 imported, 0 skipped of 2' in result.output
    assert 'Quality score:' in result.output
    monolith = make_database(cli_env, 'monolith')
    assert monolith.count_rows('resident_import') == 2
    monolith.close()


def test_import_file_dry_run_reports_errors(runner, cli_env):
    path = cli_env / 'names.csv'
    path.write_text("name\nAda\n")

    result = runner.invoke(cli, ['import-file', str(path), '--dry-run'])

    assert result.exit_code == 0, result.output
    assert 'row 0: No identifier column' in result.output
    assert 'Records: 0 imported, 0 skipped of 1' in result.output


def test_import_file_rejects_unsupported_format(runner, cli_env):
    path = cli_env / 'residents.pdf'
    path.write_bytes(b'%PDF-1.4')

    result = runner.invoke(cli, ['import-file', str(path)])

    assert result.exit_code == 6
    assert 'Unsupported file format' in result.output
