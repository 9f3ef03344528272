import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table, insert

from care_migration.lib.db_manager import DatabaseManager
from care_migration.lib.exceptions import ConnectionException, DatabaseException

from conftest import sqlite_url


@pytest.fixture
def db(tmp_path):
    with DatabaseManager(sqlite_url(tmp_path, 'store'), name='store') as manager:
        metadata = MetaData()
        table = Table(
            'rooms', metadata,
            Column('room_id', Integer, primary_key=True),
            Column('label', String(20)),
        )
        metadata.create_all(manager.engine)
        with manager.transaction() as session:
            session.execute(insert(table), [{'room_id': i, 'label': f"R{i}"} for i in (3, 1, 2)])
        yield manager


def test_batches_are_ordered_by_primary_key(db):
    assert [row['room_id'] for row in db.fetch_batch('rooms', 2, 0)] == [1, 2]
    assert [row['room_id'] for row in db.fetch_batch('rooms', 2, 2)] == [3]


def test_insert_ignore_skips_duplicate_keys(db):
    with db.transaction() as session:
        submitted = db.insert_ignore(session, 'rooms', [{'room_id': 1, 'label': 'dup'}, {'room_id': 4, 'label': 'R4'}])

    assert submitted == 2
    assert db.count_rows('rooms') == 4
    assert db.fetch_all('rooms')[0]['label'] == 'R1'


def test_transaction_rolls_back_on_error(db):
    with pytest.raises(RuntimeError):
        with db.transaction() as session:
            db.delete_all(session, 'rooms')
            raise RuntimeError("abort")

    assert db.count_rows('rooms') == 3


def test_reflection(db):
    assert db.primary_key_columns('rooms') == ['room_id']
    assert db.column_names('rooms') == ['room_id', 'label']
    assert db.table_exists('rooms')

    with pytest.raises(DatabaseException, match="not found"):
        db.get_table('missing')


def test_drop_table(db):
    with db.transaction() as session:
        db.drop_table(session, 'rooms')

    assert not db.table_exists('rooms')


def test_unreachable_database(tmp_path):
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}", name='broken')

    with pytest.raises(ConnectionException, match="broken"):
        manager.initialize()
