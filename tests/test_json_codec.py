from datetime import date, datetime, time, timezone
from decimal import Decimal
from uuid import UUID

from care_migration.contracts.collaborators import LogicalDataset, TableSnapshot
from care_migration.lib.json_codec import dataset_from_dict, dataset_to_dict, json_dumps, json_loads


def test_column_types_survive_encoding():
    row = {
        'admitted_at': datetime(2023, 5, 1, 9, 30, tzinfo=timezone.utc),
        'date_of_birth': date(1940, 1, 2),
        'round_time': time(14, 0),
        'weekly_fee': Decimal('1250.50'),
        'resident_uuid': UUID('12345678-1234-5678-1234-567812345678'),
        'photo': b'\x89PNG',
        'notes': None,
    }

    decoded = json_loads(json_dumps(row))

    assert decoded == row
    assert type(decoded['admitted_at']) is datetime
    assert type(decoded['date_of_birth']) is date


def test_plain_dicts_are_left_alone():
    assert json_loads('{"__type__": "date", "value": "2020-01-01", "extra": 1}') == {
        '__type__': 'date', 'value': '2020-01-01', 'extra': 1,
    }


def test_dataset_encoding():
    dataset = LogicalDataset(pipeline_id='resident-service', tables=[
        TableSnapshot(
            name='residents',
            primary_key=['resident_id'],
            columns=['resident_id', 'date_of_birth'],
            rows=[{'resident_id': 1, 'date_of_birth': date(1940, 1, 2)}],
        ),
    ])

    decoded = dataset_from_dict(json_loads(json_dumps(dataset_to_dict(dataset))))

    assert decoded == dataset
    assert decoded.record_count == 1
    assert decoded.table('residents').key_of(decoded.tables[0].rows[0]) == (1,)
