"""
JSON serialization for logical datasets.

Column values that JSON cannot represent natively are wrapped as
``{"__type__": <name>, "value": <text>}`` so they decode back to the exact
Python type (datetime, date, time, Decimal, UUID, bytes).
"""

import base64
import json
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict
from uuid import UUID

from care_migration.contracts.collaborators import LogicalDataset, TableSnapshot

TYPE_KEY = '__type__'
FORMAT_VERSION = 1


class DatasetJSONEncoder(json.JSONEncoder):
    """JSON encoder that tags non-native column values with their type"""

    def default(self, obj: Any) -> Any:
        # datetime is a subclass of date, so it must be checked first
        if isinstance(obj, datetime):
            return {TYPE_KEY: 'datetime', 'value': obj.isoformat()}
        if isinstance(obj, date):
            return {TYPE_KEY: 'date', 'value': obj.isoformat()}
        if isinstance(obj, time):
            return {TYPE_KEY: 'time', 'value': obj.isoformat()}
        if isinstance(obj, Decimal):
            return {TYPE_KEY: 'decimal', 'value': str(obj)}
        if isinstance(obj, UUID):
            return {TYPE_KEY: 'uuid', 'value': str(obj)}
        if isinstance(obj, (bytes, bytearray, memoryview)):
            return {TYPE_KEY: 'bytes', 'value': base64.b64encode(bytes(obj)).decode('ascii')}
        return super().default(obj)


_DECODERS = {
    'datetime': datetime.fromisoformat,
    'date': date.fromisoformat,
    'time': time.fromisoformat,
    'decimal': Decimal,
    'uuid': UUID,
    'bytes': lambda text: base64.b64decode(text.encode('ascii')),
}


def _decode_hook(obj: Dict[str, Any]) -> Any:
    type_name = obj.get(TYPE_KEY)
    if type_name is not None and set(obj) == {TYPE_KEY, 'value'}:
        return _DECODERS[type_name](obj['value'])
    return obj


def json_dumps(obj: Any, **kwargs) -> str:
    return json.dumps(obj, cls=DatasetJSONEncoder, **kwargs)


def json_loads(text: str) -> Any:
    return json.loads(text, object_hook=_decode_hook)


def dataset_to_dict(dataset: LogicalDataset) -> Dict[str, Any]:
    return {
        'format_version': FORMAT_VERSION,
        'pipeline_id': dataset.pipeline_id,
        'tables': [
            {
                'name': table.name,
                'primary_key': list(table.primary_key),
                'columns': list(table.columns),
                'rows': table.rows,
            }
            for table in dataset.tables
        ],
    }


def dataset_from_dict(data: Dict[str, Any]) -> LogicalDataset:
    return LogicalDataset(
        pipeline_id=data['pipeline_id'],
        tables=[
            TableSnapshot(
                name=table['name'],
                primary_key=list(table.get('primary_key', [])),
                columns=list(table.get('columns', [])),
                rows=list(table.get('rows', [])),
            )
            for table in data.get('tables', [])
        ],
    )
