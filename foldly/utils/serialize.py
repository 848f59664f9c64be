from typing import Any, Dict, Iterable

import sqlalchemy as sa
from fastapi.encoders import jsonable_encoder
from pydantic.alias_generators import to_camel


def columns_of(obj: Any, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    skip = set(exclude)
    return {
        attr.key: getattr(obj, attr.key)
        for attr in sa.inspect(obj).mapper.column_attrs
        if attr.key not in skip
    }


def change_record(obj: Any, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    """Row as it appears in a change event: column names, JSON-safe values."""
    return jsonable_encoder(columns_of(obj, exclude))


def api_record(obj: Any, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    return jsonable_encoder({to_camel(k): v for k, v in columns_of(obj, exclude).items()})
