"""Row -> JSON-safe dict for router responses."""

from datetime import datetime


def row_to_dict(obj, *, exclude: tuple = ()) -> dict:
    out = {}
    for column in obj.__table__.columns:
        if column.key in exclude:
            continue
        value = getattr(obj, column.key)
        out[column.key] = value.isoformat() if isinstance(value, datetime) else value
    return out
