from __future__ import annotations

from typing import Optional

import boto3

from ..config import AWS_REGION, DDB_ENDPOINT_URL, TABLE_NAME

_ddb = None
_tables = {}


def ddb():
    global _ddb
    if _ddb is None:
        kwargs = {"region_name": AWS_REGION}
        if DDB_ENDPOINT_URL:
            kwargs["endpoint_url"] = DDB_ENDPOINT_URL
        _ddb = boto3.resource("dynamodb", **kwargs)
    return _ddb


def table(name: Optional[str] = None):
    """The commitments table; one Table handle per name for the life of the container."""
    name = name or TABLE_NAME
    if not name:
        raise RuntimeError("TABLE_NAME is not set")
    if name not in _tables:
        _tables[name] = ddb().Table(name)
    return _tables[name]
