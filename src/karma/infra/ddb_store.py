from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..config import DDB_PK_ATTR, DDB_SK_ATTR, DDB_SK_VALUE
from ..errors import TransientStoreError
from .document_store import ConditionFailed, Document, DocumentExists, DocumentStore, OPERATORS
from .logging import get_logger
from .serialization import ddb_clean, from_ddb, to_ddb_safe

logger = get_logger(__name__)

_DDB_OPS = {"==": "=", "!=": "<>", "<": "<", "<=": "<=", ">": ">", ">=": ">="}
_META_ATTRS = ("record_type", "doc_id")


def _is_conditional_failure(e: ClientError) -> bool:
    return e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class _Expr:
    """Accumulates placeholder names/values for one request."""

    def __init__(self) -> None:
        self.names: Dict[str, str] = {}
        self.values: Dict[str, Any] = {}

    def name(self, attr: str) -> str:
        for k, v in self.names.items():
            if v == attr:
                return k
        key = f"#n{len(self.names)}"
        self.names[key] = attr
        return key

    def value(self, val: Any) -> str:
        key = f":v{len(self.values)}"
        self.values[key] = to_ddb_safe(val)
        return key

    def conditions(self, expected: Mapping[str, Any]) -> List[str]:
        parts = []
        for attr, val in expected.items():
            if val is None:
                parts.append(f"attribute_not_exists({self.name(attr)})")
            else:
                parts.append(f"{self.name(attr)} = {self.value(val)}")
        return parts

    def kwargs(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ExpressionAttributeNames": dict(self.names)}
        if self.values:
            out["ExpressionAttributeValues"] = dict(self.values)
        return out


class DdbDocumentStore(DocumentStore):
    """
    Stores every collection in ONE table.

    Item key:
      pk = "<collection>#<doc_id>"
      sk = DDB_SK_VALUE
    Document fields are stored as top-level attributes so conditions can
    reference them directly.
    """

    def __init__(self, table) -> None:
        self._table = table

    def _key(self, collection: str, doc_id: str) -> dict:
        key = {DDB_PK_ATTR: f"{collection}#{doc_id}"}
        if DDB_SK_ATTR:
            key[DDB_SK_ATTR] = DDB_SK_VALUE
        return key

    def _to_doc(self, item: Optional[dict]) -> Optional[Document]:
        if not item:
            return None
        drop = {DDB_PK_ATTR, DDB_SK_ATTR, *_META_ATTRS}
        return {k: from_ddb(v) for k, v in item.items() if k not in drop}

    def _item(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> dict:
        item = self._key(collection, doc_id)
        item.update({"record_type": collection, "doc_id": doc_id})
        item.update(data)
        return ddb_clean(to_ddb_safe(item))

    def create(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> Document:
        try:
            self._table.put_item(
                Item=self._item(collection, doc_id, data),
                ConditionExpression="attribute_not_exists(#pk)",
                ExpressionAttributeNames={"#pk": DDB_PK_ATTR},
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise DocumentExists(f"{collection}/{doc_id}") from e
            logger.warning("ddb_put_failed", collection=collection, doc_id=doc_id, error=repr(e))
            raise TransientStoreError(context_error=repr(e)) from e
        except BotoCoreError as e:
            raise TransientStoreError(context_error=repr(e)) from e
        return ddb_clean(dict(data))

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        try:
            resp = self._table.get_item(Key=self._key(collection, doc_id), ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            logger.warning("ddb_get_failed", collection=collection, doc_id=doc_id, error=repr(e))
            raise TransientStoreError(context_error=repr(e)) from e
        return self._to_doc(resp.get("Item"))

    def conditional_update(
        self,
        collection: str,
        doc_id: str,
        expected: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> Document:
        if not patch:
            raise ValueError("conditional_update requires a non-empty patch")

        expr = _Expr()
        sets, removes = [], []
        for attr, val in patch.items():
            if val is None:
                removes.append(expr.name(attr))
            else:
                sets.append(f"{expr.name(attr)} = {expr.value(val)}")
        update = []
        if sets:
            update.append("SET " + ", ".join(sets))
        if removes:
            update.append("REMOVE " + ", ".join(removes))

        conditions = [f"attribute_exists({expr.name(DDB_PK_ATTR)})"] + expr.conditions(expected)

        try:
            resp = self._table.update_item(
                Key=self._key(collection, doc_id),
                UpdateExpression=" ".join(update),
                ConditionExpression=" AND ".join(conditions),
                ReturnValues="ALL_NEW",
                **expr.kwargs(),
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise ConditionFailed(f"{collection}/{doc_id}") from e
            logger.warning("ddb_update_failed", collection=collection, doc_id=doc_id, error=repr(e))
            raise TransientStoreError(context_error=repr(e)) from e
        except BotoCoreError as e:
            raise TransientStoreError(context_error=repr(e)) from e
        return self._to_doc(resp.get("Attributes")) or {}

    def delete(self, collection: str, doc_id: str, expected: Optional[Mapping[str, Any]] = None) -> None:
        kwargs: Dict[str, Any] = {"Key": self._key(collection, doc_id)}
        if expected:
            expr = _Expr()
            conditions = [f"attribute_exists({expr.name(DDB_PK_ATTR)})"] + expr.conditions(expected)
            kwargs["ConditionExpression"] = " AND ".join(conditions)
            kwargs.update(expr.kwargs())
        try:
            self._table.delete_item(**kwargs)
        except ClientError as e:
            if _is_conditional_failure(e):
                raise ConditionFailed(f"{collection}/{doc_id}") from e
            raise TransientStoreError(context_error=repr(e)) from e
        except BotoCoreError as e:
            raise TransientStoreError(context_error=repr(e)) from e

    def query(self, collection: str, field: str, op: str, value: Any) -> List[Document]:
        if op not in OPERATORS:
            raise ValueError(f"unsupported operator {op!r}")

        expr = _Expr()
        filter_expr = (
            f"{expr.name('record_type')} = {expr.value(collection)} AND "
            f"{expr.name(field)} {_DDB_OPS[op]} {expr.value(value)}"
        )
        kwargs: Dict[str, Any] = {"FilterExpression": filter_expr, **expr.kwargs()}

        out: List[Document] = []
        try:
            while True:
                resp = self._table.scan(**kwargs)
                for item in resp.get("Items", []):
                    doc = self._to_doc(item)
                    if doc is not None:
                        out.append(doc)
                last_key: Optional[dict] = resp.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except (ClientError, BotoCoreError) as e:
            logger.warning("ddb_scan_failed", collection=collection, field=field, error=repr(e))
            raise TransientStoreError(context_error=repr(e)) from e
        return out
