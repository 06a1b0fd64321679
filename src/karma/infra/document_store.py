from __future__ import annotations

import copy
import operator
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

Document = Dict[str, Any]

OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class DocumentExists(Exception):
    """create() found a document already stored under that id."""


class ConditionFailed(Exception):
    """conditional_update()/delete() found the document missing or not as expected."""


class DocumentStore(ABC):
    """
    Per-collection document store with single-document atomic updates.

    `expected` maps field -> value that must currently be stored; a value of
    None means the field must be absent.
    """

    @abstractmethod
    def create(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> Document:
        raise NotImplementedError

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        raise NotImplementedError

    @abstractmethod
    def conditional_update(
        self,
        collection: str,
        doc_id: str,
        expected: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> Document:
        raise NotImplementedError

    @abstractmethod
    def delete(self, collection: str, doc_id: str, expected: Optional[Mapping[str, Any]] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def query(self, collection: str, field: str, op: str, value: Any) -> List[Document]:
        raise NotImplementedError


def _matches(doc: Mapping[str, Any], expected: Mapping[str, Any]) -> bool:
    return all(doc.get(k) == v for k, v in expected.items())


class InMemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        self._db: Dict[Tuple[str, str], Document] = {}
        self._lock = threading.Lock()

    def create(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> Document:
        with self._lock:
            if (collection, doc_id) in self._db:
                raise DocumentExists(f"{collection}/{doc_id}")
            doc = _without_none(data)
            self._db[(collection, doc_id)] = doc
            return copy.deepcopy(doc)

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._db.get((collection, doc_id))
            return copy.deepcopy(doc) if doc is not None else None

    def conditional_update(
        self,
        collection: str,
        doc_id: str,
        expected: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> Document:
        with self._lock:
            doc = self._db.get((collection, doc_id))
            if doc is None or not _matches(doc, expected):
                raise ConditionFailed(f"{collection}/{doc_id}")
            for k, v in patch.items():
                if v is None:
                    doc.pop(k, None)
                else:
                    doc[k] = copy.deepcopy(v)
            return copy.deepcopy(doc)

    def delete(self, collection: str, doc_id: str, expected: Optional[Mapping[str, Any]] = None) -> None:
        with self._lock:
            doc = self._db.get((collection, doc_id))
            if expected is not None and (doc is None or not _matches(doc, expected)):
                raise ConditionFailed(f"{collection}/{doc_id}")
            self._db.pop((collection, doc_id), None)

    def query(self, collection: str, field: str, op: str, value: Any) -> List[Document]:
        compare = OPERATORS[op]
        out: List[Document] = []
        with self._lock:
            for (coll, _), doc in self._db.items():
                if coll != collection or field not in doc:
                    continue
                try:
                    if compare(doc[field], value):
                        out.append(copy.deepcopy(doc))
                except TypeError:
                    continue
        return out


def _without_none(data: Mapping[str, Any]) -> Document:
    return {k: copy.deepcopy(v) for k, v in data.items() if v is not None}
