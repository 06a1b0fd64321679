import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from botocore.exceptions import ClientError

from karma.config import Settings
from karma.infra.document_store import InMemoryDocumentStore
from karma.infra.notifications import NotificationChannel, OutboundMessage
from karma.models import Role
from karma.services import build_services

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

RECRUITER_ID = "100"
SEEKER_ID = "200"


class RecordingChannel(NotificationChannel):
    def __init__(self):
        self.sent: list[OutboundMessage] = []

    def send_message(self, party_id, text, options=None):
        self.sent.append(OutboundMessage(to=str(party_id), text=text, choices=list(options or [])))

    def to(self, party_id: str) -> list[OutboundMessage]:
        return [m for m in self.sent if m.to == party_id]

    def last(self, party_id: str) -> OutboundMessage:
        return self.to(party_id)[-1]

    def containing(self, party_id: str, fragment: str) -> list[OutboundMessage]:
        return [m for m in self.to(party_id) if fragment in m.text]


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def _conditional_failure(op: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        op,
    )


_COMPARE = {
    "=": lambda a, b: a == b,
    "<>": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}
_TERM = re.compile(r"^(#\w+) (=|<>|<=|>=|<|>) (:\w+)$")
_FUNC = re.compile(r"^(attribute_exists|attribute_not_exists)\((#\w+)\)$")


def _as_ddb(value):
    """Numbers come back from DynamoDB as Decimal."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _as_ddb(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_as_ddb(v) for v in value]
    return value


class FakeTable:
    """Just enough of a boto3 Table resource for the expressions DdbDocumentStore builds."""

    def __init__(self, page_size: int = 2):
        self.items: dict[tuple, dict] = {}
        self.page_size = page_size
        self.scan_calls = 0
        self.fail_next: ClientError | None = None

    @staticmethod
    def _k(key: dict) -> tuple:
        return (key["pk"], key.get("sk"))

    def _maybe_fail(self):
        if self.fail_next is not None:
            err, self.fail_next = self.fail_next, None
            raise err

    def _check(self, item, expression, names, values) -> bool:
        if not expression:
            return True
        for term in expression.split(" AND "):
            term = term.strip()
            m = _FUNC.match(term)
            if m:
                present = item is not None and names[m.group(2)] in item
                if (m.group(1) == "attribute_exists") != present:
                    return False
                continue
            m = _TERM.match(term)
            assert m, f"unsupported condition {term!r}"
            if item is None:
                return False
            attr = names[m.group(1)]
            if attr not in item:
                return False
            try:
                if not _COMPARE[m.group(2)](item[attr], _as_ddb(values[m.group(3)])):
                    return False
            except TypeError:
                return False
        return True

    def put_item(self, Item, ConditionExpression=None, ExpressionAttributeNames=None, ExpressionAttributeValues=None):
        self._maybe_fail()
        key = self._k(Item)
        current = self.items.get(key)
        if not self._check(current, ConditionExpression, ExpressionAttributeNames or {}, ExpressionAttributeValues or {}):
            raise _conditional_failure("PutItem")
        self.items[key] = _as_ddb(dict(Item))
        return {}

    def get_item(self, Key, ConsistentRead=False):
        self._maybe_fail()
        item = self.items.get(self._k(Key))
        return {"Item": dict(item)} if item is not None else {}

    def update_item(
        self,
        Key,
        UpdateExpression,
        ConditionExpression=None,
        ExpressionAttributeNames=None,
        ExpressionAttributeValues=None,
        ReturnValues=None,
    ):
        self._maybe_fail()
        names = ExpressionAttributeNames or {}
        values = ExpressionAttributeValues or {}
        key = self._k(Key)
        current = self.items.get(key)
        if not self._check(current, ConditionExpression, names, values):
            raise _conditional_failure("UpdateItem")

        item = dict(current) if current is not None else dict(Key)
        set_part, _, remove_part = UpdateExpression.partition("REMOVE ")
        set_part = set_part.strip()
        if set_part.startswith("SET "):
            for assignment in set_part[4:].split(","):
                name, value = (s.strip() for s in assignment.split("="))
                item[names[name]] = _as_ddb(values[value])
        for name in filter(None, (s.strip() for s in remove_part.split(","))):
            item.pop(names[name], None)
        self.items[key] = item
        return {"Attributes": dict(item)} if ReturnValues == "ALL_NEW" else {}

    def delete_item(self, Key, ConditionExpression=None, ExpressionAttributeNames=None, ExpressionAttributeValues=None):
        self._maybe_fail()
        key = self._k(Key)
        if not self._check(self.items.get(key), ConditionExpression, ExpressionAttributeNames or {}, ExpressionAttributeValues or {}):
            raise _conditional_failure("DeleteItem")
        self.items.pop(key, None)
        return {}

    def scan(self, FilterExpression, ExpressionAttributeNames, ExpressionAttributeValues=None, ExclusiveStartKey=None):
        self._maybe_fail()
        self.scan_calls += 1
        keys = list(self.items)
        start = keys.index(self._k(ExclusiveStartKey)) + 1 if ExclusiveStartKey else 0
        page = keys[start:start + self.page_size]
        out = {
            "Items": [
                dict(self.items[k]) for k in page
                if self._check(self.items[k], FilterExpression, ExpressionAttributeNames, ExpressionAttributeValues or {})
            ]
        }
        if start + self.page_size < len(keys):
            last = self.items[page[-1]]
            out["LastEvaluatedKey"] = {"pk": last["pk"], "sk": last.get("sk")}
        return out


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def services(store, channel, settings, clock):
    return build_services(store, channel, settings=settings, clock=clock)


@pytest.fixture
def users(services):
    """Recruiter R in New York and job seeker J in Tokyo, both fully set up."""
    services.registry.register(RECRUITER_ID, "recruiter_r")
    services.registry.set_timezone(RECRUITER_ID, "America/New_York")
    services.registry.set_role(RECRUITER_ID, Role.RECRUITER)
    services.registry.register(SEEKER_ID, "seeker_j")
    services.registry.set_timezone(SEEKER_ID, "Asia/Tokyo")
    return RECRUITER_ID, SEEKER_ID


def negotiate(services, slots=(("2025-03-10", "09:00"),), duration=60, description="Intro call"):
    """Walk a request from proposal to submission; returns (request_id, submitted UTC instants)."""
    request_id = services.engine.propose(RECRUITER_ID, "@seeker_j", description)
    services.engine.choose_duration(request_id, duration, actor_id=RECRUITER_ID)
    for date_label, time_label in slots:
        services.engine.choose_date(request_id, date_label, actor_id=RECRUITER_ID)
        services.engine.add_slot(request_id, date_label, time_label, actor_id=RECRUITER_ID)
    instants = services.engine.submit(request_id, actor_id=RECRUITER_ID)
    return request_id, instants


def accepted_meeting(services, **kwargs):
    request_id, instants = negotiate(services, **kwargs)
    commitment_id = services.engine.accept(request_id, instants[0], actor_id=SEEKER_ID)
    return request_id, commitment_id
