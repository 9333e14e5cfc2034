from __future__ import annotations

from collections import defaultdict
from types import SimpleNamespace
from uuid import uuid4

import pytest
from sqlalchemy.sql import operators
from sqlalchemy.sql.elements import BinaryExpression, BooleanClauseList, UnaryExpression

from turnflow.auth import Actor
from turnflow.use_cases.stage_registry import stage_cache

_CONSTANTS = {"True_": True, "False_": False, "Null": None}


def _literal(element):
    name = type(element).__name__
    if name in _CONSTANTS:
        return _CONSTANTS[name]
    return element.value


def _matches(row, criterion, tablename: str) -> bool:
    if isinstance(criterion, BooleanClauseList):
        results = [_matches(row, clause, tablename) for clause in criterion.clauses]
        return any(results) if criterion.operator is operators.or_ else all(results)
    if not isinstance(criterion, BinaryExpression):
        raise AssertionError(f"Unsupported criterion in stub: {criterion!r}")

    column = criterion.left
    if getattr(getattr(column, "table", None), "name", tablename) != tablename:
        # Criteria on joined tables are not evaluated by the stub.
        return True
    actual = getattr(row, column.key, None)
    expected = _literal(criterion.right)
    if criterion.operator in (operators.eq, operators.is_):
        return actual == expected
    if criterion.operator in (operators.ne, operators.is_not):
        return actual != expected
    raise AssertionError(f"Unsupported operator in stub: {criterion.operator}")


class _QueryStub:
    """In-memory stand-in for a SQLAlchemy Query over one model."""

    def __init__(self, session, model):
        self._session = session
        self._model = model
        self._criteria = []
        self._order = []
        self._offset = 0
        self._limit = None

    def filter(self, *criteria):
        self._criteria.extend(criteria)
        return self

    def join(self, *_args, **_kwargs):
        return self

    def with_for_update(self, *_args, **_kwargs):
        self._session.locked.append(self._model)
        return self

    def order_by(self, *clauses):
        self._order.extend(clauses)
        return self

    def offset(self, value):
        self._offset = value
        return self

    def limit(self, value):
        self._limit = value
        return self

    def _rows(self):
        tablename = self._model.__tablename__
        rows = [
            row
            for row in self._session.rows[self._model]
            if all(_matches(row, criterion, tablename) for criterion in self._criteria)
        ]
        for clause in reversed(self._order):
            descending = isinstance(clause, UnaryExpression) and clause.modifier is operators.desc_op
            column = clause.element if isinstance(clause, UnaryExpression) else clause
            rows.sort(
                key=lambda row: (getattr(row, column.key, None) is not None, getattr(row, column.key, None) or 0),
                reverse=descending,
            )
        rows = rows[self._offset:]
        if self._limit is not None:
            rows = rows[: self._limit]
        return rows

    def first(self):
        rows = self._rows()
        return rows[0] if rows else None

    def all(self):
        return self._rows()

    def count(self):
        return len(self._rows())

    def update(self, values, synchronize_session=None):
        rows = self._rows()
        for row in rows:
            for column, value in values.items():
                setattr(row, getattr(column, "key", column), value)
        return len(rows)


class SessionStub:
    def __init__(self, rows=None):
        self.rows = defaultdict(list)
        for model, items in (rows or {}).items():
            self.rows[model].extend(items)
        self.added = []
        self.deleted = []
        self.locked = []
        self.commit_calls = 0
        self.rollback_calls = 0
        self.flush_calls = 0

    def query(self, model):
        return _QueryStub(self, model)

    def add(self, obj):
        self.added.append(obj)
        self.rows[type(obj)].append(obj)

    def flush(self):
        self.flush_calls += 1
        for obj in self.added:
            if getattr(obj, "id", None) is None:
                obj.id = uuid4()

    def commit(self):
        self.flush()
        self.commit_calls += 1

    def rollback(self):
        self.rollback_calls += 1

    def refresh(self, _obj):
        return None

    def delete(self, obj):
        self.deleted.append(obj)
        # Seeded rows are SimpleNamespace objects filed under their model key.
        for items in self.rows.values():
            if any(item is obj for item in items):
                items[:] = [item for item in items if item is not obj]
                return
        raise AssertionError(f"Deleting an object the session does not hold: {obj!r}")

    def added_of(self, model):
        return [item for item in self.added if isinstance(item, model)]


@pytest.fixture
def make_session():
    return SessionStub


@pytest.fixture(autouse=True)
def _fresh_stage_cache():
    stage_cache.invalidate()
    yield
    stage_cache.invalidate()


def make_actor(role: str = "admin") -> Actor:
    return Actor(id=uuid4(), role=role, name="Test User")


@pytest.fixture
def actor_factory():
    return make_actor


def stage_row(key: str, **overrides) -> SimpleNamespace:
    defaults = dict(
        id=uuid4(),
        key=key,
        name=key.replace("_", " ").title(),
        sequence=0,
        description=None,
        is_active=True,
        is_default=False,
        is_final=False,
        requires_approval=False,
        requires_vendor=False,
        requires_amount=False,
        requires_lock_box=False,
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


@pytest.fixture
def stage_factory():
    return stage_row
