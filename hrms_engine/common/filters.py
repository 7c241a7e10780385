"""Query filtering helpers and role-based row scoping."""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import Select, and_, select
from sqlalchemy.orm import InstrumentedAttribute

from hrms_engine.common.constants import LoginType
from hrms_engine.core_hr.models import Employee


# ── Generic filtering ──────────────────────────────────────────────

def apply_filters(
    query: Select,
    model: Any,
    filters: dict[str, Any],
) -> Select:
    """
    Apply a dict of filter parameters to a SQLAlchemy ``Select``.

    ============  ==================
    Suffix        Operator
    ============  ==================
    (none)        ``==``
    ``__from``    ``>=``
    ``__to``      ``<=``
    ``__in``      ``IN (…)``
    ============  ==================

    ``None`` values are skipped.
    """
    conditions: list = []

    for key, value in filters.items():
        if value is None:
            continue

        if key.endswith("__from"):
            col = _get_column(model, key.removesuffix("__from"))
            if col is not None:
                conditions.append(col >= value)
        elif key.endswith("__to"):
            col = _get_column(model, key.removesuffix("__to"))
            if col is not None:
                conditions.append(col <= value)
        elif key.endswith("__in"):
            col = _get_column(model, key.removesuffix("__in"))
            if col is not None and value:
                conditions.append(col.in_(value))
        else:
            col = _get_column(model, key)
            if col is not None:
                conditions.append(col == value)

    if conditions:
        query = query.where(and_(*conditions))
    return query


# ── Role scoping ────────────────────────────────────────────────────

def scope_to_actor(
    query: Select,
    actor: Employee,
    employee_col: InstrumentedAttribute,
    department_col: Optional[InstrumentedAttribute] = None,
) -> Select:
    """Restrict rows to what *actor* may see.

    Employee: own rows. HOD: rows of their department. Admin / CEO: all.
    """
    if actor.login_type in (LoginType.admin, LoginType.ceo):
        return query
    if actor.login_type == LoginType.hod and actor.department_id is not None:
        if department_col is not None:
            return query.where(department_col == actor.department_id)
        members = select(Employee.id).where(Employee.department_id == actor.department_id)
        return query.where(employee_col.in_(members))
    return query.where(employee_col == actor.id)


# ── Internal ────────────────────────────────────────────────────────

def _get_column(model: Any, name: str) -> Optional[InstrumentedAttribute]:
    attr = getattr(model, name, None)
    if isinstance(attr, InstrumentedAttribute):
        return attr
    return None
