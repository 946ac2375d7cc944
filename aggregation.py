"""Category trees and transaction rollups.

Everything in this module is a pure function of row dicts as returned by a
``RowStore``: no storage access, no currency conversion. Amounts stay in
canonical EUR cents; converting them for display is the caller's job.

Tree walks use explicit stacks with visited sets, so a corrupted
``parent_id`` chain ends in ``CorruptDataError`` rather than runaway
recursion.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

from models import MAX_CATEGORY_LEVEL, TransactionType

UNCATEGORIZED = "Uncategorized"
TREND_MONTHS = 6


class CorruptDataError(ValueError):
    """Stored rows break an invariant the aggregation relies on."""


def id_key(value: Any) -> str:
    # backends disagree on int vs str ids; compare them as strings
    return str(value)


def index_by_id(rows: Iterable[Mapping[str, Any]]) -> dict[str, Mapping[str, Any]]:
    return {id_key(row["id"]): row for row in rows}


@dataclass
class CategoryTreeNode:
    id: Any
    name: str
    level: int
    parent_id: Any = None
    children: list["CategoryTreeNode"] = field(default_factory=list)


@dataclass
class CategoryRollup:
    id: Any
    name: str
    level: int
    parent_id: Any
    expense_cents: int
    budget_cents: int
    children: list["CategoryRollup"] = field(default_factory=list)

    @property
    def value_cents(self) -> int:
        return self.expense_cents


def _describe_unreached(row: Mapping[str, Any], by_id: Mapping[str, Mapping[str, Any]]) -> str:
    chain = [id_key(row["id"])]
    current = row
    while True:
        parent_id = current.get("parent_id")
        parent_key = id_key(parent_id)
        if parent_key not in by_id:
            return f"Category {current['id']} references missing parent {parent_id}"
        if parent_key in chain:
            chain.append(parent_key)
            return "Category cycle detected: " + " -> ".join(chain)
        chain.append(parent_key)
        current = by_id[parent_key]


def build_category_forest(
    categories: Sequence[Mapping[str, Any]],
) -> list[CategoryTreeNode]:
    """Rebuild the parent/child forest of one project's categories.

    Roots are the rows without ``parent_id``; children keep their input
    order. ``level`` is the depth from the root (1-based).
    """
    by_id: dict[str, Mapping[str, Any]] = {}
    children_of: dict[Optional[str], list[Mapping[str, Any]]] = defaultdict(list)
    for row in categories:
        key = id_key(row["id"])
        if key in by_id:
            raise CorruptDataError(f"Duplicate category id {row['id']}")
        by_id[key] = row
        parent_id = row.get("parent_id")
        children_of[None if parent_id is None else id_key(parent_id)].append(row)

    roots: list[CategoryTreeNode] = []
    visited: set[str] = set()
    stack: list[tuple[Mapping[str, Any], int, Optional[CategoryTreeNode]]] = [
        (row, 1, None) for row in reversed(children_of[None])
    ]
    while stack:
        row, level, parent = stack.pop()
        key = id_key(row["id"])
        if key in visited:
            raise CorruptDataError(f"Category {row['id']} reached twice")
        if level > MAX_CATEGORY_LEVEL:
            raise CorruptDataError(
                f"Category {row['id']} is nested deeper than {MAX_CATEGORY_LEVEL} levels"
            )
        visited.add(key)
        node = CategoryTreeNode(
            id=row["id"],
            name=row["name"],
            level=level,
            parent_id=parent.id if parent is not None else None,
        )
        if parent is None:
            roots.append(node)
        else:
            parent.children.append(node)
        for child in reversed(children_of.get(key, [])):
            stack.append((child, level + 1, node))

    if len(visited) != len(by_id):
        for row in categories:
            if id_key(row["id"]) not in visited:
                raise CorruptDataError(_describe_unreached(row, by_id))
    return roots


def transaction_type(row: Mapping[str, Any]) -> TransactionType:
    try:
        return TransactionType(row.get("type"))
    except ValueError as exc:
        raise CorruptDataError(
            f"Transaction {row.get('id')} has unknown type {row.get('type')!r}"
        ) from exc


def amount_cents(row: Mapping[str, Any]) -> int:
    raw = row.get("amount_cents")
    if raw is None or isinstance(raw, bool):
        raise CorruptDataError(f"Transaction {row.get('id')} has no amount")
    amount = int(raw)
    if amount <= 0:
        raise CorruptDataError(
            f"Transaction {row.get('id')} has non-positive amount {amount}"
        )
    return amount


def partition_by_type(
    transactions: Iterable[Mapping[str, Any]],
) -> tuple[list[Mapping[str, Any]], list[Mapping[str, Any]]]:
    expenses: list[Mapping[str, Any]] = []
    budgets: list[Mapping[str, Any]] = []
    for row in transactions:
        if transaction_type(row) == TransactionType.expense:
            expenses.append(row)
        else:
            budgets.append(row)
    return expenses, budgets


def total_cents(transactions: Iterable[Mapping[str, Any]]) -> int:
    return sum(amount_cents(row) for row in transactions)


def category_label(
    category_id: Any, categories_by_id: Mapping[str, Mapping[str, Any]]
) -> str:
    if category_id is None:
        return UNCATEGORIZED
    category = categories_by_id.get(id_key(category_id))
    if category is None:
        return UNCATEGORIZED
    parent_id = category.get("parent_id")
    parent = categories_by_id.get(id_key(parent_id)) if parent_id is not None else None
    if parent is not None:
        return f"{parent['name']}/{category['name']}"
    return category["name"]


def totals_by_category(
    transactions: Iterable[Mapping[str, Any]],
    categories: Iterable[Mapping[str, Any]],
) -> dict[str, int]:
    """Sum amounts per display label, in order of first appearance."""
    by_id = index_by_id(categories)
    totals: dict[str, int] = {}
    for row in transactions:
        label = category_label(row.get("category_id"), by_id)
        totals[label] = totals.get(label, 0) + amount_cents(row)
    return totals


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise CorruptDataError(f"Invalid timestamp {value!r}") from exc


def month_key(value: Any, tz: Optional[ZoneInfo] = None) -> str:
    moment = parse_timestamp(value)
    if moment is None:
        raise CorruptDataError("Transaction has no creation date")
    if tz is not None:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        moment = moment.astimezone(tz)
    return f"{moment.year:04d}-{moment.month:02d}"


def totals_by_month(
    transactions: Iterable[Mapping[str, Any]], tz: Optional[ZoneInfo] = None
) -> dict[str, int]:
    totals: dict[str, int] = defaultdict(int)
    for row in transactions:
        totals[month_key(row.get("created_at"), tz)] += amount_cents(row)
    return {month: totals[month] for month in sorted(totals)}


def recent_months(*series: Iterable[str], limit: int = TREND_MONTHS) -> list[str]:
    """The ``limit`` most recent distinct month keys across all series, ascending."""
    keys: set[str] = set()
    for months in series:
        keys.update(months)
    return sorted(keys)[-limit:] if limit > 0 else []


def _utc_sort_key(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def latest_timestamp(transactions: Iterable[Mapping[str, Any]]) -> Optional[datetime]:
    moments = [
        moment
        for moment in (parse_timestamp(row.get("created_at")) for row in transactions)
        if moment is not None
    ]
    if not moments:
        return None
    return max(moments, key=_utc_sort_key)


def rollup_hierarchy(
    forest: Sequence[CategoryTreeNode],
    transactions: Iterable[Mapping[str, Any]],
) -> list[CategoryRollup]:
    """Sum every node's own transactions plus all of its descendants.

    Transactions without a category, or pointing at a category outside the
    forest, attach to no node and are ignored. Nodes whose rolled-up expense
    total is not strictly positive are left out of the result, but their
    amounts still count towards their ancestors.
    """
    own: dict[tuple[str, TransactionType], int] = defaultdict(int)
    for row in transactions:
        category_id = row.get("category_id")
        if category_id is None:
            continue
        own[(id_key(category_id), transaction_type(row))] += amount_cents(row)

    done: dict[int, CategoryRollup] = {}
    seen: set[int] = set()
    stack: list[tuple[CategoryTreeNode, bool]] = [
        (node, False) for node in reversed(forest)
    ]
    while stack:
        node, expanded = stack.pop()
        if not expanded:
            if id(node) in seen:
                raise CorruptDataError(f"Category {node.id} appears twice in the tree")
            seen.add(id(node))
            stack.append((node, True))
            for child in reversed(node.children):
                stack.append((child, False))
            continue

        key = id_key(node.id)
        children = [done[id(child)] for child in node.children]
        done[id(node)] = CategoryRollup(
            id=node.id,
            name=node.name,
            level=node.level,
            parent_id=node.parent_id,
            expense_cents=own[(key, TransactionType.expense)]
            + sum(child.expense_cents for child in children),
            budget_cents=own[(key, TransactionType.budget)]
            + sum(child.budget_cents for child in children),
            children=[child for child in children if child.expense_cents > 0],
        )

    return [done[id(node)] for node in forest if done[id(node)].expense_cents > 0]
