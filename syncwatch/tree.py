"""Group monitoring feed items into ordered trees and track expand/select state.

Every feed has a top-level group field (database or engine name) and some
feeds a second level (schema). Group keys keep first-seen order and items
keep source order. Missing group fields fall back to placeholder keys so no
item is ever dropped from the tree.

The UI state of a tree (expanded nodes, selected item, active feed) is a
plain value; `reduce_tree_state` applies one action and returns the next
state without touching the previous one.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Iterator, Optional, Union

from syncwatch.records import UNKNOWN, MonitoringItem, parse_timestamp, to_number

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "N/A"
DEFAULT_SCHEMA = "public"

_SCHEMA_TABLE_RE = re.compile(r"(?:FROM|JOIN|INTO|UPDATE)\s+(?:(\w+)\.)?(\w+)", re.IGNORECASE)


@dataclass(frozen=True)
class FeedSpec:
    """How rows of one monitoring feed are keyed, filtered and identified."""

    name: str
    group_field: str
    status_field: str
    timestamp_field: str
    subgroup_field: Optional[str] = None
    schema_default: str = NOT_AVAILABLE
    type_field: Optional[str] = None
    # filter dimension -> row field
    filter_fields: dict = field(default_factory=dict)
    # fields identifying a row that has no id
    natural_key: tuple = ()

    @property
    def depth(self) -> int:
        return 2 if self.subgroup_field else 1


FEEDS: dict[str, FeedSpec] = {
    "queries": FeedSpec(
        name="queries",
        group_field="datname",
        status_field="state",
        timestamp_field="query_start",
        natural_key=("pid", "query"),
    ),
    "live": FeedSpec(
        name="live",
        group_field="db_engine",
        status_field="status",
        timestamp_field="processed_at",
        subgroup_field="schema_name",
        schema_default=DEFAULT_SCHEMA,
        type_field="pk_strategy",
        filter_fields={"type": "pk_strategy", "status": "status"},
        natural_key=("db_engine", "schema_name", "table_name", "processed_at"),
    ),
    "transfer": FeedSpec(
        name="transfer",
        group_field="db_engine",
        status_field="status",
        timestamp_field="created_at",
        type_field="transfer_type",
        filter_fields={"status": "status", "type": "transfer_type", "engine": "db_engine"},
        natural_key=("db_engine", "schema_name", "table_name", "created_at"),
    ),
    "performance": FeedSpec(
        name="performance",
        group_field="dbname",
        status_field="performance_tier",
        timestamp_field="captured_at",
        filter_fields={"tier": "performance_tier"},
        natural_key=("dbname", "queryid"),
    ),
}


def get_feed(name: str) -> FeedSpec:
    try:
        return FEEDS[name]
    except KeyError:
        raise KeyError(f"unknown monitoring feed {name!r}") from None


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

def extract_schema_table(query: Optional[str]) -> tuple[str, str]:
    """Best-effort (schema, table) of the first relation named in a SQL statement."""
    if not query:
        return NOT_AVAILABLE, NOT_AVAILABLE
    match = _SCHEMA_TABLE_RE.search(query)
    if match:
        return match.group(1) or DEFAULT_SCHEMA, match.group(2) or NOT_AVAILABLE
    return NOT_AVAILABLE, NOT_AVAILABLE


def make_item(feed: str, row: dict) -> MonitoringItem:
    """Wrap a feed row; the row itself passes through as `fields`."""
    spec = get_feed(feed)
    fields = dict(row)

    if feed == "queries":
        query = fields.get("query")
        schema, table = extract_schema_table(query if isinstance(query, str) else None)
        fields["schema_name"] = fields.get("schema_name") or schema
        fields["table_name"] = fields.get("table_name") or table

    return MonitoringItem(
        feed=feed,
        group_key=str(fields.get(spec.group_field) or UNKNOWN),
        schema=str(fields.get("schema_name") or spec.schema_default),
        table=str(fields.get("table_name") or NOT_AVAILABLE),
        status=str(fields.get(spec.status_field) or UNKNOWN),
        timestamp=parse_timestamp(fields.get(spec.timestamp_field)),
        item_id=fields.get("id"),
        fields=fields,
    )


def items_from_rows(feed: str, rows: Iterable[Any]) -> list[MonitoringItem]:
    items = []
    for row in rows:
        if not isinstance(row, dict):
            logger.debug("skipping non-object %s row: %r", feed, row)
            continue
        items.append(make_item(feed, row))
    return items


def item_key(item: MonitoringItem) -> str:
    """Stable identity of an item: its id, else the feed's natural key."""
    if item.item_id is not None and item.item_id != "":
        return f"id:{item.item_id}"
    spec = get_feed(item.feed)
    parts = [item.fields.get(name) for name in spec.natural_key]
    if not spec.natural_key:
        parts = [item.group_key, item.schema, item.table, item.timestamp]
    return "key:" + "|".join("" if p is None else str(p) for p in parts)


# ---------------------------------------------------------------------------
# Filtering and grouping
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FilterSet:
    """Conjunction of equality predicates; an empty value matches everything."""

    status: str = ""
    type: str = ""
    engine: str = ""
    tier: str = ""

    @classmethod
    def from_mapping(cls, values) -> "FilterSet":
        return cls(**{
            name: str(values.get(name) or "").strip()
            for name in ("status", "type", "engine", "tier")
        })

    def active(self) -> dict:
        return {k: v for k, v in vars(self).items() if v}

    def matches(self, item: MonitoringItem) -> bool:
        spec = get_feed(item.feed)
        for dimension, wanted in self.active().items():
            field_name = spec.filter_fields.get(dimension)
            if field_name is None:
                continue
            value = item.fields.get(field_name)
            if dimension == "type" and wanted == NOT_AVAILABLE:
                if value:
                    return False
                continue
            if value is None or str(value) != wanted:
                return False
        return True


def apply_filters(items: Iterable[MonitoringItem], filters: Optional[FilterSet] = None) -> list[MonitoringItem]:
    filters = filters or FilterSet()
    return [item for item in items if filters.matches(item)]


GroupTree = dict


def group(items: Iterable[MonitoringItem], filters: Optional[FilterSet] = None) -> GroupTree:
    """Bucket items into an insertion-ordered tree.

    One-level feeds map group key -> [items]; two-level feeds map
    group key -> {schema -> [items]}.
    """
    tree: GroupTree = {}
    for item in apply_filters(items, filters):
        spec = get_feed(item.feed)
        if spec.subgroup_field:
            schemas = tree.setdefault(item.group_key, {})
            schemas.setdefault(item.schema, []).append(item)
        else:
            tree.setdefault(item.group_key, []).append(item)
    return tree


def group_items(tree: GroupTree, key: str) -> list[MonitoringItem]:
    """Items under one top-level key, flattening the schema level if present."""
    members = tree.get(key, [])
    if isinstance(members, dict):
        return [item for schema_items in members.values() for item in schema_items]
    return list(members)


def iter_groups(tree: GroupTree) -> Iterator[tuple[str, list[MonitoringItem]]]:
    for key in tree:
        yield key, group_items(tree, key)


def flatten(tree: GroupTree) -> list[MonitoringItem]:
    return [item for _, items in iter_groups(tree) for item in items]


def node_key(group_key: str, schema: Optional[str] = None) -> str:
    key = f"db-{group_key}"
    if schema is not None:
        key += f"/schema-{schema}"
    return key


def tree_to_dict(tree: GroupTree) -> dict:
    """JSON-friendly rendering of a tree (items become their payload dicts)."""
    out: dict = {}
    for key, members in tree.items():
        if isinstance(members, dict):
            out[key] = {schema: [i.to_dict() for i in items] for schema, items in members.items()}
        else:
            out[key] = [i.to_dict() for i in members]
    return out


def summarize(feed: str, items: Iterable[MonitoringItem]) -> dict:
    """Distribution counts for a feed's side panel."""
    spec = get_feed(feed)
    items = list(items)

    by_group: dict[str, int] = {}
    by_status: dict[str, int] = {}
    by_type: dict[str, int] = {}
    for item in items:
        by_group[item.group_key] = by_group.get(item.group_key, 0) + 1
        by_status[item.status] = by_status.get(item.status, 0) + 1
        if spec.type_field:
            kind = str(item.fields.get(spec.type_field) or UNKNOWN)
            by_type[kind] = by_type.get(kind, 0) + 1

    summary = {"total": len(items), "by_group": by_group, "by_status": by_status}
    if spec.type_field:
        summary["by_type"] = by_type

    if feed == "transfer":
        count = len(items)
        summary["records_transferred"] = int(sum(to_number(i.get("records_transferred")) for i in items))
        summary["bytes_transferred"] = int(sum(to_number(i.get("bytes_transferred")) for i in items))
        summary["avg_memory_used_mb"] = (
            sum(to_number(i.get("memory_used_mb")) for i in items) / count if count else 0
        )
        summary["avg_io_operations_per_second"] = (
            sum(to_number(i.get("io_operations_per_second")) for i in items) / count if count else 0
        )

    return summary


# ---------------------------------------------------------------------------
# Expand / selection state
# ---------------------------------------------------------------------------

def toggle_expand(expanded: frozenset, key: str) -> frozenset:
    """Flip membership of a node key."""
    if key in expanded:
        return expanded - {key}
    return expanded | {key}


def reconcile_selection(selected: Optional[str], current_keys: Iterable[str]) -> Optional[str]:
    """Keep a selection only while its item is still present after a refresh."""
    if selected is None:
        return None
    return selected if selected in set(current_keys) else None


@dataclass(frozen=True)
class TreeState:
    feed: str = "queries"
    expanded: frozenset = frozenset()
    selected: Optional[str] = None


@dataclass(frozen=True)
class Toggle:
    key: str


@dataclass(frozen=True)
class Select:
    key: Optional[str]


@dataclass(frozen=True)
class Refresh:
    item_keys: tuple


@dataclass(frozen=True)
class SwitchFeed:
    feed: str


TreeAction = Union[Toggle, Select, Refresh, SwitchFeed]


def reduce_tree_state(state: TreeState, action: TreeAction) -> TreeState:
    if isinstance(action, Toggle):
        return replace(state, expanded=toggle_expand(state.expanded, action.key))
    if isinstance(action, Select):
        return replace(state, selected=action.key)
    if isinstance(action, Refresh):
        return replace(state, selected=reconcile_selection(state.selected, action.item_keys))
    if isinstance(action, SwitchFeed):
        get_feed(action.feed)
        if action.feed == state.feed:
            return state
        return replace(state, feed=action.feed, selected=None)
    raise TypeError(f"unsupported tree action: {action!r}")
