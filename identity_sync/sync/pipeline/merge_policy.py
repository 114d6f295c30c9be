"""
Field merge policy evaluation for identity unification.

A single function decides, field by field, how an inbound signal may change a
stored client. Strategies come from :mod:`config.merge_policy`; the resolver
only applies the values this module resolves, so no other code path writes
client fields during ingestion.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from config.merge_policy import (
    DEFAULT_PROFILE,
    FILL_MISSING_KEYS,
    MONOTONE_MAX,
    OVERWRITE_IF_NULL,
    SET_UNION,
    TRI_STATE,
    MergePolicyProfile,
)


def _normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def _is_effectively_null(value: Any) -> bool:
    value = _normalize_value(value)
    if value is None:
        return True
    if isinstance(value, (list, tuple, set, frozenset, dict)) and not value:
        return True
    return False


@dataclass(frozen=True)
class FieldDecision:
    field_name: str
    strategy: str
    existing: Any
    incoming: Any
    resolved: Any
    changed: bool
    reason: str


@dataclass(frozen=True)
class MergePolicyResult:
    resolved_values: Mapping[str, Any]
    decisions: Sequence[FieldDecision]
    stats: Mapping[str, int]

    @property
    def changed_fields(self) -> tuple[str, ...]:
        return tuple(decision.field_name for decision in self.decisions if decision.changed)


def _overwrite_if_null(existing: Any, incoming: Any) -> tuple[Any, str]:
    if _is_effectively_null(incoming):
        return existing, "incoming_empty"
    if _is_effectively_null(existing):
        return _normalize_value(incoming), "filled"
    return existing, "existing_kept"


def _monotone_max(existing: Any, incoming: Any) -> tuple[Any, str]:
    if incoming is None:
        return existing, "incoming_empty"
    if existing is None or incoming > existing:
        return incoming, "increased"
    return existing, "not_greater"


def _set_union(existing: Any, incoming: Any) -> tuple[Any, str]:
    current = sorted({str(item) for item in (existing or ())})
    if _is_effectively_null(incoming):
        return current, "incoming_empty"
    merged = sorted(set(current) | {str(item) for item in incoming})
    if merged == current:
        return current, "already_present"
    return merged, "extended"


def _tri_state(existing: bool | None, incoming: bool | None) -> tuple[bool | None, str]:
    if incoming is None:
        return existing, "unknown_ignored"
    if existing is None:
        return bool(incoming), "filled"
    if existing is False:
        return False, "opt_out_kept" if incoming else "unchanged"
    if incoming is False:
        return False, "opted_out"
    return True, "unchanged"


def _fill_missing_keys(existing: Any, incoming: Any) -> tuple[Any, str]:
    current = dict(existing or {})
    if _is_effectively_null(incoming):
        return current, "incoming_empty"
    added = {
        key: value
        for key, value in dict(incoming).items()
        if key not in current and not _is_effectively_null(value)
    }
    if not added:
        return current, "keys_present"
    current.update(added)
    return current, "keys_added"


_STRATEGY_HANDLERS = {
    OVERWRITE_IF_NULL: _overwrite_if_null,
    MONOTONE_MAX: _monotone_max,
    SET_UNION: _set_union,
    TRI_STATE: _tri_state,
    FILL_MISSING_KEYS: _fill_missing_keys,
}


def merge_field(strategy: str, existing: Any, incoming: Any) -> tuple[Any, str]:
    """Resolve one field under ``strategy``; returns ``(value, reason)``."""

    try:
        handler = _STRATEGY_HANDLERS[strategy]
    except KeyError:
        raise ValueError(f"Unsupported merge strategy '{strategy}'.") from None
    return handler(existing, incoming)


def _values_equal(left: Any, right: Any) -> bool:
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        return list(left) == list(right)
    return left == right


def apply_merge_policy(
    existing: Mapping[str, Any],
    incoming: Mapping[str, Any],
    *,
    profile: MergePolicyProfile | None = None,
) -> MergePolicyResult:
    """
    Merge ``incoming`` signals into an ``existing`` client snapshot.

    Only fields present in ``incoming`` are evaluated. ``resolved_values``
    holds the fields whose stored value must change; applying an identical
    ``incoming`` a second time therefore yields no changes.
    """

    active_profile = profile or DEFAULT_PROFILE
    resolved: dict[str, Any] = {}
    decisions: list[FieldDecision] = []

    for field_name, incoming_value in incoming.items():
        strategy = active_profile.strategy_for(field_name)
        current_value = existing.get(field_name)
        value, reason = merge_field(strategy, current_value, incoming_value)
        comparable_current = current_value
        if strategy == SET_UNION:
            comparable_current = sorted({str(item) for item in (current_value or ())})
        elif strategy == FILL_MISSING_KEYS:
            comparable_current = dict(current_value or {})
        changed = not _values_equal(value, comparable_current)
        if changed:
            resolved[field_name] = value
        decisions.append(
            FieldDecision(
                field_name=field_name,
                strategy=strategy,
                existing=current_value,
                incoming=incoming_value,
                resolved=value,
                changed=changed,
                reason=reason,
            )
        )

    return MergePolicyResult(
        resolved_values=resolved,
        decisions=tuple(decisions),
        stats=summarize_decisions(decisions),
    )


def summarize_decisions(decisions: Iterable[FieldDecision]) -> Mapping[str, int]:
    counter: Counter[str] = Counter()
    for decision in decisions:
        counter["fields_evaluated"] += 1
        counter[f"reason_{decision.reason}"] += 1
        if decision.changed:
            counter["fields_changed"] += 1
    return dict(counter)
