"""
Field merge policy configuration for identity unification.

The resolver consults this module to decide how an inbound value may change a
field on an existing client record. Every field is assigned one strategy:

``overwrite_if_null``
    Inbound value is only written when the stored value is empty.
``monotone_max``
    Inbound value replaces the stored value only when strictly greater.
``set_union``
    Stored and inbound collections are unioned.
``tri_state``
    Consent flags with true/false/unknown values. Unknown never replaces a
    known value and an opt-out is never relaxed by ingestion.
``fill_missing_keys``
    Mapping fields gain keys that are absent; existing keys are kept.

Operators can override the defaults by pointing ``SYNC_MERGE_POLICY_PATH`` at a
JSON or YAML file.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, MutableMapping, Sequence

import yaml

OVERWRITE_IF_NULL = "overwrite_if_null"
MONOTONE_MAX = "monotone_max"
SET_UNION = "set_union"
TRI_STATE = "tri_state"
FILL_MISSING_KEYS = "fill_missing_keys"

STRATEGIES: frozenset[str] = frozenset(
    {OVERWRITE_IF_NULL, MONOTONE_MAX, SET_UNION, TRI_STATE, FILL_MISSING_KEYS}
)


@dataclass(frozen=True)
class FieldRule:
    """Merge strategy for a single client field."""

    field_name: str
    strategy: str = OVERWRITE_IF_NULL


@dataclass(frozen=True)
class FieldGroup:
    """
    Group of related fields that share merge behavior.

    Groups only exist to keep override files and summaries readable.
    """

    name: str
    display_name: str
    fields: Sequence[FieldRule]


@dataclass(frozen=True)
class MergePolicyProfile:
    """Container for all field rules plus the fallback strategy."""

    key: str
    label: str
    description: str
    field_groups: Sequence[FieldGroup]
    default_strategy: str = OVERWRITE_IF_NULL

    def find_rule(self, field_name: str) -> FieldRule | None:
        for group in self.field_groups:
            for rule in group.fields:
                if rule.field_name == field_name:
                    return rule
        return None

    def strategy_for(self, field_name: str) -> str:
        rule = self.find_rule(field_name)
        return rule.strategy if rule else self.default_strategy

    def field_names(self) -> tuple[str, ...]:
        return tuple(rule.field_name for group in self.field_groups for rule in group.fields)


IDENTITY_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("full_name", OVERWRITE_IF_NULL),
    FieldRule("email", OVERWRITE_IF_NULL),
    FieldRule("phone_e164", OVERWRITE_IF_NULL),
    FieldRule("lifecycle_stage", OVERWRITE_IF_NULL),
)

ENGAGEMENT_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("total_spend", MONOTONE_MAX),
    FieldRule("tags", SET_UNION),
    FieldRule("attributes", FILL_MISSING_KEYS),
)

CONSENT_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("wa_opt_in", TRI_STATE),
    FieldRule("sms_opt_in", TRI_STATE),
    FieldRule("email_opt_in", TRI_STATE),
)

DEFAULT_PROFILE = MergePolicyProfile(
    key="default",
    label="Default merge policy",
    description="Stored identity values are kept, spend only grows, tags accumulate, "
    "and consent flags never relax an opt-out.",
    field_groups=(
        FieldGroup("identity", "Identity", IDENTITY_FIELDS),
        FieldGroup("engagement", "Engagement", ENGAGEMENT_FIELDS),
        FieldGroup("consent", "Consent", CONSENT_FIELDS),
    ),
)


class MergePolicyConfigError(RuntimeError):
    """Raised when a merge policy override cannot be parsed."""


def _load_override(path: Path) -> MutableMapping[str, object]:
    if not path.exists():
        raise MergePolicyConfigError(f"Merge policy override file {path} does not exist.")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:  # pragma: no cover - filesystem failure
        raise MergePolicyConfigError(f"Unable to read merge policy override file {path}: {exc}") from exc

    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise MergePolicyConfigError(f"Merge policy override file {path} is not valid: {exc}") from exc

    if not isinstance(data, Mapping):
        raise MergePolicyConfigError("Merge policy override must be a JSON/YAML object.")
    return dict(data)


def _coerce_strategy(value: object | None, *, field_name: str, fallback: str) -> str:
    if value in (None, ""):
        return fallback
    strategy = str(value).strip().lower()
    if strategy not in STRATEGIES:
        raise MergePolicyConfigError(
            f"Unknown merge strategy '{value}' for {field_name}. Expected one of: {', '.join(sorted(STRATEGIES))}."
        )
    return strategy


def _coerce_field_rule(raw: Mapping[str, object], *, fallback: str) -> FieldRule:
    name = str(raw.get("field_name") or "").strip()
    if not name:
        raise MergePolicyConfigError("Each field rule requires a non-empty field_name.")
    default_rule = DEFAULT_PROFILE.find_rule(name)
    strategy = _coerce_strategy(
        raw.get("strategy"),
        field_name=name,
        fallback=default_rule.strategy if default_rule else fallback,
    )
    return FieldRule(field_name=name, strategy=strategy)


def _coerce_field_group(raw: Mapping[str, object], *, fallback: str) -> FieldGroup:
    name = str(raw.get("name") or "").strip()
    if not name:
        raise MergePolicyConfigError("Each field group requires a non-empty name.")
    display_name = str(raw.get("display_name") or name).strip()
    fields_raw = raw.get("fields") or ()
    if isinstance(fields_raw, (str, bytes)) or not isinstance(fields_raw, Iterable):
        raise MergePolicyConfigError(f"Group {name} fields must be a sequence.")
    rules = []
    for rule in fields_raw:
        if not isinstance(rule, Mapping):
            raise MergePolicyConfigError(f"Group {name} contains a field rule that is not an object.")
        rules.append(_coerce_field_rule(rule, fallback=fallback))
    return FieldGroup(name=name, display_name=display_name or name.title(), fields=tuple(rules))


def _coerce_profile(raw: Mapping[str, object]) -> MergePolicyProfile:
    key = str(raw.get("key") or DEFAULT_PROFILE.key).strip() or DEFAULT_PROFILE.key
    label = str(raw.get("label") or DEFAULT_PROFILE.label).strip() or DEFAULT_PROFILE.label
    description = str(raw.get("description") or DEFAULT_PROFILE.description).strip() or DEFAULT_PROFILE.description
    default_strategy = _coerce_strategy(
        raw.get("default_strategy"),
        field_name="default_strategy",
        fallback=DEFAULT_PROFILE.default_strategy,
    )
    raw_groups = raw.get("field_groups") or ()
    if isinstance(raw_groups, (str, bytes)) or not isinstance(raw_groups, Iterable):
        raise MergePolicyConfigError("field_groups must be a sequence.")
    groups = []
    for group in raw_groups:
        if not isinstance(group, Mapping):
            raise MergePolicyConfigError("Each field group must be an object.")
        groups.append(_coerce_field_group(group, fallback=default_strategy))
    return MergePolicyProfile(
        key=key,
        label=label,
        description=description,
        field_groups=tuple(groups) or DEFAULT_PROFILE.field_groups,
        default_strategy=default_strategy,
    )


def load_profile(env: Mapping[str, object] | None = None) -> MergePolicyProfile:
    """
    Load the active merge policy profile.

    ``env`` may be ``os.environ`` or a Flask config mapping. When it carries a
    ``SYNC_MERGE_POLICY_PATH`` value the referenced JSON/YAML file replaces the
    default profile.
    """

    env_map = env or {}
    override_path = env_map.get("SYNC_MERGE_POLICY_PATH")
    if not override_path:
        return DEFAULT_PROFILE
    raw = _load_override(Path(str(override_path)))
    return _coerce_profile(raw)


__all__ = [
    "DEFAULT_PROFILE",
    "FILL_MISSING_KEYS",
    "FieldGroup",
    "FieldRule",
    "MONOTONE_MAX",
    "MergePolicyConfigError",
    "MergePolicyProfile",
    "OVERWRITE_IF_NULL",
    "SET_UNION",
    "STRATEGIES",
    "TRI_STATE",
    "load_profile",
]
