"""
Configuration loader (``smefin_config.loader``).

Responsibility
--------------
Load the YAML configuration file and parse it into the frozen dataclasses of
``smefin_config.schema``.  Runtime callers go through
``smefin_config.get_active_config()``; the parse functions are exposed for
tests.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys or wrong shapes  -> ``ValueError``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from smefin_config.schema import (
    ApprovalRuleTemplate,
    ApprovalSettings,
    CategorizationRuleTemplate,
    CategorizationSettings,
    CategoryTemplate,
    FrequencySettings,
    SmeFinConfig,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def _require(data: dict[str, Any], key: str, where: str) -> Any:
    if key not in data or data[key] is None:
        raise ValueError(f"{where}: missing required key {key!r}")
    return data[key]


def _positive_int(data: dict[str, Any], key: str, default: int, where: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{where}.{key} must be a positive integer, got {value!r}")
    return value


def parse_categorization_settings(data: dict[str, Any] | None) -> CategorizationSettings:
    data = data or {}
    where = "categorization"
    freq = data.get("frequency") or {}
    defaults = CategorizationSettings()
    return CategorizationSettings(
        suggestion_store_limit=_positive_int(
            data, "suggestion_store_limit", defaults.suggestion_store_limit, where
        ),
        similar_transaction_limit=_positive_int(
            data, "similar_transaction_limit", defaults.similar_transaction_limit, where
        ),
        description_prefix_length=_positive_int(
            data, "description_prefix_length", defaults.description_prefix_length, where
        ),
        bulk_batch_size=_positive_int(data, "bulk_batch_size", defaults.bulk_batch_size, where),
        auto_apply_confidence=str(
            data.get("auto_apply_confidence", defaults.auto_apply_confidence)
        ),
        frequency=FrequencySettings(
            score_per_match=_positive_int(freq, "score_per_match", 20, f"{where}.frequency"),
            high_threshold=_positive_int(freq, "high_threshold", 3, f"{where}.frequency"),
            medium_threshold=_positive_int(freq, "medium_threshold", 2, f"{where}.frequency"),
        ),
    )


def parse_approval_settings(data: dict[str, Any] | None) -> ApprovalSettings:
    data = data or {}
    return ApprovalSettings(
        default_approver_role_status=str(
            data.get("default_approver_role_status", "ACTIVE")
        ),
    )


def parse_approval_rule(data: dict[str, Any]) -> ApprovalRuleTemplate:
    if not isinstance(data, dict):
        raise ValueError(f"approval_rules: entry must be a mapping, got {data!r}")
    name = _require(data, "name", "approval_rules")
    return ApprovalRuleTemplate(name=str(name), data=dict(data))


def parse_category(data: dict[str, Any]) -> CategoryTemplate:
    """Parse a CategoryTemplate from a dict."""
    return CategoryTemplate(
        name=str(_require(data, "name", "categories")),
        type=str(_require(data, "type", "categories")),
        color=data.get("color"),
        icon=data.get("icon"),
        description=data.get("description"),
    )


def parse_categorization_rule(data: dict[str, Any]) -> CategorizationRuleTemplate:
    where = "categorization_rules"
    conditions = _require(data, "conditions", where)
    if not isinstance(conditions, dict):
        raise ValueError(f"{where}: conditions must be a mapping")
    return CategorizationRuleTemplate(
        name=str(_require(data, "name", where)),
        category=str(_require(data, "category", where)),
        rule_type=str(_require(data, "rule_type", where)),
        conditions=dict(conditions),
        confidence=str(data.get("confidence", "MEDIUM")),
        priority=int(data.get("priority", 0)),
        description=data.get("description"),
    )


def parse_config(data: dict[str, Any]) -> SmeFinConfig:
    """Parse a full configuration dict into a ``SmeFinConfig``."""
    return SmeFinConfig(
        config_id=str(_require(data, "config_id", "config")),
        version=int(_require(data, "version", "config")),
        categorization=parse_categorization_settings(data.get("categorization")),
        approval=parse_approval_settings(data.get("approval")),
        approval_rules=tuple(
            parse_approval_rule(r) for r in data.get("approval_rules") or ()
        ),
        categories=tuple(parse_category(c) for c in data.get("categories") or ()),
        categorization_rules=tuple(
            parse_categorization_rule(r) for r in data.get("categorization_rules") or ()
        ),
    )


def load_config(path: Path) -> SmeFinConfig:
    return parse_config(load_yaml_file(path))
