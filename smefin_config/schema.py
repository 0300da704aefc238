"""
SME finance configuration schema.

Frozen dataclasses the YAML loader produces.  Rule and category templates are
kept as plain data here; services turn them into validated domain objects
(``ApprovalRuleDefinition``, condition classes) when they install them, so a
bad template fails with the same error a bad API payload would.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class FrequencySettings:
    score_per_match: int = 20
    high_threshold: int = 3
    medium_threshold: int = 2


@dataclass(frozen=True)
class CategorizationSettings:
    suggestion_store_limit: int = 5
    similar_transaction_limit: int = 10
    description_prefix_length: int = 20
    bulk_batch_size: int = 100
    auto_apply_confidence: str = "VERY_HIGH"
    frequency: FrequencySettings = field(default_factory=FrequencySettings)


@dataclass(frozen=True)
class ApprovalSettings:
    # Only users in this status are resolved as approvers by role.
    default_approver_role_status: str = "ACTIVE"


@dataclass(frozen=True)
class ApprovalRuleTemplate:
    """Raw approval rule as written in YAML (validated on install)."""

    name: str
    data: dict[str, Any]


@dataclass(frozen=True)
class CategoryTemplate:
    name: str
    type: str
    color: str | None = None
    icon: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class CategorizationRuleTemplate:
    name: str
    category: str
    rule_type: str
    conditions: dict[str, Any]
    confidence: str = "MEDIUM"
    priority: int = 0
    description: str | None = None


@dataclass(frozen=True)
class SmeFinConfig:
    """Complete runtime configuration."""

    config_id: str
    version: int
    categorization: CategorizationSettings = field(default_factory=CategorizationSettings)
    approval: ApprovalSettings = field(default_factory=ApprovalSettings)
    approval_rules: tuple[ApprovalRuleTemplate, ...] = ()
    categories: tuple[CategoryTemplate, ...] = ()
    categorization_rules: tuple[CategorizationRuleTemplate, ...] = ()
