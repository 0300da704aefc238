"""
smefin_config -- single public entrypoint for runtime configuration.

Responsibility:
    ``get_active_config()`` is the only way services obtain settings and
    seed templates.  Nothing else reads configuration files.

Architecture position:
    Configuration.  Depends on PyYAML only; the kernel services import
    ``get_active_config`` and translate templates into validated domain
    objects themselves.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- structural validation failures.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from smefin_config.loader import load_config
from smefin_config.schema import (
    ApprovalRuleTemplate,
    ApprovalSettings,
    CategorizationRuleTemplate,
    CategorizationSettings,
    CategoryTemplate,
    FrequencySettings,
    SmeFinConfig,
)

_logger = logging.getLogger("smefin.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "smefin.yaml"


@lru_cache(maxsize=8)
def _load_cached(path: Path) -> SmeFinConfig:
    config = load_config(path)
    _logger.info(
        "smefin_config_loaded",
        extra={
            "config_id": config.config_id,
            "version": config.version,
            "path": str(path),
            "approval_rule_templates": len(config.approval_rules),
            "category_templates": len(config.categories),
            "categorization_rule_templates": len(config.categorization_rules),
        },
    )
    return config


def get_active_config(config_path: Path | None = None) -> SmeFinConfig:
    """Return the active configuration.

    Args:
        config_path: Override file, mainly for tests.  Defaults to the
            packaged ``defaults/smefin.yaml``.
    """
    return _load_cached(Path(config_path or DEFAULT_CONFIG_PATH).resolve())


def clear_config_cache() -> None:
    _load_cached.cache_clear()


__all__ = [
    "get_active_config",
    "clear_config_cache",
    "DEFAULT_CONFIG_PATH",
    "SmeFinConfig",
    "CategorizationSettings",
    "FrequencySettings",
    "ApprovalSettings",
    "ApprovalRuleTemplate",
    "CategoryTemplate",
    "CategorizationRuleTemplate",
]
