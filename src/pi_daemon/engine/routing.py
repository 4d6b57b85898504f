"""Model tier resolution for agent workflows."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from pi_daemon.engine.errors import WorkflowConfigError
from pi_daemon.engine.simple_toml import parse_simple_toml

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-haiku-4-5"
MODELS_CONFIG_FILE = "config.toml"


@dataclass(slots=True)
class ModelRouting:
    """Tier name -> model id map plus the daemon default model."""

    tiers: dict[str, str] = field(default_factory=dict)
    default_model: str = DEFAULT_MODEL

    @classmethod
    def load(cls, root: Path) -> ModelRouting:
        """Read ``[models]`` and ``[daemon] default_model`` from ``<root>/config.toml``."""

        config_path = root / MODELS_CONFIG_FILE
        if not config_path.is_file():
            logger.debug("No %s found, using default model map", config_path)
            return cls()
        try:
            raw = parse_simple_toml(config_path.read_text("utf-8"))
        except (OSError, UnicodeDecodeError, WorkflowConfigError) as error:
            logger.warning("Failed to load model config %s: %s", config_path, error)
            return cls()

        tiers = {
            tier: value
            for tier, value in raw.get("models", {}).items()
            if isinstance(value, str) and value
        }
        default_model = raw.get("daemon", {}).get("default_model")
        if not isinstance(default_model, str) or not default_model:
            default_model = DEFAULT_MODEL
        routing = cls(tiers=tiers, default_model=default_model)
        logger.debug("Model tiers: %s (default %s)", routing.tiers, routing.default_model)
        return routing

    def resolve(self, tier_or_id: str | None) -> str:
        """Resolve a tier name or model id to a concrete model id.

        Values containing ``/`` or ``-`` are already model ids.  Unknown tiers
        resolve the default model instead.
        """

        if not tier_or_id:
            tier_or_id = self.default_model
        if "/" in tier_or_id or "-" in tier_or_id:
            return tier_or_id
        resolved = self.tiers.get(tier_or_id)
        if resolved:
            return resolved
        if tier_or_id != self.default_model:
            return self.resolve(self.default_model)
        return DEFAULT_MODEL
