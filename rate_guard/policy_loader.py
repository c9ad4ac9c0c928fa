from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from .config import Settings, get_settings
from .models import GuardPolicy

logger = logging.getLogger("rate-guard")


@dataclass
class PolicySet:
    default: GuardPolicy
    actions: Dict[str, GuardPolicy] = field(default_factory=dict)

    def for_action(self, action: str) -> GuardPolicy:
        return self.actions.get(action, self.default)


class PolicyLoadError(RuntimeError):
    """Raised when the policy file cannot be loaded or validated."""


def policy_from_settings(settings: Settings) -> GuardPolicy:
    return GuardPolicy(
        max_attempts=settings.max_attempts,
        window_seconds=settings.window_seconds,
        block_seconds=settings.block_seconds,
    )


def _coerce_policy(raw: Any, base: GuardPolicy, *, where: str) -> GuardPolicy:
    """Overlay a YAML mapping on `base`; unspecified fields are inherited."""
    if raw is None:
        return base
    if not isinstance(raw, dict):
        raise PolicyLoadError(f"{where} must be a mapping")
    merged = base.model_dump()
    merged.update(raw)
    try:
        return GuardPolicy(**merged)
    except ValidationError as exc:
        raise PolicyLoadError(f"{where} is invalid: {exc}") from exc


def _read_policy_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise PolicyLoadError(f"Policy file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise PolicyLoadError(f"Policy file is not valid YAML: {path}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise PolicyLoadError("Policy YAML must deserialize to a mapping")
    return data


def load_policies(path: Optional[str] = None, *, settings: Optional[Settings] = None) -> PolicySet:
    """
    Build the policy set.

    The env-derived policy is the base. When a policy file is given (argument or
    GUARD_POLICY_FILE), its `default` block overlays the base and each entry
    under `actions` overlays that default.
    """
    settings = settings or get_settings()
    base = policy_from_settings(settings)
    path = path or settings.policy_file
    if not path:
        return PolicySet(default=base)

    data = _read_policy_yaml(Path(path))
    unknown = set(data) - {"default", "actions"}
    if unknown:
        raise PolicyLoadError(f"Unknown policy file section(s): {', '.join(sorted(unknown))}")

    default = _coerce_policy(data.get("default"), base, where="default")
    raw_actions = data.get("actions") or {}
    if not isinstance(raw_actions, dict):
        raise PolicyLoadError("actions must be a mapping of action name to policy")

    actions: Dict[str, GuardPolicy] = {}
    for name, raw in raw_actions.items():
        action = str(name).strip()
        if not action:
            raise PolicyLoadError("action names must be non-empty")
        actions[action] = _coerce_policy(raw, default, where=f"actions.{action}")

    logger.info("policies loaded path=%s actions=%s", path, ",".join(sorted(actions)) or "-")
    return PolicySet(default=default, actions=actions)
