"""Role-based access policy.

The table maps ``role -> resource -> actions``. Evaluation is pure, synchronous
and deny-by-default:

- a role with a ``"*"`` resource entry may do anything on any resource,
  including actions outside the known set
- otherwise the action is normalized (``write`` means ``create``, ``view``
  means ``read``) and denied if still unknown; the resource entry must exist
  and contain the action (or ``"*"``)
- an unknown role is denied

Roles never inherit from each other. The table is validated once, at
construction, and is read-only afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from freshline.core.metrics import POLICY_DECISIONS_TOTAL

logger = logging.getLogger(__name__)

WILDCARD = "*"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"


ACTION_SYNONYMS: Mapping[str, str] = MappingProxyType(
    {
        "write": Action.CREATE.value,
        "view": Action.READ.value,
    }
)

_KNOWN_ACTIONS = frozenset(action.value for action in Action)


class PolicyError(ValueError):
    """The policy table is malformed."""


def normalize_action(action: str) -> Optional[str]:
    """Map synonyms onto canonical actions; None for anything unrecognised."""

    name = (action or "").strip().lower()
    name = ACTION_SYNONYMS.get(name, name)
    if name in _KNOWN_ACTIONS:
        return name
    return None


@dataclass(frozen=True)
class Principal:
    """Who is asking: a role plus an optional identifier used for cache scoping."""

    role: str
    id: Optional[str] = None

    @property
    def scope(self) -> str:
        if self.id is None:
            return self.role
        return f"{self.role}:{self.id}"


class Policy:
    """Validated, immutable permission table."""

    def __init__(self, rules: Mapping[str, Mapping[str, FrozenSet[str]]]) -> None:
        self._rules = MappingProxyType(
            {role: MappingProxyType(dict(resources)) for role, resources in rules.items()}
        )

    @classmethod
    def from_mapping(cls, table: Mapping[str, Mapping[str, Iterable[str]]]) -> "Policy":
        rules: Dict[str, Dict[str, FrozenSet[str]]] = {}
        for role, resources in table.items():
            if not isinstance(role, str) or not role.strip():
                raise PolicyError(f"Role names must be non-empty strings (got: {role!r})")
            if role == WILDCARD:
                raise PolicyError("Wildcard roles are not supported; list each role explicitly")
            if not isinstance(resources, Mapping):
                raise PolicyError(f"Role '{role}' must map resources to actions")
            role_rules: Dict[str, FrozenSet[str]] = {}
            for resource, actions in resources.items():
                if not isinstance(resource, str) or not resource.strip():
                    raise PolicyError(f"Role '{role}' has an empty resource name")
                if isinstance(actions, str):
                    raise PolicyError(
                        f"Actions for '{role}/{resource}' must be a collection, not a string"
                    )
                normalized = set()
                for action in actions:
                    if action == WILDCARD:
                        normalized.add(WILDCARD)
                        continue
                    canonical = normalize_action(action)
                    if canonical is None:
                        raise PolicyError(f"Unknown action '{action}' for '{role}/{resource}'")
                    normalized.add(canonical)
                role_rules[resource.strip()] = frozenset(normalized)
            rules[role.strip()] = role_rules
        return cls(rules)

    @property
    def roles(self) -> Tuple[str, ...]:
        return tuple(self._rules)

    def resources_for(self, role: str) -> Optional[Mapping[str, FrozenSet[str]]]:
        return self._rules.get(role)


DEFAULT_POLICY = Policy.from_mapping(
    {
        "admin": {
            WILDCARD: [a.value for a in Action],
        },
        "agent": {
            "calls": ["create", "read", "update"],
            "clients": ["create", "read", "update"],
            "interventions": ["create", "read", "update"],
            "analytics": ["read"],
            "support": ["read", "create"],
        },
        "client": {
            "profile": ["read", "update"],
            "interventions": ["read"],
            "support": ["create"],
        },
    }
)


class PolicyEvaluator:
    def __init__(self, policy: Policy = DEFAULT_POLICY) -> None:
        self.policy = policy

    def _decide(self, role: str, resource: str, action: str) -> Tuple[bool, str]:
        resources = self.policy.resources_for(role)
        if resources is None:
            return False, "unknown_role"
        if WILDCARD in resources:
            return True, "wildcard"
        canonical = normalize_action(action)
        if canonical is None:
            return False, "unknown_action"
        allowed = resources.get(resource)
        if allowed is None:
            return False, "unknown_resource"
        if WILDCARD in allowed or canonical in allowed:
            return True, "granted"
        return False, "action_not_granted"

    def can_access(self, role: str, resource: str, action: str) -> bool:
        try:
            allowed, reason = self._decide(role, resource, action)
        except Exception:
            # Malformed input (e.g. unhashable role) must never grant access.
            logger.exception("policy.evaluation_failed")
            allowed, reason = False, "error"
        POLICY_DECISIONS_TOTAL.labels(decision="allow" if allowed else "deny").inc()
        if not allowed:
            logger.debug(
                "policy.denied",
                extra={"role": role, "resource": resource, "action": action, "reason": reason},
            )
        return allowed

    def can_access_all(self, role: str, checks: Iterable[Tuple[str, str]]) -> bool:
        """True only if every ``(resource, action)`` pair is allowed."""

        checks = list(checks)
        if not checks:
            return False
        return all(self.can_access(role, resource, action) for resource, action in checks)

    def permissions_for(self, role: str) -> Dict[str, List[str]]:
        """Resource -> sorted actions granted to ``role`` (empty for unknown roles)."""

        resources = self.policy.resources_for(role)
        if resources is None:
            return {}
        return {resource: sorted(actions) for resource, actions in resources.items()}


__all__ = [
    "ACTION_SYNONYMS",
    "Action",
    "DEFAULT_POLICY",
    "Policy",
    "PolicyError",
    "PolicyEvaluator",
    "Principal",
    "WILDCARD",
    "normalize_action",
]
