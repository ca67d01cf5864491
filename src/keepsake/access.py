"""Access model — scopes, the credentials they require, and the tiers they may read.

The scope table is plain data handed to ``AccessModel`` at construction time
(normally from ``KeepsakeConfig.scopes``). Anything that is not a known scope
with a policy entry resolves to no tiers and never validates.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from keepsake.errors import AuthorizationError

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    """Confidentiality layer a memory record lives in."""

    JOURNAL = "journal"
    PERSONA = "persona"
    PUBLIC = "public"


class Scope(str, Enum):
    """Authorization level a caller presents."""

    STRICT_PRIVATE = "STRICT_PRIVATE"
    RESTRICTED = "RESTRICTED"
    PUBLIC = "PUBLIC"

    @classmethod
    def parse(cls, value: object) -> Scope | None:
        """Return the matching scope, or None for anything unrecognized."""
        if isinstance(value, Scope):
            return value
        if isinstance(value, str):
            try:
                return cls(value)
            except ValueError:
                return None
        return None


# Journal first: it is the higher-fidelity source for RESTRICTED callers.
SCOPE_TIERS: dict[Scope, tuple[Tier, ...]] = {
    Scope.STRICT_PRIVATE: (Tier.JOURNAL,),
    Scope.RESTRICTED: (Tier.JOURNAL, Tier.PERSONA),
    Scope.PUBLIC: (Tier.PUBLIC,),
}


@dataclass(frozen=True)
class ScopePolicy:
    """What holding a scope takes and what it grants."""

    requires: frozenset[str] = frozenset()
    allows: frozenset[str] = frozenset()
    tiers: tuple[Tier, ...] = ()
    interface: str = ""


def default_policies() -> dict[Scope, ScopePolicy]:
    """The reference scope table."""
    return {
        Scope.STRICT_PRIVATE: ScopePolicy(
            requires=frozenset({"private_key"}),
            allows=frozenset({"raw_content", "emotional_detail", "journal_write"}),
            tiers=SCOPE_TIERS[Scope.STRICT_PRIVATE],
            interface="companion_only",
        ),
        Scope.RESTRICTED: ScopePolicy(
            requires=frozenset({"restricted_key"}),
            allows=frozenset({"persona_review", "emotional_detail"}),
            tiers=SCOPE_TIERS[Scope.RESTRICTED],
            interface="persona_review",
        ),
        Scope.PUBLIC: ScopePolicy(
            requires=frozenset({"public_key"}),
            allows=frozenset({"public_chat"}),
            tiers=SCOPE_TIERS[Scope.PUBLIC],
            interface="chat_interface",
        ),
    }


@dataclass
class AccessModel:
    """Resolves scopes to tiers and checks credential entitlement."""

    policies: Mapping[Scope, ScopePolicy] = field(default_factory=default_policies)

    def __post_init__(self) -> None:
        public = self.policies.get(Scope.PUBLIC)
        if public is not None and any(t is not Tier.PUBLIC for t in public.tiers):
            raise ValueError("PUBLIC scope may only resolve to the public tier")

    def policy(self, scope: object) -> ScopePolicy | None:
        parsed = Scope.parse(scope)
        if parsed is None:
            return None
        return self.policies.get(parsed)

    def resolve_tiers(self, scope: object) -> tuple[Tier, ...]:
        """Ordered tiers the scope may query; empty for unknown scopes."""
        policy = self.policy(scope)
        if policy is None:
            return ()
        return tuple(dict.fromkeys(policy.tiers))

    def missing_credentials(
        self, scope: object, credentials: Iterable[str] | None
    ) -> frozenset[str]:
        policy = self.policy(scope)
        if policy is None:
            return frozenset()
        return policy.requires - frozenset(credentials or ())

    def validate(self, scope: object, credentials: Iterable[str] | None) -> bool:
        """True iff ``credentials`` covers every credential the scope requires."""
        if self.policy(scope) is None:
            return False
        return not self.missing_credentials(scope, credentials)

    def require(self, scope: object, credentials: Iterable[str] | None) -> Scope:
        """Return the parsed scope or raise AuthorizationError."""
        if not self.validate(scope, credentials):
            missing = self.missing_credentials(scope, credentials)
            logger.warning("Authorization denied for scope %s", scope)
            raise AuthorizationError(str(getattr(scope, "value", scope)), missing)
        return Scope.parse(scope)  # type: ignore[return-value]

    def permitted_actions(self, scope: object) -> frozenset[str]:
        """Capability tags for the response layer; no effect on what is fetched."""
        policy = self.policy(scope)
        return policy.allows if policy else frozenset()
