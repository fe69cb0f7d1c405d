# Overview: Typed capability tokens carried by API keys.

"""
Capability tokens for API keys

FORMAT: "resource:action", "resource:*" or "*"

Tokens are parsed into Capability values when a key is created, so a typo
like "currncy:write" is rejected up front instead of silently granting
nothing. Stored tokens that no longer parse are skipped with a warning.

A granted set satisfies a required capability when it holds "*", the exact
capability, or the resource wildcard.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .errors import ValidationError


WILDCARD = "*"

RESOURCES = frozenset({"items", "members", "orders", "currency"})
ACTIONS = frozenset({"read", "write"})


@dataclass(frozen=True)
class Capability:
    resource: str
    action: str

    @classmethod
    def parse(cls, token: str) -> "Capability":
        if not isinstance(token, str) or not token.strip():
            raise ValidationError("Permission must be a non-empty string")
        token = token.strip()

        if token == WILDCARD:
            return cls(WILDCARD, WILDCARD)

        resource, sep, action = token.partition(":")
        if not sep:
            raise ValidationError(f"Invalid permission {token!r}: expected resource:action")
        if resource not in RESOURCES:
            raise ValidationError(f"Invalid permission {token!r}: unknown resource {resource!r}")
        if action != WILDCARD and action not in ACTIONS:
            raise ValidationError(f"Invalid permission {token!r}: unknown action {action!r}")
        return cls(resource, action)

    def __str__(self) -> str:
        if self.resource == WILDCARD:
            return WILDCARD
        return f"{self.resource}:{self.action}"


class CapabilitySet:
    """Immutable set of granted capabilities."""

    def __init__(self, capabilities: Iterable[Capability] = ()):
        self._caps = frozenset(capabilities)

    @classmethod
    def parse(cls, tokens: Iterable[str]) -> "CapabilitySet":
        """Strict parse; any invalid token raises ValidationError."""
        if isinstance(tokens, str):
            raise ValidationError("permissions must be a list")
        return cls(Capability.parse(t) for t in tokens)

    @classmethod
    def load(cls, tokens: Iterable[str] | None, on_invalid=None) -> "CapabilitySet":
        """Lenient parse for stored keys; invalid tokens are skipped."""
        caps = []
        for token in tokens or []:
            try:
                caps.append(Capability.parse(token))
            except ValidationError:
                if on_invalid is not None:
                    on_invalid(token)
        return cls(caps)

    def allows(self, required: Capability | str) -> bool:
        if isinstance(required, str):
            required = Capability.parse(required)
        if Capability(WILDCARD, WILDCARD) in self._caps:
            return True
        if required in self._caps:
            return True
        return Capability(required.resource, WILDCARD) in self._caps

    def tokens(self) -> list[str]:
        return sorted(str(c) for c in self._caps)

    def __contains__(self, item) -> bool:
        return self.allows(item)

    def __len__(self) -> int:
        return len(self._caps)

    def __iter__(self):
        return iter(self._caps)
