"""Clearance levels and per-memory access rules."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any


class Clearance(str, Enum):
    """Clearance levels, lowest first."""

    PUBLIC = "public"
    GENERAL = "general"
    INTERNAL = "internal"
    RESTRICTED = "restricted"
    CONFIDENTIAL = "confidential"

    @property
    def rank(self) -> int:
        return _CLEARANCE_ORDER.index(self)

    def at_least(self, other: Clearance) -> bool:
        return self.rank >= other.rank


_CLEARANCE_ORDER: tuple[Clearance, ...] = tuple(Clearance)


class AccessDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    REDACT = "redact"

    @property
    def visible(self) -> bool:
        return self is not AccessDecision.DENY


@dataclass(frozen=True)
class AccessSubject:
    """Who is asking: the inputs an :class:`AccessRule` is evaluated against."""

    role: str
    department: str | None
    clearance: Clearance

    @classmethod
    def least_privileged(cls) -> AccessSubject:
        return cls(role="unknown", department=None, clearance=Clearance.PUBLIC)


def _norm(values: Iterable[str]) -> frozenset[str]:
    return frozenset(v.strip().lower() for v in values if v and v.strip())


@dataclass(frozen=True)
class AccessRule:
    """
    Predicate over ``{role, department, clearance}``.

    Clauses are checked in order: explicit role denial, minimum clearance,
    role allow-list, department allow-list, then the redaction threshold.
    Empty allow-lists admit everyone.
    """

    min_clearance: Clearance = Clearance.PUBLIC
    allowed_roles: frozenset[str] = field(default_factory=frozenset)
    allowed_departments: frozenset[str] = field(default_factory=frozenset)
    denied_roles: frozenset[str] = field(default_factory=frozenset)
    redact_below: Clearance | None = None

    def evaluate(self, subject: AccessSubject) -> AccessDecision:
        role = subject.role.lower()
        if role in self.denied_roles:
            return AccessDecision.DENY
        if not subject.clearance.at_least(self.min_clearance):
            return AccessDecision.DENY
        if self.allowed_roles and role not in self.allowed_roles:
            return AccessDecision.DENY
        if self.allowed_departments:
            dept = (subject.department or "").lower()
            if dept not in self.allowed_departments:
                return AccessDecision.DENY
        if self.redact_below is not None and not subject.clearance.at_least(self.redact_below):
            return AccessDecision.REDACT
        return AccessDecision.ALLOW

    def allows(self, subject: AccessSubject) -> bool:
        return self.evaluate(subject).visible

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> AccessRule:
        data = data or {}
        redact = data.get("redact_below")
        return cls(
            min_clearance=Clearance(data.get("min_clearance", Clearance.PUBLIC.value)),
            allowed_roles=_norm(data.get("allowed_roles", ())),
            allowed_departments=_norm(data.get("allowed_departments", ())),
            denied_roles=_norm(data.get("denied_roles", ())),
            redact_below=Clearance(redact) if redact else None,
        )


REDACTED_ANSWER: Mapping[str, Any] = MappingProxyType(
    {"redacted": True, "text": "[CONTENT REDACTED FOR YOUR CLEARANCE LEVEL]"}
)


__all__ = [
    "REDACTED_ANSWER",
    "AccessDecision",
    "AccessRule",
    "AccessSubject",
    "Clearance",
]
