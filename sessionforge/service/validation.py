from __future__ import annotations

import re
import unicodedata
from typing import Iterable, List, Optional, Sequence, Tuple

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_ROLE_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_.-]{0,63}$")


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def normalize_identifier(value: str) -> str:
    """Canonical form used for lookups: trimmed, lowercased, NFKC."""
    if not isinstance(value, str):
        return ""
    return _normalize_unicode(value.strip().lower())


def identifier_problems(value: str) -> List[str]:
    normalized = normalize_identifier(value)
    if len(normalized) > 254:
        return ["email address too long"]
    if len(normalized) < 3:
        return ["email address too short"]
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        return ["invalid email address"]
    if len(local) > 64:
        return ["email local part too long"]
    if not _EMAIL_LOCAL_PART.match(local):
        return ["invalid email address format"]
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        return ["invalid email address format"]
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            return ["invalid email address format"]
    return []


def normalize_roles(
    roles: Optional[Iterable[str]],
    *,
    default: Sequence[str],
    allowed: Sequence[str] = (),
) -> Tuple[Tuple[str, ...], List[str]]:
    """Deduplicate roles preserving order; return (roles, problems)."""
    requested = list(roles) if roles is not None else list(default)
    seen: list[str] = []
    problems: List[str] = []
    for role in requested:
        name = role.strip() if isinstance(role, str) else ""
        if not _ROLE_PATTERN.match(name):
            problems.append(f"invalid role name {role!r}")
            continue
        if allowed and name not in allowed:
            problems.append(f"role {name!r} is not assignable")
            continue
        if name not in seen:
            seen.append(name)
    if not seen and not problems:
        problems.append("at least one role is required")
    return tuple(seen), problems
