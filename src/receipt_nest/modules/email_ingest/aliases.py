from __future__ import annotations

import re
import secrets
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from receipt_nest.core.logging import get_logger, log_event
from receipt_nest.modules.identity.models import User

logger = get_logger(__name__)

MAX_ALIAS_LENGTH = 64
MAX_ALIAS_ATTEMPTS = 100
MAX_TOKEN_ATTEMPTS = 5

_ALIAS_RE = re.compile(r"^[a-z0-9._-]{3,64}$")
_LEGACY_TOKEN_ALIAS_RE = re.compile(r"^(?:r-)?[a-f0-9]{20}$")
_TOKEN_RE = re.compile(r"^[a-z0-9]{12,64}$")


class AliasAllocationError(Exception):
    pass


@dataclass(frozen=True)
class ForwardingAddress:
    email_address: str
    fallback_addresses: list[str]


def is_valid_alias(local_part: str) -> bool:
    return bool(_ALIAS_RE.match(local_part))


def looks_like_legacy_token_alias(alias: str) -> bool:
    return bool(_LEGACY_TOKEN_ALIAS_RE.match(alias.lower()))


def extract_token_from_local_part(local_part: str) -> str | None:
    candidate = local_part.lower()
    if candidate.startswith("r-"):
        candidate = candidate[2:]
    return candidate if _TOKEN_RE.match(candidate) else None


def _sanitize_segment(value: str | None) -> str:
    return re.sub(r"[^a-z0-9]", "", (value or "").strip().lower())


def build_alias_base(user: User) -> str:
    first = _sanitize_segment(user.first_name)
    last = _sanitize_segment(user.last_name)
    if first and last:
        return f"{first}.{last}"[:MAX_ALIAS_LENGTH]
    if first:
        return first[:MAX_ALIAS_LENGTH]

    email_local = _sanitize_segment((user.email or "").lower().split("@", 1)[0])
    if len(email_local) >= 3:
        return email_local[:MAX_ALIAS_LENGTH]
    return f"user.{str(user.id)[:8]}".lower()


def allocate_unique_alias(session: Session, *, user: User, base_alias: str) -> str:
    """
    Pick the first free alias among `base`, `base2`, `base3`, ...

    The numeric suffix counts toward the length cap. An alias already held by
    `user` is accepted.
    """
    normalized = re.sub(r"[^a-z0-9._-]", "", base_alias.lower())
    normalized = re.sub(r"^[._-]+|[._-]+$", "", normalized)[:MAX_ALIAS_LENGTH]
    base = normalized if len(normalized) >= 3 else f"user.{str(user.id)[:8]}"

    for attempt in range(MAX_ALIAS_ATTEMPTS):
        suffix = "" if attempt == 0 else str(attempt + 1)
        candidate = base[: MAX_ALIAS_LENGTH - len(suffix)] + suffix
        if not is_valid_alias(candidate):
            continue
        holder = session.scalar(select(User).where(User.receipt_email_alias == candidate))
        if holder is None or holder.id == user.id:
            return candidate

    raise AliasAllocationError("Unable to allocate a readable forwarding alias right now.")


def generate_unique_token(session: Session) -> str:
    for _ in range(MAX_TOKEN_ATTEMPTS):
        candidate = secrets.token_hex(10)
        taken = session.scalar(select(User.id).where(User.receipt_email_token == candidate))
        if taken is None:
            return candidate
    raise AliasAllocationError("Unable to allocate a forwarding alias right now.")


def resolve_primary_alias(session: Session, *, user: User) -> str:
    existing = (user.receipt_email_alias or "").lower()
    if is_valid_alias(existing) and not looks_like_legacy_token_alias(existing):
        return existing
    return allocate_unique_alias(session, user=user, base_alias=build_alias_base(user))


def generate_forwarding_address(
    session: Session, *, user: User, inbound_domain: str
) -> ForwardingAddress:
    domain = inbound_domain.strip().lower()
    existing_token = user.receipt_email_token or ""
    token = existing_token if len(existing_token) >= 12 else generate_unique_token(session)
    alias = resolve_primary_alias(session, user=user)

    primary = f"{alias}@{domain}"
    fallback = f"r-{token}@{domain}"

    user.receipt_email_alias = alias
    user.receipt_email_token = token
    user.receipt_forwarding_address = primary
    user.receipt_forwarding_enabled = True
    session.add(user)
    session.commit()
    log_event(
        logger,
        "email_ingest.forwarding_address.generated",
        user_id=str(user.id),
        alias=alias,
    )
    return ForwardingAddress(email_address=primary, fallback_addresses=[fallback])


def find_users_by_recipient_locals(session: Session, *, local_parts: list[str]) -> list[User]:
    """Users addressed by any of the local parts, via token or alias, in first-seen order."""
    tokens: list[str] = []
    aliases: list[str] = []
    for local in local_parts:
        if local not in aliases:
            aliases.append(local)
        token = extract_token_from_local_part(local)
        if token and token not in tokens:
            tokens.append(token)

    found: dict[uuid.UUID, User] = {}
    if tokens:
        for user in session.scalars(select(User).where(User.receipt_email_token.in_(tokens))):
            found.setdefault(user.id, user)
    if aliases:
        for user in session.scalars(select(User).where(User.receipt_email_alias.in_(aliases))):
            found.setdefault(user.id, user)
    return list(found.values())
