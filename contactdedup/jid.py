"""
JID classification and identity resolution.

A contact can reach us under two encodings of the same person:

    15551234567@s.whatsapp.net   phone JID, the number is the user part
    221582278529209@lid          local identifier, needs a mapping lookup

Everything is reduced to the bare phone number, which is the key we
store and deduplicate on.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .logger import StructuredLogger, get_logger
from .mapping import MappingLookup

LID_SERVER = "lid"
PHONE_SERVER = "s.whatsapp.net"


class JidKind(str, Enum):
    LID = "lid"
    PHONE = "phone"
    OTHER = "other"  # any other @server suffix, stripped like a phone JID
    BARE = "bare"


def split_jid(jid: str):
    """Split ``user@server`` into (user, server); server is None when absent."""
    if "@" not in jid:
        return jid, None
    user, server = jid.split("@", 1)
    return user, server


def classify(jid: Optional[str]) -> JidKind:
    if not jid:
        return JidKind.BARE
    _, server = split_jid(jid)
    if server is None:
        return JidKind.BARE
    if server == LID_SERVER:
        return JidKind.LID
    if server == PHONE_SERVER:
        return JidKind.PHONE
    return JidKind.OTHER


def is_lid(jid: Optional[str]) -> bool:
    return classify(jid) is JidKind.LID


def is_canonical(value: Optional[str]) -> bool:
    """True when the value carries no network suffix."""
    return "@" not in (value or "")


def strip_suffix(jid: str) -> str:
    return split_jid(jid)[0]


@dataclass(frozen=True)
class Resolution:
    value: str
    kind: JidKind
    degraded: bool = False  # unmapped LID, value is the LID itself


class IdentityResolver:
    """Turns any stored or incoming JID into a canonical phone number.

    The mapping lookup is injected; the resolver holds no other state and
    never writes anywhere, so for a fixed mapping the same input always
    resolves to the same output.
    """

    def __init__(self, mapping: MappingLookup, logger: Optional[StructuredLogger] = None):
        self.mapping = mapping
        self.logger = logger or get_logger()

    def resolve(self, jid: Optional[str]) -> str:
        return self.resolution(jid).value

    def resolution(self, jid: Optional[str]) -> Resolution:
        if not jid:
            return Resolution("", JidKind.BARE)

        kind = classify(jid)
        if kind is JidKind.BARE:
            return Resolution(jid, kind)

        local_id = strip_suffix(jid)
        if kind is not JidKind.LID:
            return Resolution(local_id, kind)

        phone = self._lookup(local_id)
        if phone:
            return Resolution(phone, kind)

        self.logger.warning(
            "LID mapping not found, using LID as fallback",
            lid=local_id,
        )
        return Resolution(local_id, kind, degraded=True)

    def _lookup(self, local_id: str) -> Optional[str]:
        try:
            phone = self.mapping.lookup(local_id)
        except Exception as e:
            self.logger.record_lookup_failure(type(e).__name__)
            self.logger.error(
                "Error reading LID mapping",
                lid=local_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None
        self.logger.record_lookup(found=bool(phone))
        return phone


def to_phone_jid(jid: Optional[str], resolver: IdentityResolver) -> str:
    """Normalize any JID to ``<phone>@s.whatsapp.net``; empty input gives ''."""
    if not jid:
        return ""
    if classify(jid) is JidKind.PHONE:
        return jid
    return f"{resolver.resolve(jid)}@{PHONE_SERVER}"


@dataclass(frozen=True)
class MessageKey:
    remote_jid: Optional[str] = None


@dataclass(frozen=True)
class MessageContext:
    """The parts of an incoming message that can carry the sender's JID."""

    sender: Optional[str] = None
    key: Optional[MessageKey] = None


def phone_from_context(ctx: MessageContext, resolver: IdentityResolver) -> Optional[str]:
    """Resolve the sender's phone number from a message context.

    Tries ``ctx.sender`` first, then ``ctx.key.remote_jid``. Returns None
    when neither is present.
    """
    if ctx.sender:
        return resolver.resolve(ctx.sender)
    if ctx.key is not None and ctx.key.remote_jid:
        return resolver.resolve(ctx.key.remote_jid)

    resolver.logger.warning("No sender JID found in message context", context=repr(ctx))
    return None
