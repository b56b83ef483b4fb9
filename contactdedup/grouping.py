"""
Record grouping by canonical identity.

Invariant:
Every input record lands in exactly one group, and each group is
ordered by creation time, oldest first.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from .database import Contact
from .jid import IdentityResolver, JidKind, Resolution, is_canonical


@dataclass
class IdentityGroup:
    canonical: str
    members: List[Contact] = field(default_factory=list)
    degraded: bool = False  # at least one member resolved through the LID fallback

    def __len__(self) -> int:
        return len(self.members)


def resolve_record(record: Contact, resolver: IdentityResolver) -> Resolution:
    # Clean numbers are their own identity; skip the resolver entirely
    if is_canonical(record.number):
        return Resolution(record.number, JidKind.BARE)
    return resolver.resolution(record.number)


def build_groups(records: Iterable[Contact], resolver: IdentityResolver) -> List[IdentityGroup]:
    """Group records by canonical identity, in first-seen order."""
    groups: Dict[str, IdentityGroup] = {}
    for record in records:
        resolution = resolve_record(record, resolver)
        group = groups.get(resolution.value)
        if group is None:
            group = groups[resolution.value] = IdentityGroup(resolution.value)
        group.members.append(record)
        group.degraded = group.degraded or resolution.degraded

    for group in groups.values():
        group.members.sort(key=lambda r: r.created_at)  # stable, keeps snapshot order on ties
    return list(groups.values())


def group_records(records: Iterable[Contact], resolver: IdentityResolver) -> Dict[str, List[Contact]]:
    """
    Partition records by canonical identity.

    Args:
        records: Contact records from one storage snapshot
        resolver: Resolver used for records that still carry a suffix

    Returns:
        Dict of canonical phone number -> records, oldest first
    """
    return {group.canonical: group.members for group in build_groups(records, resolver)}
