"""Whitelist membership helpers.

Providers return whitelists as comma-separated strings. Internally a
whitelist is a plain set of entries so that adding an already present IP or
removing an absent one is naturally a no-op.
"""

from __future__ import annotations

from typing import Iterable, Optional, Set


def parse_membership(value: str) -> Set[str]:
    """Split a comma-separated provider whitelist into a set of entries."""
    if not value:
        return set()
    return {item.strip() for item in value.split(",") if item.strip()}


def format_membership(members: Iterable[str]) -> str:
    """Render a membership set as a sorted comma-separated string."""
    return ",".join(sorted(members))


def sync_membership(
    current: Iterable[str], old_ip: Optional[str], new_ip: Optional[str]
) -> Set[str]:
    """Return the membership with old_ip removed and new_ip added.

    The input is never modified. Either IP may be None, in which case that
    half of the update is skipped.
    """
    members = set(current)
    if old_ip:
        members.discard(old_ip)
    if new_ip:
        members.add(new_ip)
    return members
