"""
Membership differ.

Resolves roster emails to directory identities and computes the add/remove delta
between the resulting target membership and the group's current membership.
"""

import logging
from typing import AbstractSet, Dict, Iterable, Optional

from dl_sync.directory_client import LookupFailed
from dl_sync.models import MembershipDelta, RosterRecord, RunContext

logger = logging.getLogger(__name__)


def diff_membership(target: AbstractSet[str], current: AbstractSet[str]) -> MembershipDelta:
    """Compute ``target - current`` as additions and ``current - target`` as removals."""
    return MembershipDelta(
        to_add=frozenset(target) - frozenset(current),
        to_remove=frozenset(current) - frozenset(target)
    )


class MembershipDiffer:
    """Builds the target membership from a roster and diffs it against the group."""

    def __init__(self, directory, email_column: str = 'Email'):
        """
        Args:
            directory: Directory client providing resolve_email and get_group_members
            email_column: Roster column holding the join key
        """
        self.directory = directory
        self.email_column = email_column

    def resolve_targets(self, records: Iterable[RosterRecord], context: RunContext) -> frozenset:
        """
        Resolve every roster email once.

        Empty emails are skipped. Unresolvable emails are recorded as failed lookups
        and left out of the target set; they are never retried within a run.
        """
        resolved: Dict[str, Optional[str]] = {}
        target = set()

        for record in records:
            email = record.email(self.email_column)
            if not email:
                logger.debug("Skipping roster entry with empty email")
                continue

            key = email.lower()
            if key not in resolved:
                try:
                    resolved[key] = self.directory.resolve_email(email)
                    logger.debug(f"Resolved {email} to {resolved[key]}")
                except LookupFailed as e:
                    resolved[key] = None
                    context.add_failed_lookup(email)
                    logger.warning(f"Lookup failed for {email}: {e}")

            if resolved[key] is not None:
                target.add(resolved[key])

        logger.info(f"Resolved {len(target)} target members, {len(context.failed_lookups)} failed lookups")
        return frozenset(target)

    def compute(self, records: Iterable[RosterRecord], group_dn: str, context: RunContext) -> MembershipDelta:
        """
        Compute the delta for ``group_dn``.

        An empty roster yields a delta that removes every current member.
        """
        target = self.resolve_targets(records, context)
        current = self.directory.get_group_members(group_dn)
        delta = diff_membership(target, current)
        context.target_size = len(target)
        context.current_size = len(current)

        if not target and current:
            logger.warning(f"Target membership is empty; all {len(current)} current members will be removed")

        logger.info(f"Membership delta for {group_dn}: {len(delta.to_add)} to add, "
                    f"{len(delta.to_remove)} to remove")
        return delta
