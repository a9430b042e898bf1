#!/usr/bin/env python3
"""
Unit tests for the membership differ.

Covers the documented scenarios: duplicate and unresolvable emails, the empty-roster
case that empties the group, and the fixed point reached after applying a delta.
"""

import os
import sys
import unittest
from unittest.mock import Mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from dl_sync.differ import MembershipDiffer, diff_membership
from dl_sync.directory_client import DirectoryUnavailable
from dl_sync.models import RosterRecord, RunContext
from dl_sync.reconciler import GroupReconciler
from fake_directory import FakeDirectory

GROUP_DN = 'CN=All-Staff,OU=Groups,DC=x,DC=com'
A = 'CN=Alice,OU=Users,DC=x,DC=com'
B = 'CN=Bob,OU=Users,DC=x,DC=com'
C = 'CN=Carol,OU=Users,DC=x,DC=com'


def roster(*emails):
    return [RosterRecord({'Email': email}) for email in emails]


class TestDiffMembership(unittest.TestCase):

    def test_set_difference(self):
        delta = diff_membership({A, B}, {B, C})
        self.assertEqual(delta.to_add, frozenset({A}))
        self.assertEqual(delta.to_remove, frozenset({C}))

    def test_add_and_remove_never_overlap(self):
        cases = [
            (set(), set()),
            ({A}, set()),
            (set(), {A, B}),
            ({A, B, C}, {A, B, C}),
            ({A, C}, {B, C}),
        ]
        for target, current in cases:
            delta = diff_membership(target, current)
            self.assertEqual(delta.to_add & delta.to_remove, frozenset())
            self.assertEqual((current - delta.to_remove) | delta.to_add, target)

    def test_sorted_views(self):
        delta = diff_membership({C, A}, {B})
        self.assertEqual(delta.sorted_add, [A, C])
        self.assertEqual(delta.sorted_remove, [B])
        self.assertFalse(delta.is_empty)
        self.assertTrue(diff_membership({A}, {A}).is_empty)


class TestMembershipDiffer(unittest.TestCase):
    """Test cases for MembershipDiffer against an in-memory directory."""

    def setUp(self):
        self.directory = FakeDirectory(
            users={'a@x.com': A, 'b@x.com': B, 'c@x.com': C},
            groups={'All-Staff': GROUP_DN},
            members={GROUP_DN: {B}}
        )
        self.differ = MembershipDiffer(self.directory, 'Email')
        self.context = RunContext()

    def test_duplicate_and_unresolved_emails(self):
        """a@x.com twice and 'bad' against {B}: add A, remove B, 'bad' failed."""
        delta = self.differ.compute(roster('a@x.com', 'a@x.com', 'bad'), GROUP_DN, self.context)

        self.assertEqual(delta.to_add, frozenset({A}))
        self.assertEqual(delta.to_remove, frozenset({B}))
        self.assertEqual(self.context.failed_lookups, ['bad'])

    def test_duplicate_emails_resolved_once(self):
        self.differ.compute(roster('a@x.com', 'A@X.com ', 'a@x.com'), GROUP_DN, self.context)
        self.assertEqual(self.directory.count('resolve_email'), 1)

    def test_duplicate_emails_added_once(self):
        context = RunContext()
        delta = self.differ.compute(roster('a@x.com', 'a@x.com', 'c@x.com', 'c@x.com'), GROUP_DN, context)
        reconciler = GroupReconciler(self.directory, {'name': 'All-Staff', 'path': 'OU=Groups,DC=x,DC=com',
                                                      'mail': 'all@x.com'})

        reconciler.apply_delta(GROUP_DN, delta, context)

        self.assertEqual(self.directory.count('add_group_member'), 2)
        self.assertEqual(sorted(context.added), [A, C])

    def test_empty_emails_skipped_without_failure(self):
        delta = self.differ.compute(roster('', '   ', 'b@x.com'), GROUP_DN, self.context)

        self.assertTrue(delta.is_empty)
        self.assertEqual(self.context.failed_lookups, [])
        self.assertEqual(self.directory.count('resolve_email'), 1)

    def test_empty_roster_empties_group(self):
        """An empty roster removes every current member and adds nobody."""
        self.directory.members[GROUP_DN] = {A, B, C}

        delta = self.differ.compute([], GROUP_DN, self.context)

        self.assertEqual(delta.to_add, frozenset())
        self.assertEqual(delta.to_remove, frozenset({A, B, C}))

    def test_unresolved_existing_member_is_removed(self):
        """A member whose email no longer resolves drops out of the target set."""
        del self.directory.users['b@x.com']

        delta = self.differ.compute(roster('b@x.com'), GROUP_DN, self.context)

        self.assertEqual(delta.to_remove, frozenset({B}))
        self.assertEqual(self.context.failed_lookups, ['b@x.com'])

    def test_applying_delta_reaches_fixed_point(self):
        records = roster('a@x.com', 'c@x.com', 'nobody@x.com')
        reconciler = GroupReconciler(self.directory, {'name': 'All-Staff', 'path': 'OU=Groups,DC=x,DC=com',
                                                      'mail': 'all@x.com'})

        first = self.differ.compute(records, GROUP_DN, RunContext())
        reconciler.apply_delta(GROUP_DN, first, RunContext())
        second = self.differ.compute(records, GROUP_DN, RunContext())

        self.assertFalse(first.is_empty)
        self.assertTrue(second.is_empty)
        self.assertEqual(self.directory.members[GROUP_DN], {A, C})

    def test_context_sizes(self):
        self.differ.compute(roster('a@x.com', 'c@x.com'), GROUP_DN, self.context)
        self.assertEqual(self.context.target_size, 2)
        self.assertEqual(self.context.current_size, 1)

    def test_directory_unavailable_during_lookup_is_fatal(self):
        directory = Mock()
        directory.resolve_email.side_effect = DirectoryUnavailable("timed out")
        differ = MembershipDiffer(directory, 'Email')

        with self.assertRaises(DirectoryUnavailable):
            differ.compute(roster('a@x.com'), GROUP_DN, self.context)


if __name__ == '__main__':
    unittest.main()
