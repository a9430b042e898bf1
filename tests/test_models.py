#!/usr/bin/env python3
"""
Unit tests for group attribute comparison and the run context.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dl_sync.models import GroupAttribute, GroupAttributeSet, RunContext, RosterRecord, ACTION_ADD


class TestGroupAttribute(unittest.TestCase):
    """Comparison rules of the supported attributes."""

    def test_from_name_is_case_insensitive(self):
        self.assertIs(GroupAttribute.from_name('authorig'), GroupAttribute.AUTH_ORIG)
        self.assertIs(GroupAttribute.from_name('msExchHideFromAddressLists'),
                      GroupAttribute.HIDE_FROM_ADDRESS_LISTS)
        self.assertIsNone(GroupAttribute.from_name('description'))

    def test_list_normalization(self):
        attribute = GroupAttribute.AUTH_ORIG
        self.assertEqual(attribute.normalize(None), [])
        self.assertEqual(attribute.normalize(''), [])
        self.assertEqual(attribute.normalize([]), [])
        self.assertEqual(attribute.normalize('X'), ['X'])
        self.assertEqual(attribute.normalize(['X']), ['X'])
        self.assertEqual(attribute.normalize(['b', 'a']), ['a', 'b'])

    def test_boolean_normalization(self):
        attribute = GroupAttribute.REQUIRE_AUTH
        self.assertEqual(attribute.normalize(True), ['TRUE'])
        self.assertEqual(attribute.normalize('TRUE'), ['TRUE'])
        self.assertEqual(attribute.normalize(['true']), ['TRUE'])
        self.assertEqual(attribute.normalize(False), ['FALSE'])
        self.assertEqual(attribute.normalize(None), [])


class TestGroupAttributeSet(unittest.TestCase):
    """Only mismatching attributes are reported."""

    def test_scalar_and_list_compare_equal(self):
        desired = GroupAttributeSet.from_config({'authOrig': 'CN=A,DC=x'})
        self.assertEqual(desired.diff({'authOrig': ['CN=A,DC=x']}), {})

    def test_unset_current_value_differs(self):
        desired = GroupAttributeSet.from_config({'authOrig': 'X'})
        self.assertEqual(desired.diff({'authOrig': None}), {'authOrig': 'X'})
        self.assertEqual(desired.diff({}), {'authOrig': 'X'})

    def test_only_mismatching_keys_returned(self):
        desired = GroupAttributeSet.from_config({
            'authOrig': ['CN=A,DC=x', 'CN=B,DC=x'],
            'msExchRequireAuthToSendTo': True,
            'msExchHideFromAddressLists': False
        })
        current = {
            'authOrig': ['CN=B,DC=x', 'CN=A,DC=x'],
            'msExchRequireAuthToSendTo': False,
            'msExchHideFromAddressLists': False
        }

        self.assertEqual(desired.diff(current), {'msExchRequireAuthToSendTo': True})

    def test_current_attribute_names_case_insensitive(self):
        desired = GroupAttributeSet.from_config({'unauthOrig': ['CN=C,DC=x']})
        self.assertEqual(desired.diff({'unAuthOrig': ['CN=C,DC=x']}), {})

    def test_clearing_a_value(self):
        desired = GroupAttributeSet.from_config({'dLMemRejectPerms': []})
        self.assertEqual(desired.diff({'dLMemRejectPerms': ['CN=D,DC=x']}), {'dLMemRejectPerms': []})
        self.assertEqual(desired.diff({}), {})

    def test_unsupported_attribute_rejected(self):
        with self.assertRaises(ValueError):
            GroupAttributeSet.from_config({'description': 'x'})

    def test_names(self):
        desired = GroupAttributeSet.from_config({'authOrig': 'X', 'msExchRequireAuthToSendTo': True})
        self.assertEqual(sorted(desired.names), ['authOrig', 'msExchRequireAuthToSendTo'])
        self.assertEqual(len(desired), 2)


class TestRunContext(unittest.TestCase):

    def test_failed_lookups_recorded_once(self):
        context = RunContext()
        context.add_failed_lookup('bad')
        context.add_failed_lookup('bad')
        self.assertEqual(context.failed_lookups, ['bad'])

    def test_failed_mutations_mark_failures(self):
        context = RunContext()
        self.assertFalse(context.has_failures)
        context.add_failed_mutation(ACTION_ADD, 'CN=A', RuntimeError('denied'))
        self.assertTrue(context.has_failures)
        self.assertEqual(context.failed_mutations, [('add', 'CN=A', 'denied')])

    def test_record_change(self):
        context = RunContext()
        context.record_change('set_attribute', 'CN=G', attribute='authOrig', before=[], after=['X', 'Y'])
        change = context.changes[0]
        self.assertEqual(change.before, '')
        self.assertEqual(change.after, 'X; Y')
        self.assertEqual(change.attribute, 'authOrig')


class TestRosterRecord(unittest.TestCase):

    def test_email_is_trimmed(self):
        record = RosterRecord({'Email': '  a@x.com \t'})
        self.assertEqual(record.email('Email'), 'a@x.com')
        self.assertEqual(record.email('Other'), '')


if __name__ == '__main__':
    unittest.main()
