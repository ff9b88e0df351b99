#!/usr/bin/env python3
"""
Unit tests for the userAccountControl decoder.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.account_control import (
    NOT_NORMAL_ACCOUNT_MASK,
    UF_ACCOUNT_DISABLE,
    UF_INTERDOMAIN_TRUST_ACCOUNT,
    UF_MNS_LOGON_ACCOUNT,
    UF_NORMAL_ACCOUNT,
    UF_PARTIAL_SECRETS_ACCOUNT,
    UF_SERVER_TRUST_ACCOUNT,
    UF_SMARTCARD_REQUIRED,
    UF_WORKSTATION_TRUST_ACCOUNT,
    account_control_value,
    describe,
    is_account_disabled,
    is_normal_account,
    is_smart_card_required,
)

NON_NORMAL_BITS = [
    UF_INTERDOMAIN_TRUST_ACCOUNT,
    UF_WORKSTATION_TRUST_ACCOUNT,
    UF_SERVER_TRUST_ACCOUNT,
    UF_MNS_LOGON_ACCOUNT,
    UF_PARTIAL_SECRETS_ACCOUNT,
]


class TestAccountControlValue(unittest.TestCase):

    def test_single_value(self):
        self.assertEqual(account_control_value({'useraccountcontrol': [514]}), 514)

    def test_string_value_is_converted(self):
        self.assertEqual(account_control_value({'useraccountcontrol': ['66048']}), 66048)

    def test_missing_data_returns_zero(self):
        self.assertEqual(account_control_value(None), 0)
        self.assertEqual(account_control_value({}), 0)
        self.assertEqual(account_control_value({'cn': ['x']}), 0)

    def test_non_list_returns_zero(self):
        self.assertEqual(account_control_value({'useraccountcontrol': 512}), 0)
        self.assertEqual(account_control_value({'useraccountcontrol': '512'}), 0)

    def test_empty_or_multi_valued_list_returns_zero(self):
        self.assertEqual(account_control_value({'useraccountcontrol': []}), 0)
        self.assertEqual(account_control_value({'useraccountcontrol': [512, 2]}), 0)

    def test_malformed_value_returns_zero(self):
        self.assertEqual(account_control_value({'useraccountcontrol': ['not-a-number']}), 0)
        self.assertEqual(account_control_value({'useraccountcontrol': [None]}), 0)


class TestFlagPredicates(unittest.TestCase):

    def test_mask_value(self):
        self.assertEqual(NOT_NORMAL_ACCOUNT_MASK, 67254272)

    def test_normal_account(self):
        self.assertTrue(is_normal_account(UF_NORMAL_ACCOUNT))
        self.assertTrue(is_normal_account(UF_NORMAL_ACCOUNT | UF_ACCOUNT_DISABLE))
        self.assertTrue(is_normal_account(UF_NORMAL_ACCOUNT | UF_SMARTCARD_REQUIRED))
        self.assertFalse(is_normal_account(0))

    def test_non_normal_class_wins_over_normal_bit(self):
        for bit in NON_NORMAL_BITS:
            with self.subTest(bit=bit):
                self.assertFalse(is_normal_account(bit))
                self.assertFalse(is_normal_account(UF_NORMAL_ACCOUNT | bit))

    def test_disabled_depends_only_on_bit_2(self):
        self.assertTrue(is_account_disabled(2))
        self.assertTrue(is_account_disabled(514))
        self.assertTrue(is_account_disabled(0xFFFFFFFF))
        self.assertFalse(is_account_disabled(512))
        self.assertFalse(is_account_disabled(0xFFFFFFFF & ~2))

    def test_smart_card_required(self):
        self.assertTrue(is_smart_card_required(262144))
        self.assertTrue(is_smart_card_required(512 | 262144))
        self.assertFalse(is_smart_card_required(512))

    def test_describe(self):
        self.assertEqual(describe(514), ['ACCOUNTDISABLE', 'NORMAL_ACCOUNT'])
        self.assertEqual(describe(0), [])


if __name__ == '__main__':
    unittest.main()
