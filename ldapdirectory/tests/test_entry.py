# type: ignore
"""
Tests for DirectoryEntry attribute bookkeeping.

These don't talk to an LDAP server at all; the connection is a MagicMock
where one is needed.
"""

import gc
import unittest
from unittest.mock import MagicMock

from ldapdirectory.entry import DirectoryEntry, normalize_attributes, normalize_values


class TestNormalize(unittest.TestCase):
    """Test raw attribute map normalization."""

    def test_normalize_values_wraps_single_string(self):
        self.assertEqual(normalize_values("a"), ["a"])

    def test_normalize_values_decodes_bytes(self):
        self.assertEqual(normalize_values([b"caf\xc3\xa9", "b"]), ["café", "b"])

    def test_normalize_values_keeps_binary_bytes(self):
        """Values that are not UTF-8, like objectGUID, survive a decode and encode."""
        guid = b"\xa3\x9f\x10\xff\x00\x81"
        values = normalize_values([guid])
        self.assertEqual(len(values), 1)
        self.assertEqual(values[0].encode("utf-8", "surrogateescape"), guid)

    def test_loaded_entry_with_binary_attribute(self):
        entry = DirectoryEntry(
            None, "cn=host,dc=example,dc=com", {"objectGUID": [b"\xa3\x9f\x10\xff"]}
        )
        self.assertEqual(len(entry.get_attribute("objectguid")), 1)

    def test_normalize_values_none_is_empty(self):
        self.assertEqual(normalize_values(None), [])

    def test_normalize_attributes_strips_metadata(self):
        """count, dn and integer keys are not attributes."""
        raw = {
            "count": 2,
            0: "cn",
            1: "mail",
            "dn": "uid=alice,ou=users,dc=example,dc=com",
            "CN": [b"Alice"],
            "mail": [b"alice@example.com", b"a@example.com"],
        }
        self.assertEqual(
            normalize_attributes(raw),
            {"cn": ["Alice"], "mail": ["alice@example.com", "a@example.com"]},
        )

    def test_normalize_attributes_merges_case_variants(self):
        raw = {"mail": [b"a@example.com"], "Mail": [b"b@example.com"]}
        self.assertEqual(
            normalize_attributes(raw), {"mail": ["a@example.com", "b@example.com"]}
        )


class TestDirectoryEntry(unittest.TestCase):
    """Test DirectoryEntry reads, writes and change tracking."""

    def setUp(self):
        self.connection = MagicMock()
        self.entry = DirectoryEntry.from_ldap(
            self.connection,
            (
                "uid=alice,ou=users,dc=example,dc=com",
                {
                    "uid": [b"alice"],
                    "cn": [b"Alice Johnson"],
                    "objectClass": [b"posixAccount", b"top"],
                },
            ),
        )

    def test_loaded_entry(self):
        self.assertEqual(self.entry.dn, "uid=alice,ou=users,dc=example,dc=com")
        self.assertFalse(self.entry.is_new)
        self.assertEqual(self.entry.changed_attribute_names, set())
        self.assertEqual(self.entry.get_attribute("objectclass"), ["posixAccount", "top"])

    def test_empty_dn_is_rejected(self):
        with self.assertRaises(ValueError):
            DirectoryEntry(self.connection, "", {})

    def test_lookup_is_case_insensitive(self):
        self.entry.set_attribute("Mail", ["alice@example.com"])
        self.assertEqual(self.entry.get_attribute("mail"), ["alice@example.com"])
        self.assertEqual(self.entry.get_attribute("MAIL"), ["alice@example.com"])
        self.assertEqual(self.entry.changed_attribute_names, {"mail"})

    def test_missing_attribute_is_empty(self):
        self.assertEqual(self.entry.get_attribute("telephoneNumber"), [])
        self.assertNotIn("telephonenumber", self.entry)

    def test_reading_does_not_mark_changed(self):
        self.entry.get_attribute("cn")
        self.entry.get_attribute("nothing")
        self.assertEqual(self.entry.get_changed_attributes(), {})

    def test_get_attribute_returns_a_copy(self):
        values = self.entry.get_attribute("cn")
        values.append("Someone Else")
        self.assertEqual(self.entry.get_attribute("cn"), ["Alice Johnson"])
        self.assertEqual(self.entry.changed_attribute_names, set())

    def test_set_attribute_with_single_string(self):
        self.entry.set_attribute("sn", "Johnson")
        self.assertEqual(self.entry.get_attribute("sn"), ["Johnson"])

    def test_push_attribute_keeps_duplicates(self):
        self.entry.push_attribute("x", "a")
        self.entry.push_attribute("x", "a")
        self.assertEqual(self.entry.get_attribute("x"), ["a", "a"])
        self.assertEqual(self.entry.changed_attribute_names, {"x"})

    def test_remove_value_removes_first_match_only(self):
        self.entry.attributes["x"] = ["a", "b", "a"]
        self.assertTrue(self.entry.remove_value("x", "a"))
        self.assertEqual(self.entry.get_attribute("x"), ["b", "a"])
        self.assertTrue(self.entry.remove_value("X", "a"))
        self.assertEqual(self.entry.get_attribute("x"), ["b"])
        self.assertFalse(self.entry.remove_value("x", "a"))
        self.assertEqual(self.entry.get_attribute("x"), ["b"])

    def test_remove_value_without_match_does_not_mark_changed(self):
        self.assertFalse(self.entry.remove_value("cn", "Bob"))
        self.assertFalse(self.entry.remove_value("nothing", "Bob"))
        self.assertEqual(self.entry.changed_attribute_names, set())

    def test_remove_attribute(self):
        self.entry.remove_attribute("CN")
        self.assertEqual(self.entry.get_attribute("cn"), [])
        self.assertEqual(self.entry.get_changed_attributes(), {"cn": []})

    def test_changed_attributes_report_current_values(self):
        self.entry.set_attribute("x", ["1"])
        self.entry.set_attribute("x", ["2"])
        self.assertEqual(self.entry.get_changed_attributes(), {"x": ["2"]})

    def test_changed_attributes_after_mixed_changes(self):
        self.entry.push_attribute("mail", "a@example.com")
        self.entry.push_attribute("mail", "b@example.com")
        self.entry.remove_value("mail", "a@example.com")
        self.entry.set_attribute("cn", ["Alice J."])
        self.assertEqual(
            self.entry.get_changed_attributes(),
            {"cn": ["Alice J."], "mail": ["b@example.com"]},
        )

    def test_save_forwards_to_connection(self):
        self.entry.save()
        self.connection.save.assert_called_once_with(self.entry)

    def test_new_entry(self):
        entry = DirectoryEntry(
            self.connection,
            "uid=dave,ou=users,dc=example,dc=com",
            {"uid": "dave"},
            new=True,
        )
        self.assertTrue(entry.is_new)
        self.assertEqual(entry.get_attribute("uid"), ["dave"])
        self.assertEqual(entry.changed_attribute_names, set())

    def test_mark_saved(self):
        entry = DirectoryEntry(
            self.connection, "uid=dave,ou=users,dc=example,dc=com", new=True
        )
        entry.set_attribute("uid", ["dave"])
        entry._mark_saved()
        self.assertFalse(entry.is_new)
        self.assertEqual(entry.get_changed_attributes(), {})

    def test_entry_does_not_keep_connection_alive(self):
        connection = MagicMock()
        entry = DirectoryEntry(connection, "uid=dave,ou=users,dc=example,dc=com")
        del connection
        gc.collect()
        with self.assertRaises(ReferenceError):
            entry.save()

    def test_entry_without_connection_cannot_save(self):
        entry = DirectoryEntry(None, "uid=dave,ou=users,dc=example,dc=com")
        with self.assertRaises(ReferenceError):
            entry.save()

    def test_repr(self):
        self.assertEqual(
            repr(self.entry), "<DirectoryEntry: uid=alice,ou=users,dc=example,dc=com>"
        )
