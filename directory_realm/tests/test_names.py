import unittest
from types import SimpleNamespace

from directory_realm.errors import InvalidNameSyntaxError
from directory_realm.models import SearchResult
from directory_realm.names import distinguished_name, join_names, name_components


class NameComponentsTests(unittest.TestCase):
    def test_rightmost_component_first(self):
        self.assertEqual(
            name_components("uid=jdoe,ou=people,dc=example,dc=com"),
            ["dc=com", "dc=example", "ou=people", "uid=jdoe"],
        )

    def test_empty(self):
        self.assertEqual(name_components(""), [])


class DistinguishedNameTests(unittest.TestCase):
    def setUp(self):
        self.connection = SimpleNamespace(name_in_namespace="dc=example,dc=com")

    def test_relative_name_is_composed(self):
        result = SearchResult("cn=admins", True)
        self.assertEqual(
            distinguished_name(self.connection, "ou=groups", result),
            "cn=admins,ou=groups,dc=example,dc=com",
        )

    def test_relative_name_with_empty_base(self):
        result = SearchResult("cn=admins,ou=groups", True)
        self.assertEqual(
            distinguished_name(SimpleNamespace(name_in_namespace=""), "", result),
            "cn=admins,ou=groups",
        )

    def test_absolute_name_uses_uri_path(self):
        result = SearchResult("ldap://other:389/cn=admins,dc=other,dc=com", False)
        self.assertEqual(distinguished_name(self.connection, "ou=groups", result), "cn=admins,dc=other,dc=com")

    def test_absolute_name_is_unquoted(self):
        result = SearchResult("ldap:///cn=Smith%5C2C%20John,dc=other", False)
        self.assertEqual(distinguished_name(self.connection, "", result), r"cn=Smith\2C John,dc=other")

    def test_absolute_name_without_path_is_rejected(self):
        with self.assertRaises(InvalidNameSyntaxError):
            distinguished_name(self.connection, "", SearchResult("ldap://other:389", False))

    def test_forced_hex_escape(self):
        result = SearchResult(r"cn=Smith\, John", True)
        self.assertEqual(
            distinguished_name(self.connection, "ou=people", result, force_dn_hex_escape=True),
            r"cn=Smith\2C John,ou=people,dc=example,dc=com",
        )

    def test_join_skips_empty(self):
        self.assertEqual(join_names("cn=a", "", "dc=b"), "cn=a,dc=b")


if __name__ == "__main__":
    unittest.main()
