import unittest
from unittest import mock

from ldap3 import ANONYMOUS, KERBEROS, SASL, SIMPLE
from ldap3.core.exceptions import (
    LDAPInvalidCredentialsResult,
    LDAPNoSuchObjectResult,
    LDAPSocketOpenError,
)
from ldap3.core.results import RESULT_REFERRAL, RESULT_SUCCESS

from directory_realm import client
from directory_realm.client import (
    PROVIDER_URL,
    REFERRAL,
    SASL_CREDENTIALS,
    SECURITY_AUTHENTICATION,
    SECURITY_CREDENTIALS,
    SECURITY_PRINCIPAL,
    DirectoryConnection,
    SearchControls,
    parse_provider_url,
    translate_ldap_error,
)
from directory_realm.errors import (
    ConfigurationError,
    DirectoryAuthenticationError,
    NameNotFoundError,
    PartialResultError,
    ReferralError,
    TransientDirectoryError,
)


def entry(dn, **attributes):
    return {
        "type": "searchResEntry",
        "dn": dn,
        "raw_attributes": {name: [v.encode("utf-8") for v in values] for name, values in attributes.items()},
    }


class TranslateErrorTests(unittest.TestCase):
    def test_invalid_credentials(self):
        error = translate_ldap_error(LDAPInvalidCredentialsResult("bad"))
        self.assertIsInstance(error, DirectoryAuthenticationError)

    def test_no_such_object(self):
        self.assertIsInstance(translate_ldap_error(LDAPNoSuchObjectResult("gone")), NameNotFoundError)

    def test_other_errors_are_transient(self):
        error = translate_ldap_error(LDAPSocketOpenError("refused"))
        self.assertIs(type(error), TransientDirectoryError)


class ProviderUrlTests(unittest.TestCase):
    def test_default_ports(self):
        self.assertEqual(parse_provider_url("ldap://dc01"), ("dc01", 389, False, ""))
        self.assertEqual(parse_provider_url("ldaps://dc01"), ("dc01", 636, True, ""))

    def test_path_is_name_in_namespace(self):
        self.assertEqual(
            parse_provider_url("ldap://dc01:3389/dc=example,dc=com"),
            ("dc01", 3389, False, "dc=example,dc=com"),
        )

    def test_unsupported_scheme(self):
        with self.assertRaises(ConfigurationError):
            parse_provider_url("http://dc01")


class BindArgumentTests(unittest.TestCase):
    def test_anonymous_without_principal(self):
        self.assertEqual(client._bind_arguments({})["authentication"], ANONYMOUS)

    def test_simple_with_principal(self):
        arguments = client._bind_arguments({SECURITY_PRINCIPAL: "cn=svc", SECURITY_CREDENTIALS: "pw"})
        self.assertEqual(arguments["authentication"], SIMPLE)
        self.assertEqual(arguments["user"], "cn=svc")

    def test_gssapi_with_delegated_credential(self):
        arguments = client._bind_arguments({SECURITY_AUTHENTICATION: "GSSAPI", SASL_CREDENTIALS: "creds"})
        self.assertEqual(arguments["authentication"], SASL)
        self.assertEqual(arguments["sasl_mechanism"], KERBEROS)
        self.assertEqual(arguments["sasl_credentials"], (None, None, "creds"))

    def test_unknown_mechanism(self):
        with self.assertRaises(ConfigurationError):
            client._bind_arguments({SECURITY_AUTHENTICATION: "CRAM-MD5"})


class DirectoryConnectionTests(unittest.TestCase):
    def setUp(self):
        self.ldap = mock.MagicMock()
        self.ldap.bind.return_value = True
        self.ldap.result = {"result": RESULT_SUCCESS}
        self.ldap.response = []
        self.environment = {
            PROVIDER_URL: "ldap://dc01/dc=example,dc=com",
            SECURITY_PRINCIPAL: "cn=svc,dc=example,dc=com",
            SECURITY_CREDENTIALS: "secret",
        }
        self.connection = DirectoryConnection(self.ldap, self.environment, "dc=example,dc=com")

    def test_bind_is_lazy_and_only_on_identity_change(self):
        self.ldap.response = [entry("dc=example,dc=com")]
        self.connection.get_attributes("", None)
        self.connection.get_attributes("", None)
        self.assertEqual(self.ldap.bind.call_count, 1)

        self.connection.add_to_environment(SECURITY_PRINCIPAL, "uid=jdoe,dc=example,dc=com")
        self.connection.get_attributes("", None)
        self.assertEqual(self.ldap.bind.call_count, 2)
        self.assertEqual(self.ldap.user, "uid=jdoe,dc=example,dc=com")

    def test_rejected_bind(self):
        self.ldap.bind.side_effect = LDAPInvalidCredentialsResult("invalidCredentials")
        with self.assertRaises(DirectoryAuthenticationError):
            self.connection.get_attributes("", None)

    def test_search_returns_relative_and_absolute_names(self):
        self.ldap.response = [
            entry("uid=jdoe,ou=people,dc=example,dc=com", mail=["jdoe@example.com"]),
            entry("uid=jdoe,ou=people,dc=other,dc=com"),
        ]
        results = list(self.connection.search("ou=people", "(uid=jdoe)", SearchControls(subtree=True)))

        self.assertEqual(results[0].name, "uid=jdoe")
        self.assertTrue(results[0].is_relative)
        self.assertEqual(results[0].attributes, {"mail": ["jdoe@example.com"]})
        self.assertFalse(results[1].is_relative)
        self.assertTrue(results[1].name.startswith("ldap:///uid=jdoe"))

        kwargs = self.ldap.search.call_args.kwargs
        self.assertEqual(kwargs["search_base"], "ou=people,dc=example,dc=com")
        self.assertEqual(kwargs["search_filter"], "(uid=jdoe)")

    def test_continuation_reference_raises_partial_result(self):
        self.ldap.response = [entry("uid=a,dc=example,dc=com"), {"type": "searchResRef", "uri": ["ldap://x/"]}]
        results = self.connection.search("", "(uid=a)", SearchControls())
        self.assertEqual(next(results).name, "uid=a")
        with self.assertRaises(PartialResultError):
            next(results)

    def test_referral_result_raises_referral_error_when_throwing(self):
        self.connection.add_to_environment(REFERRAL, "throw")
        self.ldap.result = {"result": RESULT_REFERRAL}
        with self.assertRaises(ReferralError):
            list(self.connection.search("", "(uid=a)", SearchControls()))

    def test_time_limit_rounds_up_to_seconds(self):
        self.connection.search("", "(uid=a)", SearchControls(time_limit=1500))
        self.assertEqual(self.ldap.search.call_args.kwargs["time_limit"], 2)

    def test_get_attributes_missing_entry(self):
        self.ldap.response = []
        with self.assertRaises(NameNotFoundError):
            self.connection.get_attributes("uid=nobody", ["mail"])

    def test_close_unbinds(self):
        self.connection.close()
        self.ldap.unbind.assert_called_once_with()


class ConnectTests(unittest.TestCase):
    @mock.patch("directory_realm.client.Connection")
    @mock.patch("directory_realm.client.Server")
    def test_connect_opens_and_binds(self, server_cls, connection_cls):
        ldap = connection_cls.return_value
        ldap.bind.return_value = True

        directory = client.connect({
            PROVIDER_URL: "ldaps://dc01/dc=example,dc=com",
            SECURITY_PRINCIPAL: "cn=svc",
            SECURITY_CREDENTIALS: "secret",
            client.CONNECT_TIMEOUT: 2500,
        })

        server_cls.assert_called_once()
        self.assertEqual(server_cls.call_args.args[0], "dc01")
        self.assertTrue(server_cls.call_args.kwargs["use_ssl"])
        self.assertEqual(server_cls.call_args.kwargs["connect_timeout"], 2.5)
        ldap.open.assert_called_once()
        ldap.bind.assert_called_once()
        self.assertEqual(directory.name_in_namespace, "dc=example,dc=com")

    def test_registry_lookup(self):
        self.assertIs(client.resolve_connector("ldap3"), client.connect)
        with self.assertRaises(ConfigurationError):
            client.resolve_connector("com.sun.jndi.ldap.LdapCtxFactory")


if __name__ == "__main__":
    unittest.main()
