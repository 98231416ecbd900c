# Copyright 2025 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Tests primary functionality of the letsdns package against an in-process ACME server."""
import json
import pathlib
import tempfile
import time
import unittest
from unittest import mock

import letsdns
from letsdns.tests import TEST_DIRECTORY, TEST_DOMAIN, TEST_DOMAINS, TEST_EMAIL, TEST_NAMESERVERS
from letsdns.tests.tools import (
    FakeACMEServer,
    FakeNetwork,
    FakeResponse,
    is_cert,
    is_csr,
    is_json,
    is_private_key,
)


class TestLetsDNS(unittest.TestCase):
    """Tests the letsdns.ACMEClient object."""

    def setUp(self):
        """Creates a fresh ACME server and a registered client for each test."""
        self.server = FakeACMEServer()
        self.client = self.make_client(new_account=True)

    def make_client(self, domains=None, **kwargs):
        """Creates a client talking to the fake ACME server."""
        return letsdns.ACMEClient(
            domains=domains if domains else [TEST_DOMAIN],
            email=TEST_EMAIL,
            directory=TEST_DIRECTORY,
            nameservers=TEST_NAMESERVERS,
            net=kwargs.pop("net", FakeNetwork(self.server)),
            **kwargs
        )

    def issue(self, client):
        """Runs the standalone workflow to completion, publishing the requested records."""
        client.generate_private_key_and_csr()
        for name, values in client.request_dns_records().items():
            for value in values:
                self.server.dns.publish(name, value)

        with mock.patch("letsdns.challenges.query_txt", self.server.dns.query):
            self.assertTrue(client.check_dns_propagation(timeout=0, interval=0.01))
        return client.request_certificate()

    def test_load_directory(self):
        """Checks that the directory is fetched and its endpoints exposed."""
        directory = self.client.load_directory()
        self.assertEqual(directory["newOrder"], self.server.directory["newOrder"])
        self.assertEqual(directory["newNonce"], self.server.directory["newNonce"])

    def test_directory_unreachable(self):
        """Checks that an unreachable directory is reported as a retryable failure after local retries."""
        self.server.directory_down = True
        client = self.make_client()

        with mock.patch("letsdns.tools.pause", return_value=False) as pause:
            with self.assertRaises(letsdns.errors.DirectoryUnreachable) as context:
                client.load_directory()

        self.assertTrue(context.exception.retryable)
        self.assertEqual(pause.call_count, 2)

    def test_directory_missing_endpoints(self):
        """Checks that a directory without the required endpoints is rejected."""
        client = self.make_client()
        response = FakeResponse(200, {"newNonce": "https://acme.test/new-nonce"})

        with mock.patch.object(self.server, "get", return_value=response):
            with self.assertRaises(letsdns.errors.DirectoryUnreachable) as context:
                client.load_directory()

        self.assertFalse(context.exception.retryable)
        self.assertIn("newOrder", context.exception.message)

    def test_ensure_account_idempotent(self):
        """Checks that registering the same key twice yields the same account URL without an error."""
        first = self.client.ensure_account()
        self.assertEqual(self.client.ensure_account().uri, first.uri)

        # A second client holding the same key finds the existing account
        other = self.make_client(net=FakeNetwork(self.server, key=self.client.account_key))
        with self.assertLogs("letsdns", level="INFO") as logs:
            self.assertEqual(other.ensure_account().uri, first.uri)

        self.assertTrue(any("Reusing existing ACME account" in line for line in logs.output))
        self.assertEqual(len(self.server.accounts), 1)

    def test_ensure_account_requires_email(self):
        """Checks that an account is never registered without an explicit contact email."""
        accounts = dict(self.server.accounts)
        client = letsdns.ACMEClient(directory=TEST_DIRECTORY, net=FakeNetwork(self.server))
        with self.assertRaises(letsdns.errors.InvalidEmail):
            client.ensure_account()

        self.assertEqual(self.server.accounts, accounts)

    def test_new_account_switches_key(self):
        """Checks that `new_account()` registers a second account under a fresh key."""
        first = self.client.account.uri
        self.client.new_account()
        self.assertNotEqual(self.client.account.uri, first)
        self.assertEqual(len(self.server.accounts), 2)

    def test_require_account(self):
        """Checks that protocol operations need a registered account."""
        client = self.make_client()
        with self.assertRaises(letsdns.errors.InvalidAccount):
            client.create_order([TEST_DOMAIN])

    def test_create_order_and_fetch_authorizations(self):
        """Checks that every identifier gets exactly one authorization, in the order's identifier order."""
        identifiers = ["c.example.com", "a.example.com", "b.example.com"]
        order = self.client.create_order(identifiers)
        results = self.client.fetch_authorizations(order)

        self.assertTrue(results.ok)
        self.assertEqual(order.identifiers, identifiers)
        self.assertEqual(list(results.authorizations), identifiers)
        for identifier, authorization in results.authorizations.items():
            self.assertEqual(authorization.identifier, identifier)
            self.assertEqual(authorization.status, "pending")

    def test_create_order_invalid_domain(self):
        """Checks that invalid identifiers are rejected before reaching the server."""
        with self.assertRaises(letsdns.errors.InvalidDomain):
            self.client.create_order(["not a domain"])
        with self.assertRaises(letsdns.errors.InvalidDomain):
            self.client.create_order(TEST_DOMAIN)

    def test_fetch_authorizations_partial_failure(self):
        """Checks that one failed authorization fetch does not abort its siblings."""
        self.server.unavailable_authorizations = {TEST_DOMAINS[1]}
        order = self.client.create_order(TEST_DOMAINS)
        results = self.client.fetch_authorizations(order)

        self.assertFalse(results.ok)
        self.assertEqual(list(results.authorizations), [TEST_DOMAINS[0]])
        self.assertEqual(list(results.failures), [TEST_DOMAINS[1]])
        failure = results.failures[TEST_DOMAINS[1]]
        self.assertIsInstance(failure, letsdns.errors.AuthorizationUnavailable)
        self.assertEqual(failure.domain, TEST_DOMAINS[1])
        self.assertIn("unavailable", failure.reason)

        # The standalone workflow reports every failed domain
        client = self.make_client(domains=TEST_DOMAINS, new_account=True)
        with self.assertRaises(letsdns.errors.AuthorizationUnavailable) as context:
            client.request_dns_records()
        self.assertEqual(list(context.exception.failures), [TEST_DOMAINS[1]])

    def test_single_domain_challenge(self):
        """Checks that a single domain yields one authorization, one dns-01 challenge and one record."""
        order = self.client.create_order(letsdns.build_identifiers(TEST_DOMAIN))
        results = self.client.fetch_authorizations(order)
        self.assertEqual(order.identifiers, [TEST_DOMAIN])
        self.assertEqual(len(results.authorizations), 1)

        challenge, record = self.client.dns_record(results.authorizations[TEST_DOMAIN])
        self.assertEqual(challenge.type, "dns-01")
        self.assertEqual(record.name, "_acme-challenge.example.com")
        self.assertEqual(record.type, "TXT")
        self.assertEqual(record.domain, TEST_DOMAIN)

    def test_wildcard_challenge_selection(self):
        """Checks that wildcard orders carry both identifiers and only ever use dns-01."""
        identifiers = letsdns.build_identifiers(TEST_DOMAIN, include_wildcard=True)
        self.assertEqual(identifiers, ["example.com", "*.example.com"])

        results = self.client.fetch_authorizations(self.client.create_order(identifiers))
        self.assertEqual(list(results.authorizations), identifiers)
        wildcard = results.authorizations["*.example.com"]
        self.assertTrue(wildcard.wildcard)
        self.assertEqual(wildcard.domain, TEST_DOMAIN)
        self.assertEqual(self.client.select_challenge(wildcard).type, "dns-01")

        # Both records live at the base domain's challenge name
        records = [self.client.dns_record(authz)[1] for authz in results.authorizations.values()]
        self.assertEqual({record.name for record in records}, {"_acme-challenge.example.com"})
        self.assertNotEqual(records[0].value, records[1].value)

    def test_wildcard_rejects_non_dns_challenge(self):
        """Checks that an authorization offering only http-01 is rejected by the challenge selector."""
        self.server.offer_dns = False
        results = self.client.fetch_authorizations(self.client.create_order(["*.example.com"]))

        with self.assertRaises(letsdns.errors.NoDnsChallengeOffered) as context:
            self.client.select_challenge(results.authorizations["*.example.com"])
        self.assertEqual(context.exception.domain, "*.example.com")

    def test_new_order_new_record(self):
        """Checks that a second order for the same domain computes a new token and TXT value."""
        records = []
        for _ in range(2):
            results = self.client.fetch_authorizations(self.client.create_order([TEST_DOMAIN]))
            records.append(self.client.dns_record(results.authorizations[TEST_DOMAIN])[1])

        self.assertEqual(records[0].name, records[1].name)
        self.assertNotEqual(records[0].token, records[1].token)
        self.assertNotEqual(records[0].value, records[1].value)

    def test_acme_verification_and_cert(self):
        """Checks that the standalone workflow obtains a certificate covering the requested domains."""
        client = self.make_client(domains=TEST_DOMAINS, new_account=True)
        client.generate_private_key_and_csr()
        records = client.request_dns_records()
        self.assertEqual(sorted(records), [f"_acme-challenge.{domain}" for domain in TEST_DOMAINS])

        # Before the records exist, propagation checks fail
        with mock.patch("letsdns.challenges.query_txt", self.server.dns.query):
            self.assertFalse(client.check_dns_propagation(timeout=0, interval=0.01))

        fullchain = self.issue(client)
        self.assertTrue(is_cert(fullchain))
        self.assertEqual(client.certificate, fullchain)
        self.assertEqual(letsdns.tools.inspect_certificate(fullchain)["domains"], TEST_DOMAINS)
        self.assertTrue(is_json(client.export_account(save_certificate=True, save_private_key=True)))

    def test_valid_authorizations_need_no_record(self):
        """Checks that authorizations the CA already validated produce no DNS record."""
        self.issue(self.client)

        client = self.make_client(net=FakeNetwork(self.server, key=self.client.account_key), new_account=True)
        client.generate_private_key_and_csr()
        self.assertEqual(client.request_dns_records(), {})
        self.assertTrue(is_cert(client.request_certificate()))

    def test_authorization_invalid_carries_detail(self):
        """Checks that a CA rejection surfaces as AuthorizationInvalid with the CA's exact detail."""
        detail = 'Incorrect TXT record "stale" found at _acme-challenge.example.com'
        self.server.invalid_detail = detail
        authorization = self.client.fetch_authorizations(self.client.create_order([TEST_DOMAIN])).authorizations[
            TEST_DOMAIN]
        challenge = self.client.select_challenge(authorization)

        self.client.notify_ready(challenge, domain=TEST_DOMAIN)
        with self.assertRaises(letsdns.errors.AuthorizationInvalid) as context:
            self.client.poll_authorization(authorization, interval=0)

        self.assertEqual(context.exception.reason, detail)
        self.assertEqual(context.exception.domain, TEST_DOMAIN)
        self.assertFalse(context.exception.retryable)
        self.assertEqual(context.exception.to_dict()["reason"], detail)

    def test_notify_rejected(self):
        """Checks that a challenge rejection is final and carries the CA's detail."""
        self.server.reject_challenge = "Challenge already used"
        authorization = self.client.fetch_authorizations(self.client.create_order([TEST_DOMAIN])).authorizations[
            TEST_DOMAIN]

        with self.assertRaises(letsdns.errors.AuthorizationInvalid) as context:
            self.client.notify_ready(self.client.select_challenge(authorization), domain=TEST_DOMAIN)
        self.assertEqual(context.exception.reason, "Challenge already used")

    def test_poll_authorization_boundaries(self):
        """Checks that polling never runs beyond its attempt or time limits."""
        self.server.authz_pending_polls = 1000
        authorization = self.client.fetch_authorizations(self.client.create_order([TEST_DOMAIN])).authorizations[
            TEST_DOMAIN]
        self.client.notify_ready(self.client.select_challenge(authorization), domain=TEST_DOMAIN)

        # Zero attempts times out without contacting the server
        before = len(self.server.requests)
        with self.assertRaises(letsdns.errors.AuthorizationTimeout) as context:
            self.client.poll_authorization(authorization, max_attempts=0)
        self.assertEqual(len(self.server.requests), before)
        self.assertTrue(context.exception.retryable)

        # Exceeding the attempts times out after exactly that many fetches
        with self.assertRaises(letsdns.errors.AuthorizationTimeout):
            self.client.poll_authorization(authorization, interval=0, max_attempts=3)
        polls = [url for url, _ in self.server.requests[before:] if url == authorization.url]
        self.assertEqual(len(polls), 3)

        # The deadline caps the total time even with attempts left
        self.server.retry_after = None
        start = time.monotonic()
        with self.assertRaises(letsdns.errors.AuthorizationTimeout):
            self.client.poll_authorization(authorization, interval=5, max_attempts=100, deadline=0.2)
        self.assertLess(time.monotonic() - start, 2)

    def test_poll_authorization_cancel(self):
        """Checks that a set cancel event stops polling."""
        self.server.authz_pending_polls = 1000
        self.server.retry_after = "5"
        authorization = self.client.fetch_authorizations(self.client.create_order([TEST_DOMAIN])).authorizations[
            TEST_DOMAIN]
        self.client.notify_ready(self.client.select_challenge(authorization), domain=TEST_DOMAIN)

        cancel = mock.Mock()
        cancel.wait.return_value = True
        with self.assertRaises(letsdns.errors.IssuanceCancelled):
            self.client.poll_authorization(authorization, cancel=cancel)
        cancel.wait.assert_called_once_with(5)

    def test_finalize_order_csr_mismatch(self):
        """Checks that a CSR naming other identifiers is refused before finalization."""
        private_key = letsdns.tools.generate_private_key()
        order = self.client.create_order([TEST_DOMAIN])

        with self.assertRaises(letsdns.errors.InvalidCSR):
            self.client.finalize_order(order, letsdns.tools.generate_csr(private_key, ["other.example.com"]))
        self.assertEqual(self.server.finalize_calls, 0)

    def test_finalize_order_case_insensitive(self):
        """Checks that CSR identifiers are matched to the order ignoring case."""
        client = self.make_client(domains=["Mixed.Example.com"], new_account=True)
        client.generate_private_key_and_csr()
        for name, values in client.request_dns_records().items():
            self.server.dns.publish(name, values[0])
        self.assertTrue(is_cert(client.request_certificate()))
        self.assertEqual(self.server.finalize_calls, 1)

    def test_finalize_failed(self):
        """Checks that an order turned invalid at finalization carries the CA's detail."""
        self.server.finalize_error = "Key is too small"
        with self.assertRaises(letsdns.errors.FinalizeFailed) as context:
            self.issue(self.client)

        self.assertNotIsInstance(context.exception, letsdns.errors.OrderTimeout)
        self.assertEqual(context.exception.reason, "Key is too small")
        self.assertEqual(self.server.finalize_calls, 1)

    def ready_client(self, domain):
        """Returns a client whose order has every authorization valid and awaits finalization."""
        client = self.make_client(domains=[domain], new_account=True)
        client.generate_private_key_and_csr()
        for name, values in client.request_dns_records().items():
            self.server.dns.publish(name, values[0])
        for authorization, challenge, _ in client._dns_challenges:    # pylint: disable=protected-access
            client.notify_ready(challenge, domain=authorization.identifier)
            client.poll_authorization(authorization, interval=0)
        return client

    def test_finalize_response_lost(self):
        """Checks that a finalize whose response is lost is never sent again; the order is read instead."""
        self.server.lost_finalize_responses = 1
        client = self.ready_client("lost.example.com")

        with self.assertLogs("letsdns", level="WARNING") as logs:
            order = client.finalize_order(client.order, client.csr, interval=0)

        self.assertEqual(order.status, "valid")
        self.assertEqual(self.server.finalize_calls, 1)
        self.assertEqual(len([url for url, _ in self.server.requests if url == client.order.finalize]), 1)
        self.assertTrue(any("reading the order instead" in line for line in logs.output))
        self.assertTrue(is_cert(client.download_certificate(order).fullchain.encode()))

    def test_finalize_request_not_delivered(self):
        """Checks that a finalize that never reached the CA fails as retryable without a second finalize."""
        client = self.ready_client("undelivered.example.com")
        self.server.connection_errors = 1

        with self.assertRaises(letsdns.errors.FinalizeFailed) as context:
            client.finalize_order(client.order, client.csr, interval=0)

        self.assertTrue(context.exception.retryable)
        self.assertEqual(self.server.finalize_calls, 0)
        self.assertEqual(self.server.orders[client.order.url]["status"], "ready")

    def test_order_processing_and_timeout(self):
        """Checks that a processing order is polled until valid, and times out when it never settles."""
        self.server.order_processing_polls = 2
        self.assertTrue(is_cert(self.issue(self.client)))

        self.server.order_processing_polls = 1000
        client = self.make_client(domains=["slow.example.com"], new_account=True)
        client.generate_private_key_and_csr()
        for name, values in client.request_dns_records().items():
            self.server.dns.publish(name, values[0])
        for authorization, challenge, _ in client._dns_challenges:    # pylint: disable=protected-access
            client.notify_ready(challenge, domain=authorization.identifier)
            client.poll_authorization(authorization, interval=0)

        with self.assertRaises(letsdns.errors.OrderTimeout) as context:
            client.finalize_order(client.order, client.csr, interval=0, max_attempts=2)
        self.assertIsInstance(context.exception, letsdns.errors.FinalizeFailed)
        self.assertTrue(context.exception.retryable)

    def test_download_certificate_split(self):
        """Checks that the leaf and chain recombine into exactly the downloaded bundle for any chain length."""
        for chain_length in (0, 1, 2):
            self.server.chain_length = chain_length
            client = self.make_client(domains=[f"chain{chain_length}.example.com"], new_account=True)
            self.issue(client)

            bundle = client.download_certificate(client.order)
            self.assertEqual(bundle.certificate + bundle.chain, bundle.fullchain)
            self.assertEqual(bundle.fullchain, self.server.certificates[client.order.certificate])
            self.assertEqual(bundle.certificate.count("BEGIN CERTIFICATE"), 1)
            self.assertEqual(bundle.chain.count("BEGIN CERTIFICATE"), chain_length)

    def test_signed_requests_use_jose_content_type(self):
        """Checks that every signed request, including the PEM chain download, is sent as application/jose+json."""
        self.issue(self.client)
        self.server.content_types.clear()

        bundle = self.client.download_certificate(self.client.order)
        self.assertEqual(bundle.fullchain, self.server.certificates[self.client.order.certificate])
        self.assertEqual(self.server.content_types, ["application/jose+json"])

        # Explicit headers without the JOSE content type are refused like a real CA would
        with self.assertRaises(letsdns.errors.CertificateDownloadFailed):
            self.client._post(    # pylint: disable=protected-access
                self.client.order.certificate, None, letsdns.errors.CertificateDownloadFailed, "download certificate",
                headers={"Accept": letsdns.PEM_CHAIN_CONTENT_TYPE}
            )

    def test_request_payloads(self):
        """Checks the JSON bodies of the finalize, revocation and account status requests."""
        self.assertEqual(letsdns.FinalizeRequest(csr=b"csr").to_partial_json(), {"csr": "Y3Ny"})
        self.assertEqual(letsdns.StatusUpdate(status="deactivated").to_partial_json(), {"status": "deactivated"})

        revocation = letsdns.RevocationRequest.from_json({"certificate": "ZGVy", "reason": 4})
        self.assertEqual(revocation.certificate, b"der")
        self.assertEqual(revocation.reason, 4)

    def test_download_requires_valid_order(self):
        """Checks that a certificate is never downloaded from an unfinished order."""
        order = self.client.create_order([TEST_DOMAIN])
        with self.assertRaises(letsdns.errors.CertificateDownloadFailed):
            self.client.download_certificate(order)

    def test_bad_nonce_retried_once(self):
        """Checks that one badNonce is retried automatically but a second surfaces as BadNonce."""
        self.server.bad_nonces = 1
        self.client.create_order([TEST_DOMAIN])

        self.server.bad_nonces = 2
        with self.assertRaises(letsdns.errors.BadNonce) as context:
            self.client.create_order([TEST_DOMAIN])
        self.assertTrue(context.exception.retryable)

    def test_transient_errors_retried(self):
        """Checks that connection failures are retried with backoff before failing as retryable."""
        with mock.patch("letsdns.tools.pause", return_value=False) as pause:
            self.server.connection_errors = 2
            self.client.create_order([TEST_DOMAIN])
            self.assertEqual([call.args[0] for call in pause.call_args_list], [1.0, 2.0])

            self.server.connection_errors = 3
            with self.assertRaises(letsdns.errors.OrderCreationFailed) as context:
                self.client.create_order([TEST_DOMAIN])
        self.assertTrue(context.exception.retryable)

    def test_generate_keys_and_csr(self):
        """Test to ensure both keys and CSRs are generated correctly."""
        for key_type in ["ec256", "ec384", "rsa2048", "rsa4096"]:
            self.assertIsInstance(self.client.generate_private_key(key_type=key_type), bytes)
            self.assertTrue(is_private_key(self.client.private_key, key_type))

        self.assertTrue(is_csr(self.client.generate_csr()))
        self.assertEqual(letsdns.tools.csr_identifiers(self.client.csr), [TEST_DOMAIN])

        with self.assertRaises(letsdns.errors.InvalidKeyType):
            self.client.generate_private_key("INVALID")

    def test_account_export_and_load(self):
        """Checks that an exported account can be loaded and reused without registering again."""
        exported = self.client.export_account()
        self.assertTrue(is_json(exported))
        self.assertNotIn("BEGIN", json.loads(exported)["private_key"])

        loaded = letsdns.ACMEClient.load_account(exported, net=FakeNetwork(self.server))
        self.assertEqual(loaded.account.uri, self.client.account.uri)
        self.assertEqual(loaded.email, TEST_EMAIL)
        self.assertEqual(loaded.ensure_account().uri, self.client.account.uri)
        self.assertEqual(len(self.server.accounts), 1)

        with self.assertRaises(letsdns.errors.InvalidAccount):
            letsdns.ACMEClient.load_account('{"directory": "https://acme.test/directory"}')

    def test_account_file_and_deactivation(self):
        """Checks account files are owner-only, and that deactivation removes the file and the registration."""
        with tempfile.TemporaryDirectory() as tmp:
            self.client.export_account_to_file(path=tmp, name="account.json")
            file_path = pathlib.Path(tmp, "account.json")
            self.assertEqual(file_path.stat().st_mode & 0o777, 0o600)

            loaded = letsdns.ACMEClient.load_account_from_file(str(file_path), net=FakeNetwork(self.server))
            self.assertEqual(loaded.account_path, str(file_path))
            loaded.deactivate_account(delete=True)
            self.assertFalse(file_path.exists())
            self.assertIsNone(loaded.account)

            with self.assertRaises(letsdns.errors.InvalidPath):
                letsdns.ACMEClient.load_account_from_file(str(file_path))
            with self.assertRaises(letsdns.errors.InvalidPath):
                self.client.export_account_to_file(path=str(file_path))

        with self.assertRaises(letsdns.errors.AccountRegistrationFailed):
            loaded.ensure_account()

    def test_revoke_certificate(self):
        """Checks that an issued certificate can be revoked."""
        fullchain = self.issue(self.client)
        self.client.revoke_certificate(reason=4)

        serial = letsdns.tools.load_certificate(fullchain).serial_number
        self.assertEqual(self.server.revoked, [(serial, 4)])

    def test_dns_records_before_order(self):
        """Checks that DNS records cannot be read before they are requested."""
        with self.assertRaises(letsdns.errors.InvalidDNSRecord):
            return self.client.dns_records


if __name__ == '__main__':
    unittest.main()
