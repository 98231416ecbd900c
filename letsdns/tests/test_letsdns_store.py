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
"""Tests the certificate record and challenge session stores."""
import datetime
import os
import pathlib
import stat
import tempfile
import unittest

from letsdns import errors, models, store
from letsdns.models import CertificateStatus
from letsdns.tests import TEST_DOMAIN, TEST_EMAIL
from letsdns.tests.test_letsdns_models import make_session

NOW = datetime.datetime(2030, 1, 1, tzinfo=datetime.timezone.utc)


def make_record(domain: str = TEST_DOMAIN, days_ago: int = 0, **kwargs) -> models.CertificateRecord:
    """Creates a certificate record created `days_ago` days before NOW."""
    return models.CertificateRecord(
        domain=domain, domains=[domain, f"*.{domain}"], email=TEST_EMAIL,
        created_at=NOW - datetime.timedelta(days=days_ago), **kwargs
    )


class CertificateStoreTests:
    """Behaviour shared by every certificate store. Subclasses set `self.store` in setUp."""
    # pylint: disable=no-member

    def test_save_and_get(self):
        """Checks lookups by ID, by covered domain and by status."""
        old = self.store.save(make_record(days_ago=2, status=CertificateStatus.FAILED))
        new = self.store.save(make_record(days_ago=1))

        self.assertEqual(self.store.get_by_id(old.id), old)
        self.assertIsNone(self.store.get_by_id("missing"))
        self.assertEqual(self.store.get(TEST_DOMAIN).id, new.id)
        self.assertEqual(self.store.get(f"*.{TEST_DOMAIN}".upper()).id, new.id)
        self.assertEqual(self.store.get(TEST_DOMAIN, status=CertificateStatus.FAILED).id, old.id)
        self.assertIsNone(self.store.get(TEST_DOMAIN, status=CertificateStatus.ISSUED))
        self.assertIsNone(self.store.get("other.example.org"))
        self.assertEqual([record.id for record in self.store.history(TEST_DOMAIN)], [old.id, new.id])

    def test_save_forward_only(self):
        """Checks that a saved record can move forward but never backward."""
        record = self.store.save(make_record())
        record.advance(CertificateStatus.DNS_PENDING)
        self.store.save(record)
        self.store.save(record)

        stale = self.store.get_by_id(record.id)
        stale.status = CertificateStatus.PENDING
        with self.assertRaises(errors.InvalidTransition):
            self.store.save(stale)

        record.advance(CertificateStatus.FAILED, errors.DnsNotPropagated("Not visible"))
        self.store.save(record)
        revived = self.store.get_by_id(record.id)
        revived.status = CertificateStatus.ISSUED
        with self.assertRaises(errors.InvalidTransition):
            self.store.save(revived)
        self.assertIs(self.store.get_by_id(record.id).status, CertificateStatus.FAILED)

    def test_list_expiring_before(self):
        """Checks that only issued records expiring before the cutoff are listed, soonest first."""
        bundle = models.CertificateBundle(certificate="leaf", chain="", fullchain="leaf", private_key="key")
        later = make_record(domain="later.example.com")
        later.issue(bundle, expires_at=NOW + datetime.timedelta(days=20))
        sooner = make_record(domain="sooner.example.com")
        sooner.issue(bundle, expires_at=NOW + datetime.timedelta(days=10))
        unneeded = make_record(domain="fine.example.com")
        unneeded.issue(bundle, expires_at=NOW + datetime.timedelta(days=80))
        for record in (later, sooner, unneeded, make_record(domain="pending.example.com")):
            self.store.save(record)

        expiring = self.store.list_expiring_before(NOW + datetime.timedelta(days=30))
        self.assertEqual([record.id for record in expiring], [sooner.id, later.id])

    def test_purge(self):
        """Checks that only records created before the cutoff are deleted."""
        old = self.store.save(make_record(days_ago=100))
        recent = self.store.save(make_record(days_ago=1))

        self.assertEqual(self.store.purge(NOW - datetime.timedelta(days=90)), 1)
        self.assertIsNone(self.store.get_by_id(old.id))
        self.assertIsNotNone(self.store.get_by_id(recent.id))
        self.assertEqual(self.store.purge(NOW - datetime.timedelta(days=90)), 0)


class SessionStoreTests:
    """Behaviour shared by every session store. Subclasses set `self.sessions` in setUp."""
    # pylint: disable=no-member

    def test_save_get_delete(self):
        """Checks storing, reading and deleting a session by token."""
        session = self.sessions.save(make_session())
        self.assertEqual(self.sessions.get(session.token), session)
        self.assertIsNone(self.sessions.get("missing"))
        self.assertEqual([item.token for item in self.sessions.all()], [session.token])

        self.sessions.delete(session.token)
        self.sessions.delete(session.token)
        self.assertIsNone(self.sessions.get(session.token))

    def test_purge_expired(self):
        """Checks that only expired sessions are purged."""
        expired = self.sessions.save(make_session(created_at=NOW - datetime.timedelta(hours=2),
                                                  expires_at=NOW - datetime.timedelta(hours=1)))
        active = self.sessions.save(make_session(created_at=NOW, expires_at=NOW + datetime.timedelta(hours=1)))

        self.assertEqual([session.token for session in self.sessions.list_expired(NOW)], [expired.token])
        self.assertEqual(self.sessions.purge_expired(NOW), [expired.token])
        self.assertIsNone(self.sessions.get(expired.token))
        self.assertIsNotNone(self.sessions.get(active.token))


class TestMemoryStores(CertificateStoreTests, SessionStoreTests, unittest.TestCase):
    """Runs the store checks against the in-memory stores."""

    def setUp(self):
        self.store = store.MemoryCertificateStore()
        self.sessions = store.MemorySessionStore()

    def test_copies(self):
        """Checks that changing a record after saving it does not change the stored copy."""
        record = self.store.save(make_record())
        record.advance(CertificateStatus.DNS_PENDING)
        self.assertIs(self.store.get_by_id(record.id).status, CertificateStatus.PENDING)


class TestFileStores(CertificateStoreTests, SessionStoreTests, unittest.TestCase):
    """Runs the store checks against the JSON file stores."""

    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()  # pylint: disable=consider-using-with
        self.addCleanup(self.tmp_dir.cleanup)
        self.store = store.FileCertificateStore(os.path.join(self.tmp_dir.name, "certificates"))
        self.sessions = store.FileSessionStore(os.path.join(self.tmp_dir.name, "sessions"))

    def test_file_permissions(self):
        """Checks that records and sessions holding private keys are only readable by their owner."""
        record = self.store.save(make_record(private_key="secret"))
        session = self.sessions.save(make_session())

        for file_path in (self.store.path.joinpath(f"{record.id}.json"),
                          self.sessions.path.joinpath(f"{session.token}.json")):
            self.assertTrue(file_path.exists())
            self.assertEqual(stat.S_IMODE(os.stat(file_path).st_mode), 0o600)
        self.assertEqual(list(self.store.path.glob("*.tmp")), [])

    def test_persistence(self):
        """Checks that a new store over the same directory sees the saved records."""
        record = self.store.save(make_record())
        reopened = store.FileCertificateStore(str(self.store.path))
        self.assertEqual(reopened.get_by_id(record.id), record)

    def test_invalid_path(self):
        """Checks that a file cannot be used as the store directory."""
        file_path = pathlib.Path(self.tmp_dir.name).joinpath("not_a_dir")
        file_path.write_text("x", encoding="utf-8")
        with self.assertRaises(errors.InvalidPath):
            store.FileCertificateStore(str(file_path))


if __name__ == "__main__":
    unittest.main()
