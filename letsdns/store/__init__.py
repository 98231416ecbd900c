# Copyright 2023 Jared Hendrickson
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
"""
Persistence for certificate records and challenge sessions. Each store has an in-memory implementation for tests and
short-lived processes, and a JSON file implementation that keeps one owner-only file per record or session.
"""
import abc
import datetime
import json
import logging
import os
import pathlib
import threading

from .. import errors
from .. import models

# Constants and Variables
log = logging.getLogger(__name__)
FILE_MODE = 0o600


def _write_json(path: pathlib.Path, data: dict) -> None:
    """Writes `data` to `path` through a temporary file so readers never see a partial file."""
    tmp_path = path.with_suffix(".tmp")
    descriptor = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
    with os.fdopen(descriptor, "w", encoding="utf-8") as json_file:
        json.dump(data, json_file)
    os.replace(str(tmp_path), str(path))


def _prepare_dir(path: str) -> pathlib.Path:
    dir_path = pathlib.Path(path).absolute()
    if dir_path.exists() and not dir_path.is_dir():
        raise errors.InvalidPath(f"Path at '{path}' exists but is not a directory.")
    dir_path.mkdir(mode=0o700, parents=True, exist_ok=True)
    return dir_path


class CertificateStore(abc.ABC):
    """
    Stores certificate records. A saved record may only move forward through its status enum; an attempt to save
    it with an earlier status, or to change a terminal record's status, raises `InvalidTransition`.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @abc.abstractmethod
    def _read(self, record_id: str) -> models.CertificateRecord:
        """Returns the stored record or None."""

    @abc.abstractmethod
    def _write(self, record: models.CertificateRecord) -> None:
        """Stores a copy of the record."""

    @abc.abstractmethod
    def _remove(self, record_id: str) -> None:
        """Deletes the stored record."""

    @abc.abstractmethod
    def _records(self) -> list:
        """Returns copies of every stored record."""

    def save(self, record: models.CertificateRecord) -> models.CertificateRecord:
        """
        Inserts or updates a record.

        Raises:
            letsdns.errors.InvalidTransition: When the save would move the stored status backwards.
        """
        with self._lock:
            stored = self._read(record.id)
            if stored is not None and stored.status is not record.status \
                    and not stored.status.can_advance_to(record.status):
                msg = (f"Certificate record '{record.id}' cannot move from '{stored.status.value}' to "
                       f"'{record.status.value}'. Start a new record to retry.")
                raise errors.InvalidTransition(msg, domain=record.domain)
            self._write(record)
        log.debug("Saved certificate record %s (%s) for %s", record.id, record.status.value, record.domain)
        return record

    def get(self, domain: str, status: models.CertificateStatus = None) -> models.CertificateRecord:
        """
        Returns the most recently created record covering `domain`, optionally only among records with `status`.

        Returns:
            letsdns.models.CertificateRecord: The record, or None when there is none.
        """
        history = self.history(domain)
        if status is not None:
            history = [record for record in history if record.status is models.CertificateStatus(status)]
        return history[-1] if history else None

    def get_by_id(self, record_id: str) -> models.CertificateRecord:
        """Returns the record with `record_id`, or None."""
        with self._lock:
            return self._read(record_id)

    def history(self, domain: str) -> list:
        """Returns every record covering `domain`, oldest first."""
        with self._lock:
            records = [record for record in self._records() if record.covers(domain)]
        return sorted(records, key=lambda record: record.created_at)

    def list_expiring_before(self, when: datetime.datetime) -> list:
        """Returns the issued records that expire before `when`, soonest first."""
        with self._lock:
            records = [
                record for record in self._records()
                if record.status is models.CertificateStatus.ISSUED and record.expires_at and record.expires_at < when
            ]
        return sorted(records, key=lambda record: record.expires_at)

    def purge(self, older_than: datetime.datetime) -> int:
        """
        Deletes records created before `older_than`.

        Returns:
            int: The number of records deleted.
        """
        with self._lock:
            expired = [record.id for record in self._records() if record.created_at < older_than]
            for record_id in expired:
                self._remove(record_id)
        if expired:
            log.info("Purged %d certificate record(s) created before %s", len(expired), older_than.isoformat())
        return len(expired)


class MemoryCertificateStore(CertificateStore):
    """Keeps certificate records in memory."""

    def __init__(self) -> None:
        super().__init__()
        self._data = {}

    def _read(self, record_id):
        data = self._data.get(record_id)
        return models.CertificateRecord.from_dict(data) if data else None

    def _write(self, record):
        self._data[record.id] = record.to_dict()

    def _remove(self, record_id):
        self._data.pop(record_id, None)

    def _records(self):
        return [models.CertificateRecord.from_dict(data) for data in self._data.values()]


class FileCertificateStore(CertificateStore):
    """Keeps each certificate record as an owner-only JSON file named after the record ID."""

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = _prepare_dir(path)

    def _file(self, record_id: str) -> pathlib.Path:
        return self.path.joinpath(f"{pathlib.Path(record_id).name}.json")

    def _read(self, record_id):
        file_path = self._file(record_id)
        if not file_path.exists():
            return None
        return models.CertificateRecord.from_dict(json.loads(file_path.read_text(encoding="utf-8")))

    def _write(self, record):
        _write_json(self._file(record.id), record.to_dict())

    def _remove(self, record_id):
        self._file(record_id).unlink(missing_ok=True)

    def _records(self):
        return [
            models.CertificateRecord.from_dict(json.loads(file_path.read_text(encoding="utf-8")))
            for file_path in self.path.glob("*.json")
        ]


class SessionStore(abc.ABC):
    """Stores challenge sessions by token. Sessions carry private keys, so expired ones must be purged."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @abc.abstractmethod
    def save(self, session: models.ChallengeSession) -> models.ChallengeSession:
        """Inserts or updates a session."""

    @abc.abstractmethod
    def get(self, token: str) -> models.ChallengeSession:
        """Returns the session with `token`, or None."""

    @abc.abstractmethod
    def delete(self, token: str) -> None:
        """Deletes the session with `token` if it exists."""

    @abc.abstractmethod
    def all(self) -> list:
        """Returns every stored session."""

    def list_expired(self, now: datetime.datetime = None) -> list:
        """Returns the sessions whose expiry has passed."""
        now = now or models.utcnow()
        with self._lock:
            return [session for session in self.all() if session.is_expired(now)]

    def purge_expired(self, now: datetime.datetime = None) -> list:
        """
        Deletes every expired session.

        Returns:
            list: The tokens of the deleted sessions.
        """
        with self._lock:
            tokens = [session.token for session in self.list_expired(now)]
            for token in tokens:
                self.delete(token)
        return tokens


class MemorySessionStore(SessionStore):
    """Keeps challenge sessions in memory."""

    def __init__(self) -> None:
        super().__init__()
        self._data = {}

    def save(self, session):
        with self._lock:
            self._data[session.token] = session.to_dict()
        return session

    def get(self, token):
        with self._lock:
            data = self._data.get(token)
        return models.ChallengeSession.from_dict(data) if data else None

    def delete(self, token):
        with self._lock:
            self._data.pop(token, None)

    def all(self):
        with self._lock:
            return [models.ChallengeSession.from_dict(data) for data in self._data.values()]


class FileSessionStore(SessionStore):
    """Keeps each challenge session as an owner-only JSON file named after its token."""

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = _prepare_dir(path)

    def _file(self, token: str) -> pathlib.Path:
        return self.path.joinpath(f"{pathlib.Path(token).name}.json")

    def save(self, session):
        with self._lock:
            _write_json(self._file(session.token), session.to_dict())
        return session

    def get(self, token):
        file_path = self._file(token)
        with self._lock:
            if not file_path.exists():
                return None
            return models.ChallengeSession.from_dict(json.loads(file_path.read_text(encoding="utf-8")))

    def delete(self, token):
        with self._lock:
            self._file(token).unlink(missing_ok=True)

    def all(self):
        with self._lock:
            return [
                models.ChallengeSession.from_dict(json.loads(file_path.read_text(encoding="utf-8")))
                for file_path in self.path.glob("*.json")
            ]
