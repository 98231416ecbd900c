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
Data objects shared by the ACME client, the DNS-01 engine, the stores and the issuance service. ACME resources
(`Order`, `Authorization`, `Challenge`) are parsed from the server's JSON; the remaining objects are owned by letsdns.
"""
import datetime
import enum
import secrets
import uuid
from dataclasses import dataclass, field

from .. import errors

# ACME resource status values (RFC 8555 section 7.1.6)
STATUS_PENDING = "pending"
STATUS_READY = "ready"
STATUS_PROCESSING = "processing"
STATUS_VALID = "valid"
STATUS_INVALID = "invalid"
STATUS_EXPIRED = "expired"
STATUS_DEACTIVATED = "deactivated"
STATUS_REVOKED = "revoked"
DNS01 = "dns-01"
DEFAULT_SESSION_TTL = 3600
DEFAULT_RENEWAL_WINDOW_DAYS = 30


def utcnow() -> datetime.datetime:
    """Returns the current time as a timezone aware UTC datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


def _dump_time(value: datetime.datetime) -> str:
    return value.isoformat() if value else None


def _load_time(value: str) -> datetime.datetime:
    return datetime.datetime.fromisoformat(value) if value else None


@dataclass
class Challenge:
    """One proof method offered by an authorization."""
    type: str
    url: str
    status: str = STATUS_PENDING
    token: str = None
    error: dict = None
    validated: str = None

    @classmethod
    def from_json(cls, jobj: dict) -> 'Challenge':
        """Parses an ACME challenge object."""
        return cls(
            type=jobj.get("type"),
            url=jobj.get("url"),
            status=jobj.get("status", STATUS_PENDING),
            token=jobj.get("token"),
            error=jobj.get("error"),
            validated=jobj.get("validated")
        )

    @property
    def error_detail(self) -> str:
        """The CA's problem detail for this challenge, if any."""
        return (self.error or {}).get("detail")

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "url": self.url,
            "status": self.status,
            "token": self.token,
            "error": self.error,
            "validated": self.validated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Challenge':
        return cls(**data)


@dataclass
class Authorization:
    """
    The proof requirement for one identifier. For wildcard identifiers the CA reports the base domain in `domain` and
    sets `wildcard`; `identifier` restores the requested `*.` form.
    """
    url: str
    domain: str
    status: str
    challenges: list = field(default_factory=list)
    wildcard: bool = False
    expires: str = None

    @classmethod
    def from_json(cls, url: str, jobj: dict) -> 'Authorization':
        """Parses an ACME authorization object fetched from `url`."""
        identifier = jobj.get("identifier") or {}
        return cls(
            url=url,
            domain=identifier.get("value", ""),
            status=jobj.get("status", STATUS_PENDING),
            challenges=[Challenge.from_json(chall) for chall in jobj.get("challenges", [])],
            wildcard=bool(jobj.get("wildcard", False)),
            expires=jobj.get("expires")
        )

    @property
    def identifier(self) -> str:
        return f"*.{self.domain}" if self.wildcard else self.domain

    @property
    def error_detail(self) -> str:
        """The first problem detail reported on any of this authorization's challenges."""
        for challenge in self.challenges:
            if challenge.error_detail:
                return challenge.error_detail
        return None

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "domain": self.domain,
            "status": self.status,
            "challenges": [challenge.to_dict() for challenge in self.challenges],
            "wildcard": self.wildcard,
            "expires": self.expires,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Authorization':
        data = dict(data)
        data["challenges"] = [Challenge.from_dict(chall) for chall in data.get("challenges", [])]
        return cls(**data)


@dataclass
class Order:
    """A certificate request for one or more identifiers."""
    url: str
    identifiers: list
    status: str
    authorizations: list
    finalize: str
    certificate: str = None
    expires: str = None
    error: dict = None

    @classmethod
    def from_json(cls, url: str, jobj: dict) -> 'Order':
        """Parses an ACME order object located at `url`."""
        return cls(
            url=url,
            identifiers=[identifier.get("value") for identifier in jobj.get("identifiers", [])],
            status=jobj.get("status", STATUS_PENDING),
            authorizations=list(jobj.get("authorizations", [])),
            finalize=jobj.get("finalize"),
            certificate=jobj.get("certificate"),
            expires=jobj.get("expires"),
            error=jobj.get("error")
        )

    @property
    def error_detail(self) -> str:
        return (self.error or {}).get("detail")

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "identifiers": list(self.identifiers),
            "status": self.status,
            "authorizations": list(self.authorizations),
            "finalize": self.finalize,
            "certificate": self.certificate,
            "expires": self.expires,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Order':
        return cls(**data)


@dataclass
class AuthorizationResults:
    """
    The outcome of fetching every authorization of an order. `authorizations` maps each identifier to its
    authorization in order of the order's identifiers; `failures` maps identifiers that could not be fetched to their
    `AuthorizationUnavailable` error.
    """
    authorizations: dict = field(default_factory=dict)
    failures: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass(frozen=True)
class DNSRecord:
    """
    The TXT record that proves control of `domain`. Derived from exactly one challenge token, so a record from an
    earlier order carries a different `token` and `value` than the current one.
    """
    name: str
    value: str
    domain: str
    type: str = "TXT"
    ttl: int = 300
    token: str = None
    challenge_url: str = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type,
            "value": self.value,
            "domain": self.domain,
            "ttl": self.ttl,
            "token": self.token,
            "challenge_url": self.challenge_url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'DNSRecord':
        return cls(**data)


@dataclass
class CertificateBundle:
    """An issued certificate split into the leaf, the chain and the full chain exactly as downloaded."""
    certificate: str
    chain: str
    fullchain: str
    private_key: str = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "certificate": self.certificate,
            "chain": self.chain,
            "fullchain": self.fullchain,
            "private_key": self.private_key,
        }


class CertificateStatus(str, enum.Enum):
    """Lifecycle of a certificate record. Records only move forward; `issued` and `failed` are terminal."""
    PENDING = "pending"
    DNS_PENDING = "dns-pending"
    VALIDATED = "validated"
    ISSUED = "issued"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (CertificateStatus.ISSUED, CertificateStatus.FAILED)

    def can_advance_to(self, other: 'CertificateStatus') -> bool:
        """Checks whether moving from this status to `other` is a forward move."""
        if self.terminal:
            return False
        if other is CertificateStatus.FAILED:
            return True
        order = list(CertificateStatus)
        return order.index(other) > order.index(self)


@dataclass
class CertificateRecord:
    """
    The durable record of one issuance attempt. A retry never reuses a record; it creates a new one whose `retry_of`
    names the failed attempt.
    """
    domain: str
    domains: list
    email: str
    wildcard: bool = False
    status: CertificateStatus = CertificateStatus.PENDING
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    private_key: str = field(default=None, repr=False)
    csr: str = field(default=None, repr=False)
    certificate: str = None
    chain: str = None
    fullchain: str = None
    issued_at: datetime.datetime = None
    expires_at: datetime.datetime = None
    renewal_window_days: int = DEFAULT_RENEWAL_WINDOW_DAYS
    error: dict = None
    retry_of: str = None
    created_at: datetime.datetime = field(default_factory=utcnow)
    updated_at: datetime.datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.status = CertificateStatus(self.status)

    def advance(self, status, error: errors.LetsDNSError = None) -> None:
        """
        Moves the record forward to `status`.

        Args:
            status (CertificateStatus): The new status.
            error (letsdns.errors.LetsDNSError): The failure to record when moving to `failed`.

        Raises:
            letsdns.errors.InvalidTransition: When the move is backwards or leaves a terminal status.
        """
        status = CertificateStatus(status)
        if not self.status.can_advance_to(status):
            msg = f"Certificate record '{self.id}' cannot move from '{self.status.value}' to '{status.value}'."
            raise errors.InvalidTransition(msg, domain=self.domain)

        self.status = status
        self.updated_at = utcnow()
        if error is not None:
            self.error = error.to_dict()

    def issue(self, bundle: CertificateBundle, expires_at: datetime.datetime, issued_at: datetime.datetime = None):
        """Stores the issued certificate material and marks the record `issued`."""
        self.certificate = bundle.certificate
        self.chain = bundle.chain
        self.fullchain = bundle.fullchain
        self.private_key = bundle.private_key
        self.issued_at = issued_at or utcnow()
        self.expires_at = expires_at
        self.advance(CertificateStatus.ISSUED)

    @property
    def renewal_due_at(self) -> datetime.datetime:
        if not self.expires_at:
            return None
        return self.expires_at - datetime.timedelta(days=self.renewal_window_days)

    def is_renewal_due(self, now: datetime.datetime = None) -> bool:
        if self.status is not CertificateStatus.ISSUED or not self.renewal_due_at:
            return False
        return (now or utcnow()) >= self.renewal_due_at

    def covers(self, domain: str) -> bool:
        """Checks whether `domain` is one of this record's identifiers, ignoring case."""
        domain = domain.lower()
        return domain == self.domain.lower() or domain in [name.lower() for name in self.domains]

    def to_dict(self, include_private_key: bool = True) -> dict:
        return {
            "id": self.id,
            "domain": self.domain,
            "domains": list(self.domains),
            "email": self.email,
            "wildcard": self.wildcard,
            "status": self.status.value,
            "private_key": self.private_key if include_private_key else None,
            "csr": self.csr,
            "certificate": self.certificate,
            "chain": self.chain,
            "fullchain": self.fullchain,
            "issued_at": _dump_time(self.issued_at),
            "expires_at": _dump_time(self.expires_at),
            "renewal_window_days": self.renewal_window_days,
            "error": self.error,
            "retry_of": self.retry_of,
            "created_at": _dump_time(self.created_at),
            "updated_at": _dump_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CertificateRecord':
        data = dict(data)
        for key in ("issued_at", "expires_at", "created_at", "updated_at"):
            data[key] = _load_time(data.get(key))
        return cls(**data)


class SessionState(str, enum.Enum):
    """States of the challenge finalization state machine a session runs through."""
    CHALLENGE_PENDING = "challenge_pending"
    CHALLENGE_NOTIFIED = "challenge_notified"
    AUTHORIZATION_POLLING = "authorization_polling"
    AUTHORIZATION_VALID = "authorization_valid"
    AUTHORIZATION_INVALID = "authorization_invalid"
    AUTHORIZATION_TIMEOUT = "authorization_timeout"
    ORDER_FINALIZING = "order_finalizing"
    ORDER_VALID = "order_valid"
    ORDER_INVALID = "order_invalid"
    CERTIFICATE_DOWNLOADED = "certificate_downloaded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return not _SESSION_TRANSITIONS[self]


_ABORT = {SessionState.FAILED, SessionState.CANCELLED}
_SESSION_TRANSITIONS = {
    SessionState.CHALLENGE_PENDING: {SessionState.CHALLENGE_NOTIFIED} | _ABORT,
    SessionState.CHALLENGE_NOTIFIED: {SessionState.AUTHORIZATION_POLLING} | _ABORT,
    SessionState.AUTHORIZATION_POLLING: {
        SessionState.AUTHORIZATION_VALID,
        SessionState.AUTHORIZATION_INVALID,
        SessionState.AUTHORIZATION_TIMEOUT
    } | _ABORT,
    SessionState.AUTHORIZATION_VALID: {SessionState.ORDER_FINALIZING} | _ABORT,
    SessionState.ORDER_FINALIZING: {SessionState.ORDER_VALID, SessionState.ORDER_INVALID} | _ABORT,
    SessionState.ORDER_VALID: {SessionState.CERTIFICATE_DOWNLOADED} | _ABORT,
    SessionState.AUTHORIZATION_INVALID: set(),
    SessionState.AUTHORIZATION_TIMEOUT: set(),
    SessionState.ORDER_INVALID: set(),
    SessionState.CERTIFICATE_DOWNLOADED: set(),
    SessionState.FAILED: set(),
    SessionState.CANCELLED: set(),
}


@dataclass
class SessionChallenge:
    """The dns-01 challenge selected for one identifier of a session together with its computed record."""
    domain: str
    authorization_url: str
    challenge: Challenge
    record: DNSRecord
    key_authorization: str

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "authorization_url": self.authorization_url,
            "challenge": self.challenge.to_dict(),
            "record": self.record.to_dict(),
            "key_authorization": self.key_authorization,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'SessionChallenge':
        return cls(
            domain=data["domain"],
            authorization_url=data["authorization_url"],
            challenge=Challenge.from_dict(data["challenge"]),
            record=DNSRecord.from_dict(data["record"]),
            key_authorization=data["key_authorization"]
        )


@dataclass
class ChallengeSession:
    """
    The short-lived bridge between an in-progress order and the consumer. It holds the certificate private key and
    CSR in plaintext until the order reaches a terminal state, at which point `erase_secrets()` must be called.
    """
    certificate_id: str
    domain: str
    domains: list
    email: str
    order: Order
    include_wildcard: bool = False
    authorizations: list = field(default_factory=list)
    challenges: list = field(default_factory=list)
    private_key: str = field(default=None, repr=False)
    csr: str = field(default=None, repr=False)
    token: str = field(default_factory=lambda: secrets.token_urlsafe(32))
    state: SessionState = SessionState.CHALLENGE_PENDING
    dns_verified: bool = False
    verification_attempts: int = 0
    last_dns_check: datetime.datetime = None
    error: dict = None
    created_at: datetime.datetime = field(default_factory=utcnow)
    expires_at: datetime.datetime = None

    def __post_init__(self):
        self.state = SessionState(self.state)
        if self.expires_at is None:
            self.expires_at = self.created_at + datetime.timedelta(seconds=DEFAULT_SESSION_TTL)

    @property
    def records(self) -> list:
        return [challenge.record for challenge in self.challenges]

    def can_transition(self, state) -> bool:
        return SessionState(state) in _SESSION_TRANSITIONS[self.state]

    def transition(self, state) -> None:
        """
        Moves the session to `state`.

        Raises:
            letsdns.errors.InvalidTransition: When `state` is not reachable from the current state.
        """
        state = SessionState(state)
        if not self.can_transition(state):
            msg = f"Session cannot move from '{self.state.value}' to '{state.value}'."
            raise errors.InvalidTransition(msg, domain=self.domain)
        self.state = state

    def is_expired(self, now: datetime.datetime = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def erase_secrets(self) -> None:
        """Drops the staged private key and CSR."""
        self.private_key = None
        self.csr = None

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "certificate_id": self.certificate_id,
            "domain": self.domain,
            "domains": list(self.domains),
            "email": self.email,
            "include_wildcard": self.include_wildcard,
            "order": self.order.to_dict(),
            "authorizations": [authz.to_dict() for authz in self.authorizations],
            "challenges": [challenge.to_dict() for challenge in self.challenges],
            "private_key": self.private_key,
            "csr": self.csr,
            "state": self.state.value,
            "dns_verified": self.dns_verified,
            "verification_attempts": self.verification_attempts,
            "last_dns_check": _dump_time(self.last_dns_check),
            "error": self.error,
            "created_at": _dump_time(self.created_at),
            "expires_at": _dump_time(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ChallengeSession':
        data = dict(data)
        data["order"] = Order.from_dict(data["order"])
        data["authorizations"] = [Authorization.from_dict(authz) for authz in data.get("authorizations", [])]
        data["challenges"] = [SessionChallenge.from_dict(chall) for chall in data.get("challenges", [])]
        for key in ("last_dns_check", "created_at", "expires_at"):
            data[key] = _load_time(data.get(key))
        return cls(**data)
