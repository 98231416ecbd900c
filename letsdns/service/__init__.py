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
The consumer facing issuance API. `IssuanceService.start_issuance()` creates the order and returns the DNS records to
publish with a session token; `check_dns_status()` reports propagation; `complete_issuance()` runs notification,
polling, finalization and download as a background task and returns the certificate, or a status to poll again.
"""
import concurrent.futures
import datetime
import logging
import os
import pathlib
import re
import threading
from dataclasses import dataclass

import validators

from .. import ACMEClient
from .. import challenges
from .. import errors
from .. import models
from .. import tools
from ..config import Settings
from ..ratelimit import KIND_DOMAIN, KIND_IP, RateLimiter
from ..store import FileCertificateStore, FileSessionStore, MemoryCertificateStore, MemorySessionStore

# Constants and Variables
log = logging.getLogger(__name__)
ISSUE_ENDPOINT = "issue"
EXPORT_FILES = ("cert.pem", "chain.pem", "fullchain.pem", "privkey.pem")
# The session state each error leaves behind, where the state machine allows it
FAILURE_STATES = (
    (errors.IssuanceCancelled, models.SessionState.CANCELLED),
    (errors.AuthorizationInvalid, models.SessionState.AUTHORIZATION_INVALID),
    (errors.AuthorizationTimeout, models.SessionState.AUTHORIZATION_TIMEOUT),
    (errors.OrderTimeout, models.SessionState.FAILED),
    (errors.FinalizeFailed, models.SessionState.ORDER_INVALID),
)


@dataclass
class IssuanceTask:
    """A background issuance run and the event that cancels it."""
    future: concurrent.futures.Future
    cancel: threading.Event


class IssuanceService:
    """
    Runs DNS-01 issuance sessions on a worker pool, keeping one ACME account per contact email.
    """
    # pylint: disable=too-many-instance-attributes,too-many-public-methods

    def __init__(
            self,
            settings: Settings = None,
            certificate_store=None,
            session_store=None,
            rate_limiter: RateLimiter = None,
            client_factory=None,
            dns_query=None
    ) -> None:
        """
        Args:
            settings (letsdns.config.Settings): The service settings. Defaults to `Settings()`.
            certificate_store (letsdns.store.CertificateStore): Where certificate records live. Defaults to a file
                store under `settings.store_dir`, or memory when it is unset.
            session_store (letsdns.store.SessionStore): Where challenge sessions live, defaulting like
                `certificate_store`.
            rate_limiter (letsdns.ratelimit.RateLimiter): Limits issuance requests per IP address and domain.
            client_factory (callable): Builds an unregistered `letsdns.ACMEClient` for a contact email.
            dns_query (callable): Replaces `letsdns.challenges.query_txt` for propagation checks.

        Examples:
            >>> service = IssuanceService(Settings.from_env())
            >>> started = service.start_issuance("example.com", "admin@example.com", wildcard=True)
            >>> started["dns_records"][0]["name"]
            '_acme-challenge.example.com'
        """
        self.settings = settings if settings else Settings()
        store_dir = pathlib.Path(self.settings.store_dir) if self.settings.store_dir else None
        if certificate_store is None:
            certificate_store = FileCertificateStore(store_dir / "certificates") if store_dir else \
                MemoryCertificateStore()
        if session_store is None:
            session_store = FileSessionStore(store_dir / "sessions") if store_dir else MemorySessionStore()

        self.certificates = certificate_store
        self.sessions = session_store
        self.rate_limiter = rate_limiter if rate_limiter else RateLimiter(
            requests=self.settings.rate_limit_requests,
            window=self.settings.rate_limit_window,
            block=self.settings.rate_limit_block,
            enabled=self.settings.rate_limit_enabled
        )
        self.client_factory = client_factory if client_factory else self._new_client
        self.dns_query = dns_query
        self.worker = None
        self._clients = {}
        self._tasks = {}
        self._lock = threading.RLock()
        self._clients_lock = threading.Lock()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.max_workers, thread_name_prefix="letsdns-issue"
        )

    # Consumer API
    def start_issuance(self, domain: str, email: str, wildcard: bool = False, client_ip: str = None) -> dict:
        """
        Creates a certificate record and an order, and computes the DNS records the consumer must publish.

        Args:
            domain (str): The domain to certify.
            email (str): The contact email of the issuing ACME account. Always required.
            wildcard (bool): Also certify `*.<domain>`.
            client_ip (str): The requesting IP address, for rate limiting.

        Returns:
            dict: The `session_token`, `certificate_id`, identifiers, `dns_records` and session expiry.

        Raises:
            letsdns.errors.InvalidDomain: When `domain` is not a valid domain name.
            letsdns.errors.InvalidEmail: When `email` is not a valid email address.
            letsdns.errors.RateLimited: When the IP address or domain made too many requests.
            letsdns.errors.LetsDNSError: When the account, order or authorizations cannot be set up. The
                certificate record is marked failed.
        """
        domain = self._check_request(domain, email, client_ip)
        return self._start(domain, email.strip().lower(), wildcard)

    def check_dns_status(self, session_token: str) -> dict:
        """
        Checks every DNS record of a session against the configured resolvers once.

        Returns:
            dict: Whether every record is `verified`, plus the per-domain propagation results.

        Raises:
            letsdns.errors.SessionNotFound: When the token is unknown.
            letsdns.errors.SessionExpired: When the session has expired.
        """
        session = self._session(session_token)
        current_values = [record.value for record in session.records]
        results = {
            challenge.domain: challenges.verify_propagation(
                challenge.record,
                self.settings.nameservers,
                min_confirmations=self.settings.min_confirmations,
                timeout=self.settings.dns_query_timeout,
                doh_resolvers=self.settings.doh_resolvers,
                query=self.dns_query,
                current_values=current_values
            )
            for challenge in session.challenges
        }
        verified = all(result.propagated for result in results.values())

        def record_check(current):
            current.verification_attempts += 1
            current.last_dns_check = models.utcnow()
            current.dns_verified = verified

        session = self._update_session(session_token, record_check)
        log.info("DNS check %d for %s: %s", session.verification_attempts, session.domain,
                 "verified" if verified else "pending")
        return {
            "session_token": session_token,
            "verified": verified,
            "attempts": session.verification_attempts,
            "state": session.state.value,
            "domains": {domain: result.to_dict() for domain, result in results.items()},
        }

    def complete_issuance(self, session_token: str, wait: bool = True, timeout: float = None) -> dict:
        """
        Starts (or joins) the background task that notifies the CA, polls, finalizes and downloads the certificate.

        Args:
            session_token (str): The token returned by `start_issuance()`.
            wait (bool): Block until the task finishes or `timeout` passes.
            timeout (float): How long (in seconds) to block. Defaults to `settings.request_timeout`.

        Returns:
            dict: The `certificate`, `private_key`, `chain` and `fullchain` once issued, otherwise the session status
                from `issuance_status()` to poll again later.

        Raises:
            letsdns.errors.LetsDNSError: The failure of the issuance. `error.to_dict()` names the domain, the CA's
                reason and whether it is retryable. `DnsNotPropagated` leaves the session open for another call.
        """
        task = self._submit(session_token)
        if task is None:
            session = self._session(session_token)
            if session.state is models.SessionState.CERTIFICATE_DOWNLOADED:
                return self._result(self.certificates.get_by_id(session.certificate_id))
            raise errors.from_dict(session.error or {"message": f"Session is {session.state.value}."})

        if not wait:
            return self.issuance_status(session_token)

        try:
            return task.future.result(timeout=self.settings.request_timeout if timeout is None else timeout)
        except concurrent.futures.TimeoutError:
            return self.issuance_status(session_token)
        except concurrent.futures.CancelledError as exc:
            raise errors.IssuanceCancelled("Issuance was cancelled.") from exc

    def issuance_status(self, session_token: str) -> dict:
        """
        Reports the state of a session and its certificate record.

        Raises:
            letsdns.errors.SessionNotFound: When the token is unknown.
            letsdns.errors.SessionExpired: When the session has expired.
        """
        session = self._session(session_token)
        record = self.certificates.get_by_id(session.certificate_id)
        with self._lock:
            task = self._tasks.get(session_token)

        return {
            "session_token": session_token,
            "certificate_id": session.certificate_id,
            "domain": session.domain,
            "domains": list(session.domains),
            "state": session.state.value,
            "status": record.status.value if record else None,
            "running": task is not None and not task.future.done(),
            "dns_verified": session.dns_verified,
            "verification_attempts": session.verification_attempts,
            "error": session.error,
            "expires_at": session.expires_at.isoformat(),
        }

    def cancel_issuance(self, session_token: str) -> dict:
        """
        Cancels a session. A running task stops at its next wait; the session's key material is erased and the
        certificate record is marked failed.

        Returns:
            dict: The session status after cancellation.
        """
        self._session(session_token)
        with self._lock:
            task = self._tasks.get(session_token)
        if task is not None:
            task.cancel.set()
            task.future.cancel()

        self._abort(session_token, errors.IssuanceCancelled("Issuance was cancelled."))
        return self.issuance_status(session_token)

    def retry_issuance(self, certificate_id: str, client_ip: str = None) -> dict:
        """
        Starts a new order for the domains, email and wildcard choice of a failed record. The new record's
        `retry_of` names the failed one, which is left untouched.

        Raises:
            letsdns.errors.InvalidCertificate: When no record has `certificate_id`.
            letsdns.errors.InvalidTransition: When the record has not failed.
        """
        record = self.certificates.get_by_id(certificate_id)
        if record is None:
            raise errors.InvalidCertificate(f"No certificate record found with ID '{certificate_id}'.")
        if record.status is not models.CertificateStatus.FAILED:
            msg = f"Certificate record '{certificate_id}' is {record.status.value}; only failed issuances can be retried."
            raise errors.InvalidTransition(msg, domain=record.domain)

        domain = self._check_request(record.domain, record.email, client_ip)
        log.info("Retrying issuance for %s (previous attempt %s)", domain, certificate_id)
        return self._start(domain, record.email, record.wildcard, retry_of=record.id)

    def troubleshoot(self, session_token: str) -> dict:
        """
        Builds a DNS troubleshooting report for every record of a session.

        Returns:
            dict: One `letsdns.challenges.diagnose_record()` report per record under `records`.
        """
        session = self._session(session_token)
        current_values = [record.value for record in session.records]
        return {
            "session_token": session_token,
            "domain": session.domain,
            "records": [
                challenges.diagnose_record(
                    challenge.record, self.settings.nameservers, timeout=self.settings.dns_query_timeout,
                    query=self.dns_query, current_values=current_values
                )
                for challenge in session.challenges
            ],
        }

    # Certificate operations
    def verify_certificate(self, domain: str) -> dict:
        """
        Inspects the latest issued certificate covering `domain`.

        Returns:
            dict: The certificate summary from `letsdns.tools.inspect_certificate()` with expiry information.

        Raises:
            letsdns.errors.InvalidCertificate: When no issued certificate covers `domain`.
        """
        record = self.certificates.get(domain, status=models.CertificateStatus.ISSUED)
        if record is None:
            raise errors.InvalidCertificate(f"No issued certificate found for '{domain}'.", domain=domain)

        now = models.utcnow()
        info = tools.inspect_certificate(record.certificate)
        renewal_due_at = record.renewal_due_at
        info.update({
            "certificate_id": record.id,
            "days_until_expiry": (info["not_after"] - now).days,
            "is_expired": info["not_after"] <= now,
            "is_expiring_soon": record.is_renewal_due(now),
            "renewal_due_at": renewal_due_at.isoformat() if renewal_due_at else None,
            "not_before": info["not_before"].isoformat(),
            "not_after": info["not_after"].isoformat(),
        })
        return info

    def export_certificate(self, certificate_id: str, path: str) -> dict:
        """
        Writes an issued certificate as `cert.pem`, `chain.pem`, `fullchain.pem` and `privkey.pem` under
        `<path>/<domain>/`, readable only by the owner.

        Returns:
            dict: The path of each written file keyed by file name.

        Raises:
            letsdns.errors.InvalidPath: When `path` is not an existing directory.
            letsdns.errors.InvalidCertificate: When the record does not exist or was not issued.
        """
        dir_path = pathlib.Path(path).absolute()
        if not dir_path.is_dir():
            raise errors.InvalidPath(f"Directory at '{path}' does not exist.")

        record = self.certificates.get_by_id(certificate_id)
        if record is None or record.status is not models.CertificateStatus.ISSUED:
            raise errors.InvalidCertificate(f"No issued certificate found with ID '{certificate_id}'.")

        target = dir_path.joinpath(tools.strip_wildcard(record.domain))
        target.mkdir(mode=0o700, exist_ok=True)
        contents = (record.certificate, record.chain, record.fullchain, record.private_key or "")
        written = {}
        for name, content in zip(EXPORT_FILES, contents):
            file_path = target.joinpath(name)
            descriptor = os.open(str(file_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(descriptor, "w", encoding="utf-8") as pem_file:
                pem_file.write(content)
            written[name] = str(file_path)

        log.info("Exported certificate %s for %s to %s", record.id, record.domain, target)
        return written

    def renewal_candidates(self, now: datetime.datetime = None) -> list:
        """
        Lists the latest issued record of each domain that is due for renewal.

        Returns:
            list: The due `letsdns.models.CertificateRecord` objects, soonest expiry first.
        """
        now = now or models.utcnow()
        horizon = now + datetime.timedelta(days=self.settings.renewal_window_days)
        candidates = []
        for record in self.certificates.list_expiring_before(horizon):
            latest = self.certificates.get(record.domain, status=models.CertificateStatus.ISSUED)
            if latest is not None and latest.id == record.id and record.is_renewal_due(now):
                candidates.append(record)
        return candidates

    # Maintenance
    def evict_expired_sessions(self, now: datetime.datetime = None) -> int:
        """
        Cancels and deletes every expired session, erasing its key material.

        Returns:
            int: The number of sessions evicted.
        """
        expired = self.sessions.list_expired(now)
        for session in expired:
            self._evict(session.token)
        return len(expired)

    def purge_records(self, now: datetime.datetime = None) -> int:
        """
        Deletes certificate records older than `settings.record_retention_days`.

        Returns:
            int: The number of records deleted.
        """
        now = now or models.utcnow()
        self.rate_limiter.purge()
        return self.certificates.purge(now - datetime.timedelta(days=self.settings.record_retention_days))

    def start_maintenance(self, interval: float = 60) -> 'MaintenanceWorker':
        """Starts the background worker that evicts sessions and purges records every `interval` seconds."""
        if self.worker is None:
            self.worker = MaintenanceWorker(self, interval=interval)
            self.worker.start()
        return self.worker

    def shutdown(self, wait: bool = False) -> None:
        """Cancels every running task and stops the maintenance worker and the worker pool."""
        if self.worker is not None:
            self.worker.stop()
            self.worker = None

        with self._lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel.set()

        self._executor.shutdown(wait=wait, cancel_futures=True)
        log.info("Issuance service stopped")

    # Internals
    def _new_client(self, email: str) -> ACMEClient:
        """Builds an unregistered client from the settings."""
        return ACMEClient(
            email=email,
            directory=self.settings.directory,
            verify_ssl=self.settings.verify_ssl,
            account_key_type=self.settings.account_key_type,
            user_agent=self.settings.user_agent,
            timeout=self.settings.network_timeout
        )

    def _account_path(self, email: str) -> pathlib.Path:
        if not self.settings.account_dir:
            return None
        return pathlib.Path(self.settings.account_dir).absolute().joinpath(re.sub(r"[^a-z0-9._-]", "_", email) + ".json")

    def _client(self, email: str) -> ACMEClient:
        """Returns the registered client of the issuing identity, loading or registering it on first use."""
        with self._clients_lock:
            acme_client = self._clients.get(email)
            if acme_client is not None:
                return acme_client

            acme_client = self.client_factory(email)
            path = self._account_path(email)
            if path is not None and path.exists():
                acme_client = ACMEClient.load_account_from_file(str(path), net=acme_client.net)
                log.info("Loaded ACME account for %s from %s", email, path)

            acme_client.ensure_account(email=email)
            if path is not None and not path.exists():
                path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
                acme_client.export_account_to_file(str(path.parent), path.name, save_certificate=False)

            self._clients[email] = acme_client
            return acme_client

    def _check_request(self, domain: str, email: str, client_ip: str) -> str:
        """Validates a request and counts it against the rate limits. Returns the normalized domain."""
        domain = str(domain).strip().lower().rstrip(".")
        if not validators.domain(tools.strip_wildcard(domain)):
            raise errors.InvalidDomain(f"Invalid domain name '{domain}'. Domain name must adhere to RFC2181.",
                                       domain=domain)
        if not email or not validators.email(email.strip()):
            raise errors.InvalidEmail(f"Value '{email}' is not a valid email address.", domain=domain)

        self.rate_limiter.check(KIND_IP, client_ip, ISSUE_ENDPOINT)
        self.rate_limiter.check(KIND_DOMAIN, domain, ISSUE_ENDPOINT)
        return domain

    def _start(self, domain: str, email: str, wildcard: bool, retry_of: str = None) -> dict:
        """Creates the record, the order and the session for one issuance attempt."""
        identifiers = tools.build_identifiers(domain, include_wildcard=wildcard)
        record = models.CertificateRecord(
            domain=domain,
            domains=identifiers,
            email=email,
            wildcard=wildcard,
            renewal_window_days=self.settings.renewal_window_days,
            retry_of=retry_of
        )
        self.certificates.save(record)

        try:
            acme_client = self._client(email)
            order = acme_client.create_order(identifiers)
            results = acme_client.fetch_authorizations(order)
            if not results.ok:
                failed = ", ".join(results.failures)
                raise errors.AuthorizationUnavailable(
                    f"Unable to fetch authorizations for {failed}.", failures=results.failures, domain=failed
                )

            session_challenges = []
            for identifier, authorization in results.authorizations.items():
                if authorization.status == models.STATUS_VALID:
                    log.info("Authorization for %s is already valid", identifier)
                    continue
                if authorization.status != models.STATUS_PENDING:
                    detail = authorization.error_detail
                    raise errors.AuthorizationInvalid(
                        f"Authorization for '{identifier}' is {authorization.status}: {detail or 'no reason given'}",
                        domain=identifier,
                        reason=detail
                    )
                challenge, dns_record = acme_client.dns_record(authorization)
                session_challenges.append(models.SessionChallenge(
                    domain=identifier,
                    authorization_url=authorization.url,
                    challenge=challenge,
                    record=dns_record,
                    key_authorization=challenges.key_authorization(challenge, acme_client.account_key)
                ))

            private_key = tools.generate_private_key(self.settings.certificate_key_type)
            csr = tools.generate_csr(private_key, identifiers)
        except errors.LetsDNSError as exc:
            record.advance(models.CertificateStatus.FAILED, exc)
            self.certificates.save(record)
            log.error("Issuance for %s failed to start: %s", domain, exc.message)
            raise

        record.advance(models.CertificateStatus.DNS_PENDING)
        self.certificates.save(record)
        created_at = models.utcnow()
        session = models.ChallengeSession(
            certificate_id=record.id,
            domain=domain,
            domains=identifiers,
            email=email,
            order=order,
            include_wildcard=wildcard,
            authorizations=list(results.authorizations.values()),
            challenges=session_challenges,
            private_key=private_key.decode(),
            csr=csr.decode(),
            created_at=created_at,
            expires_at=created_at + datetime.timedelta(seconds=self.settings.session_ttl)
        )
        self.sessions.save(session)
        log.info("Started issuance %s for %s with %d DNS record(s)", record.id, ", ".join(identifiers),
                 len(session_challenges))

        return {
            "session_token": session.token,
            "certificate_id": record.id,
            "domain": domain,
            "domains": identifiers,
            "status": record.status.value,
            "dns_records": [challenge.record.to_dict() for challenge in session_challenges],
            "expires_at": session.expires_at.isoformat(),
        }

    def _session(self, session_token: str) -> models.ChallengeSession:
        """Loads a live session, evicting it when it has expired."""
        session = self.sessions.get(session_token)
        if session is None:
            raise errors.SessionNotFound("No issuance session found for this token.")
        if session.is_expired():
            self._evict(session_token)
            raise errors.SessionExpired("The issuance session has expired. Start a new issuance.",
                                        domain=session.domain)
        return session

    def _update_session(self, session_token: str, mutate) -> models.ChallengeSession:
        """Applies `mutate` to the stored session and saves it, serialized against other updates."""
        with self._lock:
            session = self.sessions.get(session_token)
            if session is None:
                raise errors.SessionNotFound("No issuance session found for this token.")
            mutate(session)
            self.sessions.save(session)
            return session

    def _transition(self, session_token: str, state: models.SessionState, cancel: threading.Event) -> None:
        if cancel.is_set():
            raise errors.IssuanceCancelled("Issuance was cancelled.")
        self._update_session(session_token, lambda session: session.transition(state))

    def _submit(self, session_token: str) -> IssuanceTask:
        """Starts the background task for a session unless one is running or has already settled it."""
        with self._lock:
            session = self._session(session_token)
            task = self._tasks.get(session_token)
            pending = session.state is models.SessionState.CHALLENGE_PENDING
            if task is not None and not (task.future.done() and pending):
                return task
            if not pending:
                return None

            cancel = threading.Event()
            task = IssuanceTask(future=self._executor.submit(self._run, session_token, cancel), cancel=cancel)
            self._tasks[session_token] = task
            return task

    def _run(self, session_token: str, cancel: threading.Event) -> dict:
        """The background task body. Marks the session and record failed on any error but `DnsNotPropagated`."""
        try:
            return self._issue(session_token, cancel)
        except errors.DnsNotPropagated as exc:
            self._update_session(session_token, lambda session: setattr(session, "error", exc.to_dict()))
            log.warning("Issuance %s waiting on DNS: %s", session_token[:8], exc.message)
            raise
        except errors.LetsDNSError as exc:
            self._abort(session_token, exc)
            if cancel.is_set() and not isinstance(exc, errors.IssuanceCancelled):
                raise errors.IssuanceCancelled("Issuance was cancelled.", domain=exc.domain) from exc
            raise
        except Exception as exc:
            self._abort(session_token, errors.LetsDNSError(f"Unexpected issuance failure: {exc}"))
            raise

    def _issue(self, session_token: str, cancel: threading.Event) -> dict:
        """Propagation wait, notification, polling, finalization and download for one session."""
        session = self._session(session_token)
        acme_client = self._client(session.email)
        poll_policy = {
            "interval": self.settings.poll_interval,
            "max_attempts": self.settings.poll_max_attempts,
            "backoff": self.settings.poll_backoff,
            "max_interval": self.settings.poll_max_interval,
            "deadline": self.settings.poll_deadline,
            "cancel": cancel,
        }

        if session.challenges:
            policy = challenges.PropagationPolicy(
                resolvers=self.settings.nameservers,
                min_confirmations=self.settings.min_confirmations,
                interval=self.settings.dns_interval,
                timeout=self.settings.dns_timeout,
                query_timeout=self.settings.dns_query_timeout,
                doh_resolvers=self.settings.doh_resolvers,
                authoritative=self.settings.authoritative
            )
            challenges.wait_for_propagation(session.records, policy, cancel=cancel, query=self.dns_query)

        def mark_verified(current):
            current.dns_verified = True
            current.error = None

        self._update_session(session_token, mark_verified)
        for challenge in session.challenges:
            acme_client.notify_ready(challenge.challenge, domain=challenge.domain, cancel=cancel)
        self._transition(session_token, models.SessionState.CHALLENGE_NOTIFIED, cancel)

        self._transition(session_token, models.SessionState.AUTHORIZATION_POLLING, cancel)
        authorizations = {authorization.url: authorization for authorization in session.authorizations}
        for challenge in session.challenges:
            acme_client.poll_authorization(authorizations[challenge.authorization_url], **poll_policy)
        self._transition(session_token, models.SessionState.AUTHORIZATION_VALID, cancel)
        self._advance_record(session.certificate_id, models.CertificateStatus.VALIDATED)

        self._transition(session_token, models.SessionState.ORDER_FINALIZING, cancel)
        order = acme_client.finalize_order(session.order, session.csr.encode(), **poll_policy)
        self._transition(session_token, models.SessionState.ORDER_VALID, cancel)

        bundle = acme_client.download_certificate(order, cancel=cancel)
        bundle.private_key = session.private_key
        issued_at = models.utcnow()
        try:
            expires_at = tools.inspect_certificate(bundle.certificate)["not_after"]
        except errors.InvalidCertificate:
            expires_at = issued_at + datetime.timedelta(days=self.settings.certificate_lifetime_days)

        with self._lock:
            def downloaded(current):
                current.transition(models.SessionState.CERTIFICATE_DOWNLOADED)
                current.erase_secrets()

            self._update_session(session_token, downloaded)
            record = self.certificates.get_by_id(session.certificate_id)
            record.csr = session.csr
            record.issue(bundle, expires_at=expires_at, issued_at=issued_at)
            self.certificates.save(record)

        log.info("Issued certificate %s for %s, expires %s", record.id, ", ".join(record.domains),
                 expires_at.isoformat())
        return self._result(record)

    def _advance_record(self, certificate_id: str, status: models.CertificateStatus) -> None:
        with self._lock:
            record = self.certificates.get_by_id(certificate_id)
            record.advance(status)
            self.certificates.save(record)

    def _abort(self, session_token: str, error: errors.LetsDNSError) -> None:
        """Moves a session to its failure state, erases its key material and fails its record. Idempotent."""
        with self._lock:
            session = self.sessions.get(session_token)
            if session is None or session.state.terminal:
                return

            state = next((state for error_cls, state in FAILURE_STATES if isinstance(error, error_cls)),
                         models.SessionState.FAILED)
            if not session.can_transition(state):
                state = models.SessionState.FAILED
            session.transition(state)
            session.error = error.to_dict()
            session.erase_secrets()
            self.sessions.save(session)

            record = self.certificates.get_by_id(session.certificate_id)
            if record is not None and not record.status.terminal:
                record.advance(models.CertificateStatus.FAILED, error)
                self.certificates.save(record)

        log.error("Issuance for %s ended in %s: %s", session.domain, state.value, error.message)

    def _evict(self, session_token: str) -> None:
        """Cancels an expired session's task, fails its record if unfinished, and deletes the session."""
        with self._lock:
            task = self._tasks.pop(session_token, None)
        if task is not None:
            task.cancel.set()
            task.future.cancel()

        self._abort(session_token, errors.SessionExpired("The issuance session expired before it completed."))
        self.sessions.delete(session_token)
        log.info("Evicted expired session %s", session_token[:8])

    @staticmethod
    def _result(record: models.CertificateRecord) -> dict:
        return {
            "certificate_id": record.id,
            "domain": record.domain,
            "domains": list(record.domains),
            "status": record.status.value,
            "certificate": record.certificate,
            "private_key": record.private_key,
            "chain": record.chain,
            "fullchain": record.fullchain,
            "issued_at": record.issued_at.isoformat() if record.issued_at else None,
            "expires_at": record.expires_at.isoformat() if record.expires_at else None,
        }


class MaintenanceWorker:
    """Daemon thread that periodically evicts expired sessions and purges old certificate records."""

    def __init__(self, service: IssuanceService, interval: float = 60) -> None:
        self.service = service
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="letsdns-maintenance", daemon=True)
        self._thread.start()
        log.info("Maintenance worker started (interval=%ss)", self.interval)

    def stop(self, timeout: float = 5) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def run_once(self) -> None:
        """Runs every maintenance task once. A failing task is logged and does not stop the others."""
        for name, func in (("evict_sessions", self.service.evict_expired_sessions),
                           ("purge_records", self.service.purge_records)):
            try:
                func()
            except Exception:  # pylint: disable=broad-except
                log.exception("Maintenance task '%s' failed", name)

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)
