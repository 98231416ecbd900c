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
The DNS-01 challenge engine. Computes the TXT record a challenge requires and checks whether public resolvers can see
it yet. Record values are derived from the challenge token and the account key only, so the same challenge always
yields the same record and a new order always yields a new one.
"""
import concurrent.futures
import logging
import time
from dataclasses import dataclass, field

import dns.exception
import josepy as jose
import requests
from acme import challenges as acme_challenges

from .. import errors
from .. import models
from .. import tools

# Constants and Variables
log = logging.getLogger(__name__)
DNS_LABEL = '_acme-challenge'
DEFAULT_RESOLVERS = ['8.8.8.8', '1.1.1.1', '8.8.4.4', '1.0.0.1']
DEFAULT_DOH_RESOLVERS = ['https://dns.google/resolve', 'https://cloudflare-dns.com/dns-query']
QUERY_ERRORS = (dns.exception.DNSException, requests.exceptions.RequestException, OSError, ValueError)


def acme_challenge(challenge: models.Challenge) -> acme_challenges.DNS01:
    """
    Converts a parsed dns-01 challenge into the `acme` library challenge type.

    Raises:
        letsdns.errors.NoDnsChallengeOffered: When `challenge` is not a dns-01 challenge.
        letsdns.errors.InvalidDNSRecord: When the challenge token is missing or not base64url.
    """
    if challenge.type != models.DNS01:
        raise errors.NoDnsChallengeOffered(f"Challenge at '{challenge.url}' is '{challenge.type}', not dns-01.")
    if not challenge.token:
        raise errors.InvalidDNSRecord(f"Challenge at '{challenge.url}' has no token.")

    try:
        return acme_challenges.DNS01(token=jose.decode_b64jose(challenge.token))
    except jose.DeserializationError as exc:
        raise errors.InvalidDNSRecord(f"Challenge at '{challenge.url}' has a malformed token.") from exc


def key_authorization(challenge: models.Challenge, account_key: jose.JWK) -> str:
    """
    Computes the key authorization, `token + "." + base64url(JWK thumbprint)`.

    Args:
        challenge (letsdns.models.Challenge): The dns-01 challenge.
        account_key (josepy.JWK): The account key the order was created with.

    Returns:
        str: The key authorization string.
    """
    return acme_challenge(challenge).key_authorization(account_key)


def compute_record(challenge: models.Challenge, account_key: jose.JWK, domain: str) -> models.DNSRecord:
    """
    Computes the TXT record that satisfies a dns-01 challenge.

    Args:
        challenge (letsdns.models.Challenge): The dns-01 challenge selected from the authorization.
        account_key (josepy.JWK): The account key the order was created with.
        domain (str): The authorization identifier. A wildcard identifier is validated at its base domain.

    Returns:
        letsdns.models.DNSRecord: The record to publish at `_acme-challenge.<domain>`, valued
            `base64url(sha256(key_authorization))`.

    Examples:
        >>> compute_record(challenge, client.account_key, "*.example.com")
        DNSRecord(name='_acme-challenge.example.com', value='LoqXcYV8q5ONbJQxbmR7SCTNo3tiAXDfowyjxAjEuX0', ...)
    """
    chall = acme_challenge(challenge)
    record = models.DNSRecord(
        name=chall.validation_domain_name(tools.strip_wildcard(domain)),
        value=chall.validation(account_key),
        domain=domain,
        token=challenge.token,
        challenge_url=challenge.url
    )
    log.info("Computed TXT record %s = %s for %s", record.name, record.value, domain)
    return record


def query_txt(name: str, resolver: str, timeout: float = 5.0) -> list:
    """Queries a single resolver (IP address or DNS-over-HTTPS URL) for the TXT values at `name`."""
    return tools.DNSQuery(name, rtype="TXT", nameservers=[resolver], timeout=timeout).resolve()


@dataclass
class PropagationResult:
    """
    The outcome of checking one record against a set of resolvers.

    Attributes:
        record (letsdns.models.DNSRecord): The record that was checked.
        propagated (bool): Whether at least the required number of resolvers saw the exact value.
        confirmed (list): The resolvers whose answer contained the value.
        values (dict): The TXT values each answering resolver returned.
        errors (dict): The failure text for each resolver that could not answer.
        stale_values (list): Values present at the name that are not the current value.
    """
    record: models.DNSRecord
    propagated: bool = False
    confirmed: list = field(default_factory=list)
    values: dict = field(default_factory=dict)
    errors: dict = field(default_factory=dict)
    stale_values: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "record": self.record.to_dict(),
            "propagated": self.propagated,
            "confirmed": list(self.confirmed),
            "values": dict(self.values),
            "errors": dict(self.errors),
            "stale_values": list(self.stale_values),
        }


@dataclass
class PropagationPolicy:
    """How long and against which resolvers to wait for records to propagate."""
    resolvers: list = field(default_factory=lambda: list(DEFAULT_RESOLVERS))
    min_confirmations: int = 1
    interval: float = 10
    timeout: float = 600
    query_timeout: float = 5
    doh_resolvers: list = field(default_factory=list)
    authoritative: bool = False
    verbose: bool = False

    def resolvers_for(self, record: models.DNSRecord) -> list:
        """The resolvers to check `record` against; the zone's own nameservers in authoritative mode."""
        if not self.authoritative:
            return list(self.resolvers)

        try:
            nameservers = tools.DNSQuery(
                record.name, rtype="TXT", nameservers=self.resolvers, authoritative=True, timeout=self.query_timeout
            ).nameservers
        except QUERY_ERRORS as exc:
            log.warning("Authoritative nameserver lookup for %s failed, using configured resolvers: %s",
                        record.name, exc)
            return list(self.resolvers)
        return nameservers or list(self.resolvers)


def _query_all(record: models.DNSRecord, resolvers: list, timeout: float, query, verbose: bool) -> tuple:
    """Queries every resolver concurrently and returns the values and errors keyed by resolver."""
    values, failures = {}, {}
    if not resolvers:
        return values, failures

    with concurrent.futures.ThreadPoolExecutor(max_workers=len(resolvers)) as pool:
        futures = {pool.submit(query, record.name, resolver, timeout): resolver for resolver in resolvers}
        for future in concurrent.futures.as_completed(futures):
            resolver = futures[future]
            try:
                values[resolver] = list(future.result())
            except QUERY_ERRORS as exc:
                failures[resolver] = str(exc) or type(exc).__name__
                log.debug("Resolver %s failed for %s: %s", resolver, record.name, failures[resolver])
                continue

            action = 'found' if record.value in values[resolver] else 'not found'
            log.log(
                logging.INFO if verbose else logging.DEBUG,
                "Token '%s' for '%s' %s in %s via %s", record.value, record.name, action, values[resolver], resolver
            )

    return values, failures


def verify_propagation(
        record: models.DNSRecord,
        resolvers: list,
        min_confirmations: int = 1,
        timeout: float = 5.0,
        doh_resolvers: list = None,
        query=None,
        verbose: bool = False,
        current_values: list = None
) -> PropagationResult:
    """
    Checks whether resolvers return the record's exact value at the record's name. Resolvers are queried
    concurrently. When every plain DNS resolver fails outright, `doh_resolvers` are tried as a fallback transport.

    Args:
        record (letsdns.models.DNSRecord): The record to look for.
        resolvers (list): Resolver IP addresses or DNS-over-HTTPS URLs.
        min_confirmations (int): How many resolvers must see the value for it to count as propagated.
        timeout (float): The time (in seconds) allowed for each resolver to answer.
        doh_resolvers (list): DNS-over-HTTPS URLs to fall back to.
        query (callable): Replaces `query_txt`, taking `(name, resolver, timeout)`.
        verbose (bool): Log every resolver answer at INFO instead of DEBUG.
        current_values (list): Values of sibling records that share the name, such as the bare and wildcard records
            of one order. They are not reported as stale.

    Returns:
        PropagationResult: Which resolvers saw the value, what each returned, and any stale values.
    """
    query = query if query else query_txt
    values, failures = _query_all(record, list(resolvers), timeout, query, verbose)

    # Fall back to DNS-over-HTTPS when plain DNS could not be used at all
    udp = [resolver for resolver in resolvers if not tools.is_doh(resolver)]
    fallback = [resolver for resolver in (doh_resolvers or []) if resolver not in resolvers]
    if udp and fallback and all(resolver in failures for resolver in udp):
        log.warning("No DNS resolver answered for %s, falling back to DNS-over-HTTPS", record.name)
        doh_values, doh_failures = _query_all(record, fallback, timeout, query, verbose)
        values.update(doh_values)
        failures.update(doh_failures)

    confirmed = [resolver for resolver in list(resolvers) + fallback if record.value in values.get(resolver, [])]
    current = {record.value}.union(current_values or [])
    stale = []
    for answer in values.values():
        stale.extend(value for value in answer if value not in current and value not in stale)
    if stale:
        log.warning("Stale TXT value(s) %s present at %s alongside the current value", stale, record.name)

    return PropagationResult(
        record=record,
        propagated=len(confirmed) >= min_confirmations,
        confirmed=confirmed,
        values=values,
        errors=failures,
        stale_values=stale
    )


def wait_for_propagation(records: list, policy: PropagationPolicy, cancel=None, query=None) -> list:
    """
    Re-checks every record until all have propagated or the policy's timeout is reached. Records that have
    propagated are not checked again.

    Args:
        records (list): The `letsdns.models.DNSRecord` objects to wait for.
        policy (PropagationPolicy): Resolvers, confirmations, interval and timeout.
        cancel (threading.Event): Stops waiting when set.
        query (callable): Replaces `query_txt`.

    Returns:
        list: The final `PropagationResult` of each record, in the order of `records`.

    Raises:
        letsdns.errors.DnsNotPropagated: When any record is still missing at the timeout.
        letsdns.errors.IssuanceCancelled: When `cancel` is set while waiting.
    """
    deadline = time.monotonic() + policy.timeout
    resolvers = {record: policy.resolvers_for(record) for record in records}
    current_values = [record.value for record in records]
    results = {}

    while True:
        if cancel is not None and cancel.is_set():
            raise errors.IssuanceCancelled("Stopped waiting for DNS propagation.")

        for record in records:
            if record in results and results[record].propagated:
                continue
            results[record] = verify_propagation(
                record,
                resolvers[record],
                min_confirmations=policy.min_confirmations,
                timeout=policy.query_timeout,
                doh_resolvers=policy.doh_resolvers,
                query=query,
                verbose=policy.verbose,
                current_values=current_values
            )

        if all(result.propagated for result in results.values()):
            return [results[record] for record in records]

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        if tools.pause(min(policy.interval, remaining), cancel):
            raise errors.IssuanceCancelled("Stopped waiting for DNS propagation.")

    missing = [record.domain for record in records if not results[record].propagated]
    msg = f"DNS TXT record(s) not yet visible for {', '.join(missing)}. Retry in {int(policy.interval)} seconds."
    raise errors.DnsNotPropagated(msg, domain=", ".join(missing), retry_after=int(policy.interval))


def diagnose_record(record: models.DNSRecord, resolvers: list, timeout: float = 5.0, query=None,
                    current_values: list = None) -> dict:
    """
    Builds a troubleshooting report for one record across several resolvers. `current_values` are the values of
    the other records of the same order, which are never flagged as stale.

    Returns:
        dict: The record, whether it propagated, per-resolver answers, and the issues found with hints to fix them.
    """
    result = verify_propagation(record, resolvers, timeout=timeout, query=query, current_values=current_values)
    issues, hints = [], []

    if result.errors:
        issues.append(f"Resolver error from {', '.join(sorted(result.errors))}.")
        hints.append("Check that the resolvers are reachable, or try again later.")

    empty = [resolver for resolver, answer in result.values.items() if not answer]
    if empty:
        issues.append(f"No TXT records found at {record.name} via {', '.join(sorted(empty))}.")
        hints.append(f"Check the record name: create a TXT record named '{record.name}' with value '{record.value}'.")

    lagging = [resolver for resolver, answer in result.values.items() if answer and resolver not in result.confirmed]
    if lagging:
        issues.append(f"Current value not visible via {', '.join(sorted(lagging))}.")
        hints.append(f"Wait for DNS propagation, which may take up to the record TTL ({record.ttl} seconds).")

    if result.stale_values:
        issues.append(f"Stale value(s) present: {', '.join(result.stale_values)}.")
        hints.append("Remove TXT values left over from earlier attempts; they belong to challenges that are no longer "
                     "valid.")

    return {
        "record": record.to_dict(),
        "propagated": result.propagated,
        "confirmed": result.confirmed,
        "resolvers": {
            resolver: {
                "values": result.values.get(resolver),
                "error": result.errors.get(resolver),
                "confirmed": resolver in result.confirmed,
            }
            for resolver in resolvers
        },
        "issues": issues,
        "hints": hints,
    }
