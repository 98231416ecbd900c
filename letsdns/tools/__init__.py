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
"""DNS, key and certificate tools to assist ACME verification."""
import datetime
import email.utils
import logging
import re
import time

import OpenSSL
import dns.exception
import dns.rdatatype
import dns.resolver
import josepy as jose
import requests
from acme import crypto_util
from acme import messages
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.hazmat.primitives.serialization import Encoding, PrivateFormat, NoEncryption
from cryptography.x509.oid import NameOID

from .. import errors

# Constants and Variables
log = logging.getLogger(__name__)
KEY_TYPES = ['ec256', 'ec384', 'rsa2048', 'rsa4096']
ACCOUNT_KEY_TYPES = ['rsa2048', 'ec256']
PEM_CERT_END = "-----END CERTIFICATE-----"
DOH_ACCEPT = "application/dns-json"
TRANSIENT_ERRORS = (requests.exceptions.ConnectionError, requests.exceptions.Timeout)
_DOH_SEGMENT = re.compile(r'"((?:[^"\\]|\\.)*)"')


class DNSQuery:
    """A basic class to make DNS queries"""

    def __init__(
        self,
        domain: str,
        rtype: str = "A",
        nameservers: list = None,
        authoritative: bool = False,
        round_robin: bool = False,
        timeout: float = 5.0
    ) -> None:
        """
        Initializes our DNS query.

        Args:
            domain (str): The fully qualified domain name to query.
            rtype (str): The DNS request type (e.g. `A`, `TXT`, `CNAME`, etc.).
            nameservers (list): Nameservers to query when making DNS requests. Each entry is either an IP address or
                a DNS-over-HTTPS JSON API URL (e.g. `https://dns.google/resolve`).
            authoritative (bool): Use the authoritative nameserver for each domain.
            round_robin (bool): rotate between each nameserver instead of the default fail-over method.
            timeout (float): The amount of time (in seconds) to wait for each DNS answer.
        """
        self.round_robin = round_robin
        self.type = rtype.upper()
        self.domain = domain
        self.timeout = timeout
        self.nameservers = list(nameservers) if nameservers else dns.resolver.Resolver().nameservers
        self.nameservers = self.__get_authoritative_nameservers__() if authoritative else self.nameservers
        self.values = []
        self.last_nameserver = ""

    def resolve(self) -> list:
        """
        Queries the nameservers with our configured object values.

        Returns:
            list: A list of DNS answer values. TXT answers are returned as their decoded string content.
        """
        # Resolve the DNS query, a missing name is an empty answer rather than an error
        try:
            self.values = DNSQuery.__resolve__(
                self.domain, rtype=self.type, nameservers=self.nameservers, timeout=self.timeout
            )
        except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
            self.values = []

        # Rotate the nameservers if round robin mode is enabled
        self.last_nameserver = self.nameservers[0]
        if self.round_robin and len(self.nameservers) > 1:
            self.nameservers = self.nameservers[1:] + [self.last_nameserver]

        return self.values

    def __get_authoritative_nameservers__(self) -> list:
        """
        Looks up the zone containing our domain and resolves the addresses of that zone's NS hosts.

        Returns:
            list: A list of authoritative nameserver IP addresses.
        """
        resolver = DNSQuery.__resolver__(self.nameservers, self.timeout)
        zone = dns.resolver.zone_for_name(self.domain, resolver=resolver)
        nameservers = []

        # Resolve each NS host of the zone to its IPv4 addresses
        for host in DNSQuery.__resolve__(zone.to_text(), rtype="NS", nameservers=self.nameservers):
            nameservers.extend(
                DNSQuery.__resolve__(host.rstrip("."), rtype="A", nameservers=self.nameservers, timeout=self.timeout)
            )

        return nameservers

    @staticmethod
    def __resolver__(nameservers: list, timeout: float) -> dns.resolver.Resolver:
        """Builds a dnspython resolver for the non DNS-over-HTTPS entries in `nameservers`."""
        resolver = dns.resolver.Resolver(configure=False)
        resolver.nameservers = [nameserver for nameserver in nameservers if not is_doh(nameserver)]
        resolver.timeout = timeout
        resolver.lifetime = timeout
        return resolver

    @staticmethod
    def __resolve__(domain: str, rtype: str = "A", nameservers: list = None, timeout: float = 5.0) -> list:
        """
        Internal function-like DNS request method.

        Returns:
             list: A list of answer values from the request.

        Raises:
            dns.resolver.NoAnswer: When the name exists but holds no record of this type.
            dns.resolver.NXDOMAIN: When the name does not exist.
            dns.exception.DNSException: When no nameserver could answer.
            requests.exceptions.RequestException: When a DNS-over-HTTPS resolver could not be reached.
        """
        nameservers = nameservers if nameservers else dns.resolver.Resolver().nameservers

        # Only DNS-over-HTTPS resolvers were given, use the first one
        if all(is_doh(nameserver) for nameserver in nameservers):
            return DNSQuery.__resolve_doh__(domain, rtype, nameservers[0], timeout)

        answer = DNSQuery.__resolver__(nameservers, timeout).resolve(domain, rtype)
        return DNSQuery.__filter_list__([DNSQuery.__parse_value__(rdata, rtype) for rdata in answer])

    @staticmethod
    def __resolve_doh__(domain: str, rtype: str, url: str, timeout: float) -> list:
        """
        Queries a DNS-over-HTTPS JSON API (as served by Google and Cloudflare) for our record.

        Returns:
            list: A list of answer values from the request.
        """
        response = requests.get(
            url, params={"name": domain, "type": rtype}, headers={"Accept": DOH_ACCEPT}, timeout=timeout
        )
        response.raise_for_status()
        data = response.json()

        # Status 3 is NXDOMAIN, any other non-zero status is a resolver failure
        if data.get("Status") == 3:
            raise dns.resolver.NXDOMAIN()
        if data.get("Status", 0) != 0:
            raise dns.exception.DNSException(f"DNS-over-HTTPS resolver {url} returned status {data.get('Status')}")

        rdtype = dns.rdatatype.from_text(rtype)
        values = []
        for answer in data.get("Answer", []):
            if answer.get("type") != rdtype:
                continue
            value = answer.get("data", "")
            # Cloudflare quotes each TXT character-string, Google returns the bare text
            if rtype.upper() == "TXT" and value.startswith("\""):
                value = "".join(_DOH_SEGMENT.findall(value))
            values.append(value)

        return DNSQuery.__filter_list__(values)

    @staticmethod
    def __filter_list__(data: list) -> list:
        """
        Filters our list properties to remove blank entries.

        Args:
            data (list): The list to remove blank entries from.
        Returns:
            list: The data list stripped of any blank entries.
        """
        return list(filter(None, data))

    @staticmethod
    def __parse_value__(rdata, rtype: str) -> str:
        """
        Parses the value portion of one answer. TXT records may be split into several character-strings, which are
        joined back together.
        """
        if rtype.upper() == "TXT":
            return b"".join(rdata.strings).decode("utf-8", errors="replace")
        return rdata.to_text()


def is_doh(nameserver: str) -> bool:
    """Checks whether a nameserver entry is a DNS-over-HTTPS URL rather than an IP address."""
    return str(nameserver).startswith("https://")


def strip_wildcard(domain: str) -> str:
    """
    Strips the wildcard portion of a domain (*.) if present.

    Args:
        domain (str): The domain string to strip wildcards from.

    Returns:
        str: The domain string without the wildcard portion.
    """
    return domain[2:] if domain.startswith("*.") else domain


def build_identifiers(domain: str, include_wildcard: bool = False) -> list:
    """
    Builds the identifier list for an order. The wildcard form is only added when explicitly requested, and a
    requested wildcard domain is never widened to its base domain.

    Args:
        domain (str): The domain to request. May itself be a wildcard (`*.example.com`).
        include_wildcard (bool): Also request `*.<domain>` alongside a bare `domain`.

    Returns:
        list: The order identifiers, base domain first.

    Examples:
        >>> build_identifiers("example.com", include_wildcard=True)
        ['example.com', '*.example.com']
    """
    domain = domain.strip().lower().rstrip(".")
    if domain.startswith("*.") or not include_wildcard:
        return [domain]
    return [domain, f"*.{domain}"]


def generate_private_key(key_type: str = 'ec256') -> bytes:
    """
    Generates a new RSA or EC private key.

    Args:
        key_type (str): The requested private key type. Options are: [`ec256`, `ec384`, `rsa2048`, `rsa4096`]

    Returns:
        bytes: The PEM encoded private key data bytes-string.

    Raises:
        letsdns.errors.InvalidKeyType: When an unknown/unsupported `key_type` is requested.
    """
    # Generate a EC256 or EC384 private key
    if key_type in ('ec256', 'ec384'):
        curve = ec.SECP256R1() if key_type == 'ec256' else ec.SECP384R1()
        key = ec.generate_private_key(curve, default_backend())
        return key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=NoEncryption()
        )
    # Generate a RSA2048 or RSA4096 private key
    if key_type in ('rsa2048', 'rsa4096'):
        key = OpenSSL.crypto.PKey()
        key.generate_key(OpenSSL.crypto.TYPE_RSA, 2048 if key_type == 'rsa2048' else 4096)
        return OpenSSL.crypto.dump_privatekey(OpenSSL.crypto.FILETYPE_PEM, key)

    msg = f"Invalid private key type '{key_type}'. Options {KEY_TYPES}"
    raise errors.InvalidKeyType(msg)


def generate_account_key(key_type: str = 'rsa2048') -> jose.JWK:
    """
    Generates a new ACME account key.

    Args:
        key_type (str): `rsa2048` (signed with RS256) or `ec256` (signed with ES256).

    Returns:
        josepy.JWK: The account key.

    Raises:
        letsdns.errors.InvalidKeyType: When an unsupported `key_type` is requested.
    """
    if key_type == 'rsa2048':
        return jose.JWKRSA(key=rsa.generate_private_key(public_exponent=65537, key_size=2048, backend=default_backend()))
    if key_type == 'ec256':
        return jose.JWKEC(key=ec.generate_private_key(ec.SECP256R1(), default_backend()))

    msg = f"Invalid account key type '{key_type}'. Options {ACCOUNT_KEY_TYPES}"
    raise errors.InvalidKeyType(msg)


def account_key_algorithm(account_key: jose.JWK) -> jose.JWASignature:
    """Picks the JWS signature algorithm matching an account key."""
    return jose.ES256 if isinstance(account_key, jose.JWKEC) else jose.RS256


def generate_csr(private_key: bytes, domains: list) -> bytes:
    """
    Generates a PEM encoded CSR listing every domain as a subject alternative name.

    Raises:
        letsdns.errors.InvalidPrivateKey: When `private_key` is empty.
    """
    if not private_key:
        raise errors.InvalidPrivateKey("A private key must be generated before creating a CSR.")
    return crypto_util.make_csr(private_key, domains)


def load_csr(csr: bytes) -> x509.CertificateSigningRequest:
    """
    Parses a PEM encoded CSR.

    Raises:
        letsdns.errors.InvalidCSR: When `csr` is empty or not a PEM CSR.
    """
    if isinstance(csr, str):
        csr = csr.encode()
    try:
        return x509.load_pem_x509_csr(csr, default_backend())
    except (TypeError, ValueError) as exc:
        raise errors.InvalidCSR(f"Unable to parse CSR: {exc}") from exc


def csr_identifiers(csr: bytes) -> list:
    """
    Lists the domain names a CSR requests: the subject alternative names, plus the common name when it is not
    already among them.

    Returns:
        list: The requested domain names in the order they appear in the CSR.
    """
    request = load_csr(csr)
    names = []
    try:
        extension = request.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        names.extend(extension.value.get_values_for_type(x509.DNSName))
    except x509.ExtensionNotFound:
        pass

    for attribute in request.subject.get_attributes_for_oid(NameOID.COMMON_NAME):
        if attribute.value not in names:
            names.append(attribute.value)

    return names


def csr_to_der(csr: bytes) -> bytes:
    """Converts a PEM encoded CSR to DER."""
    return load_csr(csr).public_bytes(Encoding.DER)


def split_pem_chain(fullchain: str) -> tuple:
    """
    Splits a downloaded PEM bundle into the leaf certificate and the rest of the chain. The split happens directly
    after the first certificate's END line (and its line break), so `leaf + chain` is always the original text.

    Args:
        fullchain (str): The PEM bundle as downloaded.

    Returns:
        tuple: The leaf certificate and the chain. The chain may hold any number of certificates, including none.

    Raises:
        letsdns.errors.InvalidCertificate: When the bundle contains no PEM certificate.
    """
    index = fullchain.find(PEM_CERT_END)
    if index < 0:
        raise errors.InvalidCertificate("No PEM certificate found in the downloaded bundle.")

    end = index + len(PEM_CERT_END)
    if fullchain.startswith("\r\n", end):
        end += 2
    elif fullchain.startswith("\n", end):
        end += 1

    return fullchain[:end], fullchain[end:]


def load_certificate(certificate) -> x509.Certificate:
    """
    Parses the first certificate of a PEM encoded string or bytes-string.

    Raises:
        letsdns.errors.InvalidCertificate: When `certificate` is empty or not a PEM certificate.
    """
    if isinstance(certificate, str):
        certificate = certificate.encode()
    try:
        return x509.load_pem_x509_certificate(certificate, default_backend())
    except (TypeError, ValueError) as exc:
        raise errors.InvalidCertificate(f"Unable to parse certificate: {exc}") from exc


def inspect_certificate(certificate) -> dict:
    """
    Summarizes a PEM encoded certificate.

    Args:
        certificate (str|bytes): The PEM certificate, or a full chain whose first certificate is the leaf.

    Returns:
        dict: The subject, common name, covered domains, issuer, serial number and validity window.

    Examples:
        >>> inspect_certificate(record.certificate)["domains"]
        ['example.com', '*.example.com']
    """
    cert = load_certificate(certificate)
    common_names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    try:
        extension = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        domains = extension.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        domains = []

    return {
        "subject": cert.subject.rfc4514_string(),
        "common_name": common_names[0].value if common_names else None,
        "domains": domains,
        "issuer": cert.issuer.rfc4514_string(),
        "serial_number": format(cert.serial_number, "x"),
        "not_before": cert.not_valid_before_utc,
        "not_after": cert.not_valid_after_utc,
    }


def parse_retry_after(value: str, now: datetime.datetime = None) -> int:
    """
    Parses a `Retry-After` header given either as delay seconds or as an HTTP date.

    Returns:
        int: The number of seconds to wait, or None when the header is absent or unreadable.
    """
    if value is None:
        return None

    value = str(value).strip()
    if value.isdigit():
        return int(value)

    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=datetime.timezone.utc)

    now = now or datetime.datetime.now(datetime.timezone.utc)
    return max(0, int((when - now).total_seconds()))


def is_transient(exc: Exception) -> bool:
    """Checks whether an error is a network failure or a CA side `serverInternal` problem worth retrying."""
    if isinstance(exc, TRANSIENT_ERRORS):
        return True
    return isinstance(exc, messages.Error) and exc.code == "serverInternal"


def pause(seconds: float, cancel=None) -> bool:
    """
    Sleeps for `seconds`, waking early if the `cancel` event is set.

    Returns:
        bool: True when the pause was cut short by cancellation.
    """
    if cancel is not None:
        return cancel.wait(max(0, seconds))
    time.sleep(max(0, seconds))
    return False


def retry_transient(func, attempts: int = 3, delay: float = 1.0, max_delay: float = 8.0, cancel=None):
    """
    Calls `func` until it succeeds, retrying transient failures with capped exponential backoff. Any other failure,
    including every ACME problem document but `serverInternal`, is raised immediately.

    Args:
        func (callable): The zero argument call to make.
        attempts (int): The total number of calls allowed.
        delay (float): The wait before the first retry, doubled on each further retry.
        max_delay (float): The longest wait between two calls.
        cancel (threading.Event): Stops retrying when set.

    Returns:
        The return value of `func`.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (requests.exceptions.RequestException, messages.Error) as exc:
            if not is_transient(exc) or attempt == attempts - 1:
                raise
            wait = min(delay * (2 ** attempt), max_delay)
            log.warning("Transient failure on attempt %d/%d, retrying in %ss: %s", attempt + 1, attempts, wait, exc)
            if pause(wait, cancel):
                raise
    return None
