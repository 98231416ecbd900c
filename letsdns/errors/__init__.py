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
"""Custom exception classes for letsdns."""


class LetsDNSError(Exception):
    """
    Base class for every error raised by letsdns.

    Args:
        message (str): A human-readable description of the failure.
        domain (str): The domain the failure applies to, if any.
        reason (str): The CA supplied problem detail, passed through verbatim when available.
        retryable (bool): Overrides the class default for whether the caller may retry.
        retry_after (int): Suggested number of seconds to wait before retrying.
    """
    retryable = False

    def __init__(
            self,
            message: str,
            domain: str = None,
            reason: str = None,
            retryable: bool = None,
            retry_after: int = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.domain = domain
        self.reason = reason
        self.retry_after = retry_after
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict:
        """
        Formats the error into the structure returned to API consumers.

        Returns:
            dict: The error name, message, affected domain, CA reason and retry hints.
        """
        return {
            "error": type(self).__name__,
            "message": self.message,
            "domain": self.domain,
            "reason": self.reason,
            "retryable": self.retryable,
            "retry_after": self.retry_after,
        }


# ACME protocol errors
class DirectoryUnreachable(LetsDNSError):
    """Error occurs when the ACME directory cannot be fetched or is not a valid directory document"""
    retryable = True


class AccountRegistrationFailed(LetsDNSError):
    """Error occurs when the ACME server refuses or fails the newAccount request"""


class OrderCreationFailed(LetsDNSError):
    """Error occurs when the ACME server refuses or fails the newOrder request"""


class AuthorizationUnavailable(LetsDNSError):
    """Error occurs when an authorization resource for one identifier cannot be fetched"""
    retryable = True

    def __init__(self, message: str, failures: dict = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.failures = failures if failures else {}

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["failures"] = {domain: error.to_dict() for domain, error in self.failures.items()}
        return data


class NoDnsChallengeOffered(LetsDNSError):
    """Error occurs when an authorization does not offer the DNS-01 challenge"""


class DnsNotPropagated(LetsDNSError):
    """Error occurs when the TXT record could not be seen by enough resolvers before the deadline"""
    retryable = True


class BadNonce(LetsDNSError):
    """Error occurs when the ACME server rejects the anti-replay nonce after the single fresh-nonce retry"""
    retryable = True


class AuthorizationInvalid(LetsDNSError):
    """Error occurs when the CA rejects the challenge or marks the authorization invalid"""


class AuthorizationTimeout(LetsDNSError):
    """Error occurs when an authorization stays pending past the polling limit"""
    retryable = True


class FinalizeFailed(LetsDNSError):
    """Error occurs when the order cannot be finalized or becomes invalid"""


class OrderTimeout(FinalizeFailed):
    """Error occurs when a finalized order stays processing past the polling limit"""
    retryable = True


class CertificateDownloadFailed(LetsDNSError):
    """Error occurs when the issued certificate cannot be downloaded or contains no PEM certificate"""
    retryable = True


# Issuance service errors
class SessionNotFound(LetsDNSError):
    """Error occurs when a challenge session token is unknown"""


class SessionExpired(LetsDNSError):
    """Error occurs when a challenge session has passed its expiry and was erased"""


class IssuanceCancelled(LetsDNSError):
    """Error occurs when an issuance task is cancelled before it finished"""


class InvalidTransition(LetsDNSError):
    """Error occurs when a record or session is moved backwards or skips its state machine"""


class RateLimited(LetsDNSError):
    """Error occurs when too many issuance requests were made for one IP address or domain"""
    retryable = True


class InvalidSettings(LetsDNSError):
    """Error occurs when a configuration value is out of range or unsupported"""


# Input validation errors
class InvalidCSR(LetsDNSError):
    """Error occurs when the CSR is missing, malformed or does not match the order identifiers"""


class InvalidKeyType(LetsDNSError):
    """Error occurs when the requested private key type is unsupported"""


class InvalidPrivateKey(LetsDNSError):
    """Error occurs when the private key is used before it has been generated."""


class InvalidCertificate(LetsDNSError):
    """Error occurs when the certificate is invalid or does not exist."""


class InvalidAccount(LetsDNSError):
    """Error occurs when requests are made to the ACME server without registration"""


class InvalidEmail(LetsDNSError):
    """Error occurs when an account action was requested but no valid email value exists"""


class InvalidDNSRecord(LetsDNSError):
    """Error occurs when DNS records are referenced before an order was created"""


class InvalidDomain(LetsDNSError):
    """Error occurs when a requested domain is not a valid FQDN"""


class InvalidPath(LetsDNSError):
    """Error occurs when a request file path does not exist"""


def from_dict(data: dict) -> LetsDNSError:
    """
    Rebuilds an error from the structure produced by `LetsDNSError.to_dict()`.

    Args:
        data (dict): The error structure, e.g. as stored on a failed certificate record.

    Returns:
        LetsDNSError: An instance of the named error class, or of `LetsDNSError` when the name is unknown.
    """
    error_cls = globals().get(data.get("error"))
    if not isinstance(error_cls, type) or not issubclass(error_cls, LetsDNSError):
        error_cls = LetsDNSError

    return error_cls(
        data.get("message", ""),
        domain=data.get("domain"),
        reason=data.get("reason"),
        retryable=data.get("retryable"),
        retry_after=data.get("retry_after")
    )
