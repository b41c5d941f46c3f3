"""
PKCE (Proof Key for Code Exchange) validator implementation.

Implements RFC 7636 verification for the authorization_code grant. S256 is
always accepted; ``plain`` is only accepted when the server enables it.
"""

import base64
import hashlib
import hmac
import re
import secrets
import string
from typing import Tuple

from hospital_oauth.managers.logging_manager import get_logger

from ..models import PKCEMethod

logger = get_logger(prefix="[PKCE Validator]")

# RFC 7636 section 4.2: base64url(SHA256) without padding is always 43 chars
_S256_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")


class PKCEValidationError(Exception):
    """Exception raised when PKCE input is malformed or the method is unsupported."""


class PKCEValidator:
    """
    PKCE (Proof Key for Code Exchange) validation.

    All methods are static; the class groups the RFC 7636 constants with the
    operations that use them.
    """

    MIN_CODE_VERIFIER_LENGTH = 43
    MAX_CODE_VERIFIER_LENGTH = 128

    # RFC 7636 section 4.1: unreserved characters
    CODE_VERIFIER_CHARSET = string.ascii_letters + string.digits + "-._~"

    @staticmethod
    def generate_code_verifier() -> str:
        """Generate a maximum-length code verifier."""
        return "".join(
            secrets.choice(PKCEValidator.CODE_VERIFIER_CHARSET) for _ in range(PKCEValidator.MAX_CODE_VERIFIER_LENGTH)
        )

    @staticmethod
    def generate_code_challenge(verifier: str, method: str = PKCEMethod.S256.value) -> str:
        """
        Derive the code challenge for a verifier.

        Raises:
            PKCEValidationError: If the method is unsupported or the verifier is invalid
        """
        method = PKCEValidator._normalize_method(method)
        PKCEValidator._validate_code_verifier(verifier)
        if method == PKCEMethod.S256.value:
            digest = hashlib.sha256(verifier.encode("ascii")).digest()
            return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
        return verifier

    @staticmethod
    def validate_code_challenge(verifier: str, challenge: str, method: str) -> bool:
        """
        Check a verifier against the challenge recorded at authorization time.

        Returns:
            bool: True if the verifier matches the challenge

        Raises:
            PKCEValidationError: If the method is unsupported or an input is malformed
        """
        expected_challenge = PKCEValidator.generate_code_challenge(verifier, method)
        is_valid = hmac.compare_digest(challenge.encode("ascii"), expected_challenge.encode("ascii"))
        if not is_valid:
            logger.warning("PKCE validation failed - challenge mismatch")
        return is_valid

    @staticmethod
    def generate_code_verifier_and_challenge(method: str = PKCEMethod.S256.value) -> Tuple[str, str]:
        verifier = PKCEValidator.generate_code_verifier()
        return verifier, PKCEValidator.generate_code_challenge(verifier, method)

    @staticmethod
    def validate_challenge_format(challenge: str, method: str) -> None:
        """
        Validate a challenge presented at authorization time.

        Raises:
            PKCEValidationError: If the challenge cannot have been produced by the method
        """
        method = PKCEValidator._normalize_method(method)
        if not challenge:
            raise PKCEValidationError("Code challenge cannot be empty")
        if method == PKCEMethod.S256.value:
            if not _S256_CHALLENGE_RE.match(challenge):
                raise PKCEValidationError("S256 code challenge must be 43 base64url characters")
        else:
            PKCEValidator._validate_code_verifier(challenge)

    @staticmethod
    def _normalize_method(method: str) -> str:
        value = method.value if isinstance(method, PKCEMethod) else method
        if value not in (PKCEMethod.S256.value, PKCEMethod.PLAIN.value):
            raise PKCEValidationError(f"Unsupported PKCE method: {method}")
        return value

    @staticmethod
    def _validate_code_verifier(verifier: str) -> None:
        if not verifier or not isinstance(verifier, str):
            raise PKCEValidationError("Code verifier cannot be empty")
        if len(verifier) < PKCEValidator.MIN_CODE_VERIFIER_LENGTH:
            raise PKCEValidationError(
                f"Code verifier too short. Minimum length: {PKCEValidator.MIN_CODE_VERIFIER_LENGTH}"
            )
        if len(verifier) > PKCEValidator.MAX_CODE_VERIFIER_LENGTH:
            raise PKCEValidationError(
                f"Code verifier too long. Maximum length: {PKCEValidator.MAX_CODE_VERIFIER_LENGTH}"
            )
        invalid_chars = set(verifier) - set(PKCEValidator.CODE_VERIFIER_CHARSET)
        if invalid_chars:
            raise PKCEValidationError("Code verifier contains invalid characters")
