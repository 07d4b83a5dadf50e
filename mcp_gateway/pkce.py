"""PKCE (Proof Key for Code Exchange) verification per RFC 7636.

The authorization request carries a ``code_challenge`` derived from a secret
``code_verifier`` that only the client knows. The token request must present
the verifier; if it does not hash to the stored challenge, the code was
intercepted and the exchange is refused.
"""

import base64
import hashlib
import hmac

SUPPORTED_METHODS = ("S256", "plain")


def s256_challenge(verifier: str) -> str:
    """Compute BASE64URL(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify(verifier: str, challenge: str, method: str) -> bool:
    """Check a code verifier against the challenge stored with the code.

    Only the two supported methods are evaluated; unknown methods never reach
    this point because the authorization endpoint refuses them, but they are
    answered with False all the same.

    Comparisons are constant-time.
    """
    if method == "S256":
        try:
            computed = s256_challenge(verifier)
        except UnicodeEncodeError:
            # RFC 7636 verifiers are ASCII only
            return False
        return hmac.compare_digest(computed.encode("ascii"), challenge.encode("utf-8"))
    if method == "plain":
        return hmac.compare_digest(verifier.encode("utf-8"), challenge.encode("utf-8"))
    return False
