"""Security utilities for Shopify credentials and request signatures.

WHAT:
    Centralizes symmetric encryption for stored Shopify access tokens,
    App Bridge session token decoding, and HMAC checks for OAuth callbacks
    and app proxy requests.

WHY:
    - Access tokens grant full Admin API access; they never sit in plaintext.
    - Every admin request is authenticated by a session token signed with the
      app secret.
    - OAuth callbacks and app proxy calls are signed by Shopify with the same
      secret and must be verified before trusting any query parameter.

REFERENCES:
    - https://shopify.dev/docs/apps/build/authentication-authorization/session-tokens
    - https://shopify.dev/docs/apps/build/online-store/display-dynamic-data#calculate-a-digital-signature
"""

import base64
import hashlib
import hmac
import logging
import os
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

from cryptography.fernet import Fernet, InvalidToken
from jose import jwt, JWTError


ALGORITHM = "HS256"
TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

logger = logging.getLogger(__name__)


if not TOKEN_ENCRYPTION_KEY:
    # Attempt to load from local .env if running in dev
    from cartupsell.utils.env import load_env_file
    load_env_file()
    TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

if not TOKEN_ENCRYPTION_KEY:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
        "or add it to backend/.env."
    )

try:
    # Validate key length by decoding without storing plaintext material.
    base64.urlsafe_b64decode(TOKEN_ENCRYPTION_KEY.encode("utf-8"))
    _cipher = Fernet(TOKEN_ENCRYPTION_KEY)
except (ValueError, TypeError) as exc:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
        "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
    ) from exc


class SessionTokenError(Exception):
    """Raised when an App Bridge session token cannot be trusted."""


# =============================================================================
# TOKEN ENCRYPTION
# =============================================================================

def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a Shopify access token before persisting.

    Args:
        plaintext: Raw secret to encrypt (e.g., shpat_xxx).
        context:   Friendly label for logs (shop domain).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Reverse `encrypt_secret` using the shared Fernet key.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s", context)
        return plaintext
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc


# =============================================================================
# SESSION TOKENS (admin requests)
# =============================================================================

def decode_session_token(token: str, *, api_key: str, api_secret: str) -> Dict[str, Any]:
    """Decode and validate an App Bridge session token.

    Checks signature, expiry, audience (our API key) and that the issuer
    and destination point at the same shop.

    Raises:
        SessionTokenError: On any validation failure.
    """
    try:
        payload = jwt.decode(token, api_secret, algorithms=[ALGORITHM], audience=api_key)
    except JWTError as exc:
        raise SessionTokenError(str(exc)) from exc

    dest, iss = payload.get("dest"), payload.get("iss")
    if not isinstance(dest, str) or not isinstance(iss, str):
        raise SessionTokenError("Token is missing iss or dest")

    dest_host = urlparse(dest).netloc
    iss_host = urlparse(iss).netloc
    if not dest_host or dest_host != iss_host:
        raise SessionTokenError("Token issuer does not match destination shop")
    return payload


def shop_from_session_token(payload: Mapping[str, Any]) -> str:
    """Return the shop domain a decoded session token was issued for."""
    return urlparse(payload["dest"]).netloc


# =============================================================================
# REQUEST SIGNATURES
# =============================================================================

def verify_oauth_hmac(params: Mapping[str, str], api_secret: str) -> bool:
    """Verify the `hmac` query parameter Shopify adds to OAuth redirects.

    The message is every other parameter as `key=value`, sorted by key and
    joined with `&`; the digest is hex encoded.
    """
    received = params.get("hmac")
    if not isinstance(received, str) or not received or not api_secret:
        return False

    message = "&".join(
        f"{key}={value}" for key, value in sorted(params.items()) if key != "hmac"
    )
    computed = hmac.new(api_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed.encode("utf-8"), received.encode("utf-8"))


def verify_proxy_signature(params: Mapping[str, Any], api_secret: str) -> bool:
    """Verify the `signature` query parameter on app proxy requests.

    Unlike OAuth, proxy parameters are concatenated without a separator and
    multi-valued parameters are joined with commas.
    """
    received = params.get("signature")
    if not isinstance(received, str) or not received or not api_secret:
        return False

    parts = []
    for key in sorted(k for k in params.keys() if k != "signature"):
        value = params[key]
        if isinstance(value, (list, tuple)):
            value = ",".join(value)
        parts.append(f"{key}={value}")
    message = "".join(parts)

    computed = hmac.new(api_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed.encode("utf-8"), received.encode("utf-8"))


def verify_webhook_hmac(body: bytes, hmac_header: Optional[str], api_secret: str) -> bool:
    """Verify the X-Shopify-Hmac-SHA256 header (base64 digest of the raw body)."""
    if not isinstance(hmac_header, str) or not hmac_header or not api_secret:
        return False

    computed = base64.b64encode(hmac.new(api_secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("utf-8")
    return hmac.compare_digest(computed.encode("utf-8"), hmac_header.encode("utf-8"))
