"""Inbound webhook authentication.

Two mutually exclusive modes per provider, chosen by configuration:

- HMAC: ``HMAC-SHA256(secret, raw_body)`` compared against a signature
  header (``sha256=`` prefix tolerated, hex compared lowercase)
- Bearer token: ``Authorization: Bearer <token>`` or a provider token
  header compared against the configured token

Tenant-scoped credentials take priority over global ones; within a
scope a configured secret takes priority over a token.
"""

import hashlib
import hmac
from typing import Mapping

from escrow_relay.config import Settings, settings as default_settings
from escrow_relay.core.errors import WebhookAuthError
from escrow_relay.core.providers import (
    HMAC_HEADER_CANDIDATES,
    TOKEN_HEADER_CANDIDATES,
    first_header,
    lowercase_headers,
    normalize_provider,
)

BEARER = "bearer"


def normalize_signature(value: str) -> str:
    raw = value.strip()
    if "=" in raw:
        algorithm, digest = raw.split("=", 1)
        if algorithm.strip().lower() == "sha256":
            raw = digest
    return raw.lower()


def secure_compare(left: str | None, right: str | None) -> bool:
    """Constant-time string comparison that rejects blanks."""
    a = (left or "").encode("utf-8")
    b = (right or "").encode("utf-8")
    if not a or not b or len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)


def sign(secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 of a raw request body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


class WebhookAuthenticator:
    """Verifies that a provider callback is genuine."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings

    def authenticate(
        self,
        provider: str,
        headers: Mapping[str, str],
        raw_body: bytes,
        tenant_slug: str | None = None,
    ) -> str:
        """Authenticate a callback.

        Args:
            provider: Provider code or alias
            headers: Request headers (any case)
            raw_body: Exact request body bytes
            tenant_slug: Tenant slug for tenant-scoped credentials

        Returns:
            The signature that was verified, or "bearer" in token mode

        Raises:
            WebhookAuthError: On missing, invalid or unconfigured credentials
        """
        provider_code = normalize_provider(provider)
        request_headers = lowercase_headers(headers)

        # Tenant credentials of either kind take priority over global ones
        scopes = (tenant_slug, None) if tenant_slug else (None,)
        for scope in scopes:
            secret = self.settings.webhook_credential(provider_code, "secret", scope)
            if secret:
                return self._authenticate_with_signature(provider_code, secret, request_headers, raw_body)

            token = self.settings.webhook_credential(provider_code, "token", scope)
            if token:
                return self._authenticate_with_token(provider_code, token, request_headers)

        raise WebhookAuthError(
            code="webhook_auth_not_configured",
            message=f"Webhook authentication is not configured for provider {provider_code}.",
        )

    @staticmethod
    def _authenticate_with_signature(
        provider_code: str,
        secret: str,
        headers: dict[str, str],
        raw_body: bytes,
    ) -> str:
        signature = first_header(headers, HMAC_HEADER_CANDIDATES.get(provider_code, ()))
        if not signature:
            raise WebhookAuthError(code="webhook_signature_missing", message="Webhook signature header is missing.")

        if not secure_compare(normalize_signature(signature), sign(secret, raw_body)):
            raise WebhookAuthError(code="webhook_signature_invalid", message="Webhook signature is invalid.")
        return signature

    @staticmethod
    def _authenticate_with_token(provider_code: str, token: str, headers: dict[str, str]) -> str:
        provided = _bearer_token(headers) or first_header(headers, TOKEN_HEADER_CANDIDATES.get(provider_code, ()))
        if not provided:
            raise WebhookAuthError(code="webhook_token_missing", message="Webhook token is missing.")
        if not secure_compare(provided, token):
            raise WebhookAuthError(code="webhook_token_invalid", message="Webhook token is invalid.")
        return BEARER


def _bearer_token(headers: dict[str, str]) -> str | None:
    scheme, _, value = headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None
