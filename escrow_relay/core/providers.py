"""Escrow provider codes and per-provider header conventions."""

from escrow_relay.core.errors import ReconciliationError

QITECH = "QITECH"
STARKBANK = "STARKBANK"

SUPPORTED_PROVIDERS = (QITECH, STARKBANK)

PROVIDER_ALIASES = {
    "QI_TECH": QITECH,
    "STARK_BANK": STARKBANK,
}

# Accepted signature header names, most specific first
HMAC_HEADER_CANDIDATES = {
    QITECH: ("X-QITECH-Signature", "X-Qitech-Signature", "X-Webhook-Signature"),
    STARKBANK: ("X-STARKBANK-Signature", "X-Starkbank-Signature", "X-Webhook-Signature"),
}

TOKEN_HEADER_CANDIDATES = {
    QITECH: ("X-QITECH-Webhook-Token", "X-Qitech-Webhook-Token"),
    STARKBANK: ("X-STARKBANK-Webhook-Token", "X-Starkbank-Webhook-Token"),
}

EVENT_ID_HEADER_CANDIDATES = (
    "X-Webhook-Id",
    "X-Request-Id",
    "X-QITECH-Event-Id",
    "X-STARKBANK-Event-Id",
)


def normalize_provider(value: str | None) -> str:
    """Map a provider path segment to its canonical code.

    Raises:
        ReconciliationError: unsupported_escrow_provider
    """
    code = (value or "").strip().upper().replace("-", "_")
    code = PROVIDER_ALIASES.get(code, code)
    if code not in SUPPORTED_PROVIDERS:
        raise ReconciliationError(
            code="unsupported_escrow_provider",
            message=f"Escrow provider {value!r} is not supported.",
        )
    return code


def payload_event_id(payload: dict) -> str | None:
    """First non-blank event id found in the payload, in priority order."""
    pix_transfer = payload.get("pix_transfer")
    candidates = (
        payload.get("event_id"),
        payload.get("eventId"),
        payload.get("id"),
        payload.get("request_control_key"),
        payload.get("external_reference"),
        pix_transfer.get("request_control_key") if isinstance(pix_transfer, dict) else None,
    )
    for value in candidates:
        text = str(value).strip() if value is not None else ""
        if text:
            return text
    return None


def lowercase_headers(headers) -> dict[str, str]:
    """Case-insensitive view of request headers as a plain dict."""
    return {str(key).lower(): str(value) for key, value in headers.items()}


def first_header(headers: dict[str, str], candidates) -> str | None:
    """First non-blank value among candidate header names (lowercased headers)."""
    for name in candidates:
        value = (headers.get(name.lower()) or "").strip()
        if value:
            return value
    return None


def header_event_id(headers: dict[str, str]) -> str | None:
    """First non-blank event id found in the (lowercased) request headers."""
    return first_header(headers, EVENT_ID_HEADER_CANDIDATES)
