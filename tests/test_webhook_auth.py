"""Tests for webhook authentication."""

import pytest

from escrow_relay.config import Settings, tenant_slug_key
from escrow_relay.core.errors import ReconciliationError, WebhookAuthError
from escrow_relay.core.providers import normalize_provider, payload_event_id
from escrow_relay.core.webhook_auth import (
    WebhookAuthenticator,
    normalize_signature,
    secure_compare,
)

from tests.helpers import QITECH_SECRET, STARKBANK_TOKEN, hmac_signature

BODY = b'{"event_id":"evt-1","status":"settled"}'


@pytest.fixture
def authenticator(webhook_settings) -> WebhookAuthenticator:
    return WebhookAuthenticator(webhook_settings)


class TestHelpers:
    def test_normalize_signature_strips_prefix_and_lowercases(self):
        assert normalize_signature("sha256=ABCDEF") == "abcdef"
        assert normalize_signature("  ABCDEF ") == "abcdef"

    def test_normalize_signature_keeps_unknown_prefix(self):
        assert normalize_signature("md5=abc") == "md5=abc"

    def test_secure_compare_rejects_blank_and_length_mismatch(self):
        assert secure_compare("abc", "abc") is True
        assert secure_compare("", "") is False
        assert secure_compare(None, "abc") is False
        assert secure_compare("abc", "abcd") is False

    def test_tenant_slug_key(self):
        assert tenant_slug_key(" Clinica São-Paulo ") == "clinica_s_o_paulo"

    @pytest.mark.parametrize(
        "value, expected",
        [("qitech", "QITECH"), ("qi-tech", "QITECH"), ("Stark_Bank", "STARKBANK"), ("STARKBANK", "STARKBANK")],
    )
    def test_provider_aliases(self, value, expected):
        assert normalize_provider(value) == expected

    def test_unsupported_provider(self):
        with pytest.raises(ReconciliationError) as exc_info:
            normalize_provider("paypal")
        assert exc_info.value.code == "unsupported_escrow_provider"
        assert exc_info.value.status_code == 422

    def test_payload_event_id_priority(self):
        assert payload_event_id({"id": "b", "eventId": "a"}) == "a"
        assert payload_event_id({"event_id": " ", "id": "b"}) == "b"
        assert payload_event_id({"pix_transfer": {"request_control_key": "rck-1"}}) == "rck-1"
        assert payload_event_id({"status": "settled"}) is None


class TestHmacMode:
    def test_valid_signature(self, authenticator):
        signature = hmac_signature(QITECH_SECRET, BODY)

        result = authenticator.authenticate("QITECH", {"X-QITECH-Signature": signature}, BODY)

        assert result == signature

    def test_prefixed_uppercase_signature_is_accepted(self, authenticator):
        signature = "sha256=" + hmac_signature(QITECH_SECRET, BODY).upper()

        assert authenticator.authenticate("qitech", {"x-webhook-signature": signature}, BODY) == signature

    def test_missing_signature(self, authenticator):
        with pytest.raises(WebhookAuthError) as exc_info:
            authenticator.authenticate("QITECH", {}, BODY)

        assert exc_info.value.code == "webhook_signature_missing"
        assert exc_info.value.status_code == 401

    def test_signature_over_different_body_is_invalid(self, authenticator):
        signature = hmac_signature(QITECH_SECRET, b'{"event_id":"evt-2"}')

        with pytest.raises(WebhookAuthError) as exc_info:
            authenticator.authenticate("QITECH", {"X-QITECH-Signature": signature}, BODY)

        assert exc_info.value.code == "webhook_signature_invalid"

    def test_secret_takes_priority_over_token(self):
        settings = Settings(_env_file=None, qitech_webhook_secret=QITECH_SECRET, qitech_webhook_token="tok")
        authenticator = WebhookAuthenticator(settings)

        with pytest.raises(WebhookAuthError) as exc_info:
            authenticator.authenticate("QITECH", {"Authorization": "Bearer tok"}, BODY)

        assert exc_info.value.code == "webhook_signature_missing"


class TestTokenMode:
    def test_bearer_token(self, authenticator):
        assert authenticator.authenticate("STARKBANK", {"Authorization": f"Bearer {STARKBANK_TOKEN}"}, BODY) == "bearer"

    def test_provider_token_header(self, authenticator):
        headers = {"X-Starkbank-Webhook-Token": STARKBANK_TOKEN}

        assert authenticator.authenticate("STARKBANK", headers, BODY) == "bearer"

    def test_missing_token(self, authenticator):
        with pytest.raises(WebhookAuthError) as exc_info:
            authenticator.authenticate("STARKBANK", {"Authorization": "Basic abc"}, BODY)

        assert exc_info.value.code == "webhook_token_missing"

    def test_wrong_token(self, authenticator):
        with pytest.raises(WebhookAuthError) as exc_info:
            authenticator.authenticate("STARKBANK", {"Authorization": "Bearer nope"}, BODY)

        assert exc_info.value.code == "webhook_token_invalid"
        assert exc_info.value.status_code == 401


def test_unconfigured_provider_is_service_unavailable():
    authenticator = WebhookAuthenticator(Settings(_env_file=None, qitech_webhook_secret="", qitech_webhook_token=""))

    with pytest.raises(WebhookAuthError) as exc_info:
        authenticator.authenticate("QITECH", {}, BODY)

    assert exc_info.value.code == "webhook_auth_not_configured"
    assert exc_info.value.status_code == 503


def test_tenant_scoped_secret_wins_over_global():
    settings = Settings(
        _env_file=None,
        qitech_webhook_secret="global-secret",
        webhook_credentials={"clinica_sao_paulo.qitech.webhook_secret": "tenant-secret"},
    )
    authenticator = WebhookAuthenticator(settings)
    headers = {"X-QITECH-Signature": hmac_signature("tenant-secret", BODY)}

    assert authenticator.authenticate("QITECH", headers, BODY, tenant_slug="clinica-sao-paulo")

    with pytest.raises(WebhookAuthError):
        authenticator.authenticate("QITECH", headers, BODY, tenant_slug="hospital-norte")


def test_tenant_scoped_token_wins_over_global_secret():
    settings = Settings(
        _env_file=None,
        qitech_webhook_secret="global-secret",
        qitech_webhook_token="",
        webhook_credentials={"clinica_sao_paulo.qitech.webhook_token": "tenant-token"},
    )
    authenticator = WebhookAuthenticator(settings)
    bearer = {"Authorization": "Bearer tenant-token"}

    assert authenticator.authenticate("QITECH", bearer, BODY, tenant_slug="clinica-sao-paulo") == "bearer"

    with pytest.raises(WebhookAuthError) as exc_info:
        authenticator.authenticate("QITECH", bearer, BODY, tenant_slug="hospital-norte")
    assert exc_info.value.code == "webhook_signature_missing"

    signed = {"X-QITECH-Signature": hmac_signature("global-secret", BODY)}
    assert authenticator.authenticate("QITECH", signed, BODY, tenant_slug="hospital-norte")


def test_scoped_lookup_does_not_fall_back_to_global():
    settings = Settings(_env_file=None, qitech_webhook_secret="global-secret")

    assert settings.webhook_credential("QITECH", "secret", "clinica-sao-paulo") == ""
    assert settings.webhook_credential("QITECH", "secret") == "global-secret"
