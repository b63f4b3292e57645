"""Tests for Shopify webhooks, the OAuth install flow and request signing."""

import base64
import hashlib
import hmac
import json
import time

import pytest
from jose import jwt

from cartupsell.models import Rule, Session as AuthSession, Shop
from cartupsell.routers import shopify_oauth
from cartupsell.routers.shopify_oauth import STATE_COOKIE, normalize_shop_domain, validate_shop_domain
from cartupsell.security import (
    SessionTokenError,
    decode_session_token,
    decrypt_secret,
    encrypt_secret,
    shop_from_session_token,
)
from cartupsell.tests.conftest import API_KEY, API_SECRET, SHOP_DOMAIN, make_session_token


def _webhook(client, path, payload, secret=API_SECRET, headers=None):
    body = json.dumps(payload).encode()
    digest = base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()
    all_headers = {"Content-Type": "application/json", "X-Shopify-Hmac-SHA256": digest}
    all_headers.update(headers or {})
    return client.post(f"/webhooks/shopify{path}", content=body, headers=all_headers)


# ============================================================================
# Webhooks
# ============================================================================

class TestWebhooks:
    def test_app_uninstalled(self, client, test_db_session, shop, make_rule):
        make_rule(shop)

        response = _webhook(
            client,
            "/app/uninstalled",
            {"myshopify_domain": SHOP_DOMAIN},
            headers={"X-Shopify-Shop-Domain": SHOP_DOMAIN},
        )

        assert response.status_code == 200
        test_db_session.expire_all()
        stored = test_db_session.query(Shop).filter_by(shopify_domain=SHOP_DOMAIN).one()
        assert stored.is_active is False
        assert stored.uninstalled_at is not None
        assert test_db_session.query(AuthSession).filter_by(shop=SHOP_DOMAIN).count() == 0
        assert test_db_session.query(Rule).count() == 1

    def test_uninstalled_shop_serves_no_offers(self, client, shop, make_rule):
        make_rule(shop)
        _webhook(client, "/app/uninstalled", {"myshopify_domain": SHOP_DOMAIN})

        response = client.get("/api/storefront/upsells", params={"shop": SHOP_DOMAIN, "products": "100"})
        assert response.json() == {"offers": []}

    def test_bad_signature(self, client, test_db_session, shop):
        response = _webhook(client, "/app/uninstalled", {"myshopify_domain": SHOP_DOMAIN}, secret="wrong")

        assert response.status_code == 401
        test_db_session.expire_all()
        assert test_db_session.query(Shop).filter_by(shopify_domain=SHOP_DOMAIN).one().is_active is True

    def test_missing_signature(self, client):
        response = client.post("/webhooks/shopify/customers/redact", json={"shop_domain": SHOP_DOMAIN})
        assert response.status_code == 401

    def test_unknown_shop_is_acknowledged(self, client):
        response = _webhook(client, "/app/uninstalled", {"myshopify_domain": "ghost.myshopify.com"})
        assert response.status_code == 200

    @pytest.mark.parametrize("path", ["/customers/data_request", "/customers/redact"])
    def test_customer_compliance_topics(self, client, path):
        response = _webhook(client, path, {"shop_domain": SHOP_DOMAIN, "customer": {"id": 1}})
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_shop_redact_deletes_everything(self, client, test_db_session, shop, make_rule):
        make_rule(shop)

        response = _webhook(client, "/shop/redact", {"shop_domain": SHOP_DOMAIN, "shop_id": 1})

        assert response.status_code == 200
        test_db_session.expire_all()
        assert test_db_session.query(Shop).count() == 0
        assert test_db_session.query(Rule).count() == 0
        assert test_db_session.query(AuthSession).count() == 0


# ============================================================================
# OAuth
# ============================================================================

def _signed_query(params):
    message = "&".join(f"{key}={value}" for key, value in sorted(params.items()))
    signed = dict(params)
    signed["hmac"] = hmac.new(API_SECRET.encode(), message.encode(), hashlib.sha256).hexdigest()
    return signed


class FakeTokenResponse:
    def raise_for_status(self):
        return None

    def json(self):
        return {"access_token": "shpat_new_token", "scope": "read_products"}


class FakeAsyncClient:
    requests = []

    def __init__(self, *args, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def post(self, url, json=None):
        self.requests.append((url, json))
        return FakeTokenResponse()


class TestOAuth:
    def test_normalize_shop_domain(self):
        assert normalize_shop_domain("MyShop") == "myshop.myshopify.com"
        assert normalize_shop_domain("https://myshop.myshopify.com/admin") == "myshop.myshopify.com"
        assert validate_shop_domain("myshop.myshopify.com") is True
        assert validate_shop_domain("evil.com.myshopify.com/../") is False

    def test_install_redirects_with_state(self, client):
        response = client.get("/auth/shopify/install", params={"shop": "test-store"}, follow_redirects=False)

        assert response.status_code in (302, 307)
        location = response.headers["location"]
        assert location.startswith(f"https://{SHOP_DOMAIN}/admin/oauth/authorize?")
        assert f"client_id={API_KEY}" in location
        assert STATE_COOKIE in response.headers["set-cookie"]

    def test_install_rejects_bad_domain(self, client):
        response = client.get("/auth/shopify/install", params={"shop": "bad_shop!"}, follow_redirects=False)
        assert response.status_code == 400

    def test_callback_rejects_bad_hmac(self, client):
        params = {"code": "abc", "shop": SHOP_DOMAIN, "state": "nonce", "timestamp": "1", "hmac": "00"}
        response = client.get("/auth/shopify/callback", params=params, follow_redirects=False)
        assert response.status_code == 401

    def test_callback_rejects_state_mismatch(self, client):
        params = _signed_query({"code": "abc", "shop": SHOP_DOMAIN, "state": "nonce", "timestamp": "1"})
        response = client.get(
            "/auth/shopify/callback",
            params=params,
            headers={"Cookie": f"{STATE_COOKIE}=other"},
            follow_redirects=False,
        )
        assert response.status_code == 400

    def test_callback_installs_shop(self, client, test_db_session, fake_shopify, monkeypatch):
        monkeypatch.setattr(shopify_oauth.httpx, "AsyncClient", FakeAsyncClient)
        FakeAsyncClient.requests = []
        params = _signed_query({"code": "abc", "shop": SHOP_DOMAIN, "state": "nonce", "timestamp": "1"})

        response = client.get(
            "/auth/shopify/callback",
            params=params,
            headers={"Cookie": f"{STATE_COOKIE}=nonce"},
            follow_redirects=False,
        )

        assert response.status_code in (302, 307)
        assert response.headers["location"] == f"https://{SHOP_DOMAIN}/admin/apps/{API_KEY}"
        assert FakeAsyncClient.requests[0][0] == f"https://{SHOP_DOMAIN}/admin/oauth/access_token"

        session = test_db_session.get(AuthSession, f"offline_{SHOP_DOMAIN}")
        assert decrypt_secret(session.access_token, context=SHOP_DOMAIN) == "shpat_new_token"
        stored = test_db_session.query(Shop).filter_by(shopify_domain=SHOP_DOMAIN).one()
        assert stored.is_active is True
        assert stored.currency_code == "EUR"
        assert fake_shopify.access_token == "shpat_new_token"

    def test_reinstall_reactivates_shop(self, client, test_db_session, shop, monkeypatch):
        shop.is_active = False
        test_db_session.commit()
        monkeypatch.setattr(shopify_oauth.httpx, "AsyncClient", FakeAsyncClient)
        params = _signed_query({"code": "abc", "shop": SHOP_DOMAIN, "state": "nonce", "timestamp": "1"})

        client.get(
            "/auth/shopify/callback",
            params=params,
            headers={"Cookie": f"{STATE_COOKIE}=nonce"},
            follow_redirects=False,
        )

        test_db_session.expire_all()
        assert test_db_session.query(Shop).filter_by(shopify_domain=SHOP_DOMAIN).one().is_active is True


# ============================================================================
# Session tokens and secrets
# ============================================================================

class TestSessionTokens:
    def test_decode(self):
        payload = decode_session_token(make_session_token(), api_key=API_KEY, api_secret=API_SECRET)
        assert shop_from_session_token(payload) == SHOP_DOMAIN

    def test_wrong_secret(self):
        with pytest.raises(SessionTokenError):
            decode_session_token(make_session_token(secret="nope"), api_key=API_KEY, api_secret=API_SECRET)

    def test_wrong_audience(self):
        with pytest.raises(SessionTokenError):
            decode_session_token(make_session_token(audience="other"), api_key=API_KEY, api_secret=API_SECRET)

    @pytest.mark.parametrize("dest", [12345, ["https://test-store.myshopify.com"], None])
    def test_non_string_dest(self, dest):
        now = int(time.time())
        claims = {"iss": f"https://{SHOP_DOMAIN}/admin", "dest": dest, "aud": API_KEY, "exp": now + 60, "nbf": now - 5}
        token = jwt.encode(claims, API_SECRET, algorithm="HS256")

        with pytest.raises(SessionTokenError):
            decode_session_token(token, api_key=API_KEY, api_secret=API_SECRET)


def test_stored_tokens_are_encrypted():
    token = encrypt_secret("shpat_abc", context=SHOP_DOMAIN)

    assert "shpat_abc" not in token
    assert decrypt_secret(token, context=SHOP_DOMAIN) == "shpat_abc"
    with pytest.raises(ValueError):
        decrypt_secret("not-a-fernet-token", context=SHOP_DOMAIN)
