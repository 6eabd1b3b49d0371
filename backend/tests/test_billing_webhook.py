import hashlib
import hmac
import json
import time

import pytest
from sqlmodel import Session

from certano import repositories
from certano.config import settings
from certano.database import engine

SECRET = 'whsec_test_secret'


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, 'STRIPE_WEBHOOK_SECRET', SECRET)


def _signed(event: dict, secret: str = SECRET):
    payload = json.dumps(event)
    ts = int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return payload, {'Stripe-Signature': f"t={ts},v1={sig}", 'Content-Type': 'application/json'}


def _post(client, event: dict, secret: str = SECRET):
    payload, headers = _signed(event, secret)
    return client.post('/api/stripe-webhook', content=payload, headers=headers)


def _profile(user_id: int):
    with Session(engine) as session:
        return repositories.ProfileRepository(session).get(user_id)


def _event(event_type: str, obj: dict) -> dict:
    return {'id': f'evt_{event_type}', 'type': event_type, 'data': {'object': obj}}


def test_bad_signature_is_rejected(client, auth_headers):
    user_id, email, _ = auth_headers
    event = _event('customer.subscription.deleted', {'id': 'sub_1', 'customer_email': email})
    r = _post(client, event, secret='whsec_wrong')
    assert r.status_code == 400
    assert _profile(user_id).subscription_status == 'inactive'

    missing = client.post('/api/stripe-webhook', content=json.dumps(event))
    assert missing.status_code == 400


def test_get_is_not_allowed(client):
    assert client.get('/api/stripe-webhook').status_code == 405


def test_checkout_completed_for_unknown_email_is_acknowledged(client):
    event = _event('checkout.session.completed', {
        'id': 'cs_1', 'customer': 'cus_unknown', 'customer_email': 'nobody@example.com',
    })
    r = _post(client, event)
    assert r.status_code == 200
    assert r.json() == {'received': True}


def test_checkout_completed_upgrades_user_by_metadata(client, auth_headers):
    user_id, _, _ = auth_headers
    event = _event('checkout.session.completed', {
        'id': 'cs_2', 'customer': 'cus_meta', 'subscription': 'sub_meta',
        'metadata': {'user_id': str(user_id)},
    })
    assert _post(client, event).json() == {'received': True}
    profile = _profile(user_id)
    assert profile.subscription_type == 'pro'
    assert profile.subscription_status == 'active'
    assert profile.subscription_start_date is not None
    assert profile.stripe_customer_id == 'cus_meta'
    assert profile.stripe_subscription_id == 'sub_meta'


def test_checkout_completed_resolves_user_from_success_url(client, auth_headers):
    user_id, _, _ = auth_headers
    event = _event('checkout.session.completed', {
        'id': 'cs_3', 'customer': 'cus_url',
        'success_url': f'https://app.example.com/success?session_id=x&user_id={user_id}',
    })
    _post(client, event)
    assert _profile(user_id).subscription_type == 'pro'


def test_subscription_lifecycle_by_email(client, auth_headers):
    user_id, email, _ = auth_headers
    created = _event('customer.subscription.created', {
        'id': 'sub_life', 'customer': 'cus_life', 'customer_email': email, 'created': 1700000000,
    })
    _post(client, created)
    profile = _profile(user_id)
    assert profile.subscription_type == 'pro'
    assert profile.subscription_status == 'active'
    assert profile.stripe_subscription_id == 'sub_life'
    assert profile.subscription_start_date.replace(tzinfo=None).isoformat() == '2023-11-14T22:13:20'

    _post(client, _event('customer.subscription.updated', {'id': 'sub_life', 'customer_email': email, 'status': 'past_due'}))
    assert _profile(user_id).subscription_status == 'inactive'
    _post(client, _event('customer.subscription.updated', {'id': 'sub_life', 'customer_email': email, 'status': 'active'}))
    assert _profile(user_id).subscription_status == 'active'


def test_subscription_deleted_is_idempotent(client, auth_headers):
    user_id, email, _ = auth_headers
    event = _event('customer.subscription.deleted', {'id': 'sub_del', 'customer_email': email})
    for _ in range(2):
        r = _post(client, event)
        assert r.json() == {'received': True}
        profile = _profile(user_id)
        assert profile.subscription_type == 'free'
        assert profile.subscription_status == 'cancelled'
        assert profile.subscription_end_date is not None


def test_subscription_event_falls_back_to_customer_id(client, auth_headers):
    user_id, _, _ = auth_headers
    with Session(engine) as session:
        repo = repositories.ProfileRepository(session)
        profile = repo.get_or_create(user_id)
        profile.stripe_customer_id = 'cus_fallback'
        repo.save(profile)
    event = _event('customer.subscription.deleted', {
        'id': 'sub_fb', 'customer': 'cus_fallback', 'customer_email': 'alias@example.com',
    })
    _post(client, event)
    assert _profile(user_id).subscription_status == 'cancelled'


def test_subscription_event_without_email_is_dropped(client, auth_headers):
    user_id, _, _ = auth_headers
    with Session(engine) as session:
        repo = repositories.ProfileRepository(session)
        profile = repo.get_or_create(user_id)
        profile.stripe_customer_id = 'cus_noemail'
        repo.save(profile)
    r = _post(client, _event('customer.subscription.deleted', {'id': 'sub_x', 'customer': 'cus_noemail'}))
    assert r.json() == {'received': True}
    assert _profile(user_id).subscription_status == 'inactive'


@pytest.mark.parametrize('event_type', ['invoice.payment_succeeded', 'invoice.payment_failed', 'charge.refunded'])
def test_logged_and_unhandled_events_are_acknowledged(client, event_type):
    r = _post(client, _event(event_type, {'id': 'in_1', 'customer': 'cus_1'}))
    assert r.status_code == 200
    assert r.json() == {'received': True}


def test_handler_failure_is_still_acknowledged(client, monkeypatch):
    from certano import services

    def boom(self, obj):
        raise RuntimeError('db down')

    monkeypatch.setattr(services.SubscriptionService, 'subscription_deleted', boom)
    r = _post(client, _event('customer.subscription.deleted', {'id': 'sub_boom', 'customer_email': 'x@example.com'}))
    assert r.status_code == 200
    assert r.json() == {'received': True}


def test_missing_webhook_secret_is_a_server_error(client, monkeypatch):
    payload, headers = _signed(_event('invoice.payment_failed', {'id': 'in_2'}))
    monkeypatch.setattr(settings, 'STRIPE_WEBHOOK_SECRET', '')
    r = client.post('/api/stripe-webhook', content=payload, headers=headers)
    assert r.status_code == 500
    assert 'error' in r.json()
