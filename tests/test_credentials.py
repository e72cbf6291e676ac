from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from studycal.errors import ExternalAPIError, TokenRefreshFailure
from studycal.integrations.google_calendar import OAuthToken
from studycal.storage import CredentialStore
from studycal.sync.credentials import LOCK_STRIPES, CredentialManager


@pytest.fixture
def manager(client, store, clock) -> CredentialManager:
    return CredentialManager(client, CredentialStore(store), clock=clock)


def test_unconnected_user_has_no_credential(manager, client) -> None:
    assert manager.obtain_usable_credential("u2") is None
    assert client.refresh_calls == []


def test_valid_credential_is_returned_without_refresh(manager, client, connect_user) -> None:
    stored = connect_user("u1")

    assert manager.obtain_usable_credential("u1") == stored
    assert client.refresh_calls == []


def test_expired_credential_is_refreshed_once_and_persisted(manager, client, store, clock, connect_user) -> None:
    connect_user("u1", expires_at=clock.now - timedelta(minutes=1))

    refreshed = manager.obtain_usable_credential("u1")
    again = manager.obtain_usable_credential("u1")

    assert client.refresh_calls == ["refresh-u1"]
    assert refreshed.access_token == "refreshed-access"
    assert refreshed.expires_at > clock.now
    assert store.get_credential("u1") == refreshed
    assert again == refreshed


def test_refresh_keeps_refresh_token_when_provider_does_not_rotate(manager, clock, connect_user) -> None:
    connect_user("u1", expires_at=clock.now)

    assert manager.obtain_usable_credential("u1").refresh_token == "refresh-u1"


def test_refresh_replaces_rotated_refresh_token(manager, client, clock, connect_user) -> None:
    client.refresh_token_result = OAuthToken(access_token="a2", refresh_token="rotated", expires_at=clock.now + timedelta(hours=1))
    connect_user("u1", expires_at=clock.now - timedelta(seconds=1))

    assert manager.obtain_usable_credential("u1").refresh_token == "rotated"


def test_transient_refresh_failure_keeps_credential(manager, client, store, clock, connect_user) -> None:
    client.refresh_error = ExternalAPIError("refresh", "Token request refresh failed")
    connect_user("u1", expires_at=clock.now - timedelta(minutes=5))

    with pytest.raises(TokenRefreshFailure) as excinfo:
        manager.obtain_usable_credential("u1")

    assert excinfo.value.revoked is False
    assert store.get_credential("u1") is not None


def test_revoked_refresh_token_disconnects_user(manager, client, store, clock, connect_user) -> None:
    client.refresh_error = ExternalAPIError(
        "refresh", "Token endpoint rejected refresh", status_code=400, error_code="invalid_grant"
    )
    connect_user("u1", expires_at=clock.now - timedelta(minutes=5))

    with pytest.raises(TokenRefreshFailure) as excinfo:
        manager.obtain_usable_credential("u1")

    assert excinfo.value.revoked is True
    assert store.get_credential("u1") is None
    assert manager.obtain_usable_credential("u1") is None


def test_missing_refresh_token_cannot_be_refreshed(manager, client, clock, connect_user) -> None:
    connect_user("u1", expires_at=clock.now - timedelta(minutes=5), refresh_token="")

    with pytest.raises(TokenRefreshFailure):
        manager.obtain_usable_credential("u1")

    assert client.refresh_calls == []


def test_concurrent_requests_share_a_single_refresh(manager, client, clock, connect_user) -> None:
    client.refresh_delay = 0.05
    connect_user("u1", expires_at=clock.now - timedelta(minutes=1))
    results = []

    def worker() -> None:
        results.append(manager.obtain_usable_credential("u1"))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(client.refresh_calls) == 1
    assert {credential.access_token for credential in results} == {"refreshed-access"}


def test_disconnect_is_not_repeatable(manager, connect_user) -> None:
    connect_user("u1")

    assert manager.disconnect("u1") is True
    assert manager.disconnect("u1") is False
    assert manager.is_connected("u1") is False


def test_refresh_locks_do_not_grow_with_users(manager, clock, connect_user) -> None:
    for index in range(LOCK_STRIPES * 2):
        connect_user(f"user-{index}", expires_at=clock.now - timedelta(minutes=1))
        manager.obtain_usable_credential(f"user-{index}")

    assert len(manager._locks) == LOCK_STRIPES
    assert manager._lock_for("user-1") is manager._lock_for("user-1")
