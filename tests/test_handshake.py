from __future__ import annotations

import base64
import json
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from studycal.config import GoogleOAuthConfig
from studycal.errors import AuthorizationFlowError, AuthorizationStateInvalid, ConfigurationError
from studycal.integrations.google_calendar import OAuthToken
from studycal.sync.handshake import AuthorizationHandshake, AuthorizationState


@pytest.fixture
def handshake(client, store, clock) -> AuthorizationHandshake:
    return AuthorizationHandshake(client, store, clock=clock)


def _encode(payload: object) -> str:
    return base64.urlsafe_b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def test_begin_authorization_embeds_decodable_state(handshake, clock) -> None:
    url = handshake.begin_authorization("u1")

    state = parse_qs(urlparse(url).query)["state"][0]
    decoded = AuthorizationState.decode(state)
    assert decoded.user_id == "u1"
    assert decoded.issued_at == clock.now
    assert len(decoded.nonce) == 32


def test_each_state_gets_a_fresh_nonce(handshake) -> None:
    assert handshake.issue_state("u1").nonce != handshake.issue_state("u1").nonce


def test_begin_authorization_requires_configuration(client, store) -> None:
    client.config = GoogleOAuthConfig(client_id="", client_secret="", redirect_uri="")
    handshake = AuthorizationHandshake(client, store)

    with pytest.raises(ConfigurationError):
        handshake.begin_authorization("u1")


def test_state_older_than_fifteen_minutes_is_rejected(handshake, clock) -> None:
    token = handshake.issue_state("u1").encode()
    clock.advance(timedelta(minutes=15, seconds=1))

    with pytest.raises(AuthorizationStateInvalid) as excinfo:
        handshake.validate_state(token)

    assert excinfo.value.kind == "invalid_state"


def test_state_within_window_is_accepted_more_than_once(handshake, clock) -> None:
    token = handshake.issue_state("u1").encode()
    clock.advance(timedelta(minutes=14))

    assert handshake.validate_state(token).user_id == "u1"
    assert handshake.validate_state(token).user_id == "u1"


def test_state_issued_in_the_future_is_rejected(handshake, clock) -> None:
    token = handshake.issue_state("u1").encode()
    clock.advance(timedelta(minutes=-5))

    with pytest.raises(AuthorizationStateInvalid):
        handshake.validate_state(token)


def test_state_within_clock_skew_is_accepted(handshake, clock) -> None:
    token = handshake.issue_state("u1").encode()
    clock.advance(timedelta(seconds=-30))

    assert handshake.validate_state(token).user_id == "u1"


@pytest.mark.parametrize(
    "token",
    [
        "not base64 at all!",
        _encode(["u1"]),
        _encode({"timestamp": 1709294400000, "nonce": "n"}),
        _encode({"userId": "u1", "nonce": "n"}),
        base64.b64encode(b"{broken json").decode("ascii"),
    ],
)
def test_malformed_state_is_rejected(handshake, token: str) -> None:
    with pytest.raises(AuthorizationStateInvalid):
        handshake.validate_state(token)


def test_complete_authorization_stores_credential(handshake, client, store) -> None:
    token = handshake.issue_state("u1").encode()

    credential = handshake.complete_authorization("auth-code", token)

    assert client.exchanged_codes == ["auth-code"]
    assert credential.access_token == "fresh-access"
    assert store.get_credential("u1") == credential


def test_reauthorization_overwrites_previous_tokens(handshake, client, store, connect_user) -> None:
    connect_user("u1", refresh_token="old-refresh")
    client.exchange_token = OAuthToken(access_token="second-access")

    credential = handshake.complete_authorization("auth-code", handshake.issue_state("u1").encode())

    assert credential.access_token == "second-access"
    assert credential.refresh_token == ""
    assert store.get_credential("u1").refresh_token == ""


@pytest.mark.parametrize(
    ("code", "state", "kind"),
    [
        (None, "state", "missing_code"),
        ("code", None, "missing_state"),
        ("code", "%%%", "invalid_state"),
    ],
)
def test_callback_parameters_map_to_error_kinds(handshake, code, state, kind) -> None:
    with pytest.raises(AuthorizationFlowError) as excinfo:
        handshake.complete_authorization(code, state)

    assert excinfo.value.kind == kind


def test_failed_code_exchange_is_token_exchange_error(handshake, client, store) -> None:
    client.exchange_token = None

    with pytest.raises(AuthorizationFlowError) as excinfo:
        handshake.complete_authorization("auth-code", handshake.issue_state("u1").encode())

    assert excinfo.value.kind == "token_exchange"
    assert store.get_credential("u1") is None


def test_unknown_user_is_rejected_after_exchange(handshake, store) -> None:
    with pytest.raises(AuthorizationFlowError) as excinfo:
        handshake.complete_authorization("auth-code", handshake.issue_state("ghost").encode())

    assert excinfo.value.kind == "user_not_found"
    assert store.get_credential("ghost") is None
