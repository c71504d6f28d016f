"""Begin/finish ceremony round trips through persisted challenges."""

from passkey_server.ceremonies import PasskeyCeremonies
from passkey_server.challenges import ChallengeManager

from .authenticator import SoftwareAuthenticator


def test_registration_then_authentication(ceremonies, alice, authenticator):
    session_id, options = ceremonies.begin_registration(alice)
    result = ceremonies.finish_registration(
        session_id, authenticator.register(options.challenge), alice
    )
    assert result.verified

    auth_session, auth_options = ceremonies.begin_authentication("alice")
    assert auth_options.options["allowCredentials"] == [
        {"type": "public-key", "id": authenticator.credential_id_b64, "transports": ["internal", "hybrid"]}
    ]
    outcome = ceremonies.finish_authentication(
        auth_session, authenticator.authenticate(auth_options.challenge)
    )
    assert outcome.verified
    assert outcome.user_id == alice.id


def test_discoverable_authentication(ceremonies, alice, authenticator):
    session_id, options = ceremonies.begin_registration(alice)
    ceremonies.finish_registration(session_id, authenticator.register(options.challenge), alice)

    auth_session, auth_options = ceremonies.begin_authentication()
    assert "allowCredentials" not in auth_options.options

    outcome = ceremonies.finish_authentication(
        auth_session,
        authenticator.authenticate(auth_options.challenge, user_handle=alice.user_handle),
    )
    assert outcome.verified
    assert outcome.username == "alice"


def test_credential_outside_allow_list_is_rejected(ceremonies, store, alice, authenticator):
    bob = store.create_user("bob")
    bob_authenticator = SoftwareAuthenticator(counter=5)
    for user, key in ((alice, authenticator), (bob, bob_authenticator)):
        session_id, options = ceremonies.begin_registration(user)
        assert ceremonies.finish_registration(session_id, key.register(options.challenge), user).verified

    auth_session, auth_options = ceremonies.begin_authentication("alice")
    allowed = [d["id"] for d in auth_options.options["allowCredentials"]]
    assert bob_authenticator.credential_id_b64 not in allowed

    outcome = ceremonies.finish_authentication(
        auth_session, bob_authenticator.authenticate(auth_options.challenge)
    )

    assert not outcome.verified
    assert outcome.reason == "credential_not_found"
    assert outcome.user_id is None
    stored, owner = store.find_credential_by_credential_id(bob_authenticator.credential_id_b64)
    assert owner.id == bob.id
    assert stored.counter == 5


def test_challenge_is_single_use(ceremonies, alice, authenticator):
    session_id, options = ceremonies.begin_registration(alice)
    response = authenticator.register(options.challenge, origin="https://wrong.example")

    first = ceremonies.finish_registration(session_id, response, alice)
    assert first.reason == "origin_mismatch"

    retry = ceremonies.finish_registration(
        session_id, authenticator.register(options.challenge), alice
    )
    assert retry.reason == "challenge_not_found"


def test_authentication_response_cannot_be_replayed(ceremonies, alice):
    authenticator = SoftwareAuthenticator(counter=1)
    session_id, options = ceremonies.begin_registration(alice)
    ceremonies.finish_registration(session_id, authenticator.register(options.challenge), alice)

    auth_session, auth_options = ceremonies.begin_authentication("alice")
    response = authenticator.authenticate(auth_options.challenge)
    assert ceremonies.finish_authentication(auth_session, response).verified

    replay = ceremonies.finish_authentication(auth_session, response)
    assert not replay.verified
    assert replay.reason == "challenge_not_found"


def test_new_registration_request_replaces_pending_challenge(ceremonies, alice, authenticator):
    stale_session, stale_options = ceremonies.begin_registration(alice)
    fresh_session, fresh_options = ceremonies.begin_registration(alice)

    stale = ceremonies.finish_registration(
        stale_session, authenticator.register(stale_options.challenge), alice
    )
    assert stale.reason == "challenge_not_found"

    fresh = ceremonies.finish_registration(
        fresh_session, authenticator.register(fresh_options.challenge), alice
    )
    assert fresh.verified


def test_registration_challenge_bound_to_user(ceremonies, store, alice, authenticator):
    bob = store.create_user("bob")
    session_id, options = ceremonies.begin_registration(alice)

    result = ceremonies.finish_registration(session_id, authenticator.register(options.challenge), bob)

    assert result.reason == "challenge_not_found"
    assert store.find_credentials_by_user(bob.id) == []


def test_registration_session_cannot_finish_authentication(ceremonies, alice, authenticator):
    session_id, options = ceremonies.begin_registration(alice)

    result = ceremonies.finish_authentication(session_id, authenticator.authenticate(options.challenge))

    assert result.reason == "challenge_not_found"


def test_expired_challenge(settings, store, alice, authenticator, clock):
    ceremonies = PasskeyCeremonies(settings, store, ChallengeManager(store, clock=clock))
    session_id, options = ceremonies.begin_registration(alice)

    clock.advance(seconds=settings.registration_challenge_ttl + 1)
    result = ceremonies.finish_registration(
        session_id, authenticator.register(options.challenge), alice
    )

    assert not result.verified
    assert result.reason == "challenge_not_found"


def test_unknown_session_id(ceremonies, alice, authenticator):
    result = ceremonies.finish_registration("no-such-session", authenticator.register("abc"), alice)

    assert result.reason == "challenge_not_found"
    assert result.debug_logs[-1]["type"] == "error"


def test_exclude_credentials_lists_existing_passkeys(ceremonies, alice, authenticator):
    session_id, options = ceremonies.begin_registration(alice)
    ceremonies.finish_registration(session_id, authenticator.register(options.challenge), alice)

    _, second = ceremonies.begin_registration(alice)

    assert [c["id"] for c in second.options["excludeCredentials"]] == [authenticator.credential_id_b64]


def test_list_and_delete_credentials(ceremonies, store, alice, authenticator):
    bob = store.create_user("bob")
    session_id, options = ceremonies.begin_registration(alice)
    ceremonies.finish_registration(session_id, authenticator.register(options.challenge), alice)

    assert [c.credential_id for c in ceremonies.list_credentials(alice.id)] == [
        authenticator.credential_id_b64
    ]
    assert ceremonies.delete_credential(authenticator.credential_id_b64, bob.id) == 0
    padded = authenticator.credential_id_b64 + "=" * (-len(authenticator.credential_id_b64) % 4)
    assert ceremonies.delete_credential(padded, alice.id) == 1
    assert ceremonies.list_credentials(alice.id) == []
    assert ceremonies.delete_credential("***", alice.id) == 0
