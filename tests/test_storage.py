"""Credential store contract, exercised against every backend."""

import threading
from datetime import timedelta

import pytest

from passkey_server.errors import DuplicateCredential, StoreUnavailable, UsernameTaken
from passkey_server.models import DeviceCategory, Purpose
from passkey_server.storage import MemoryStore, SqliteStore, create_store, utcnow


def _insert(store, user_id, credential_id="Y3JlZC0x", counter=0, transports=("usb",)):
    return store.insert_credential(
        user_id,
        credential_id,
        b"\xa5\x01\x02",
        counter,
        DeviceCategory.CROSS_PLATFORM,
        False,
        list(transports),
        backup_eligible=True,
    )


def test_users(store):
    alice = store.create_user("alice", "hash")

    assert store.find_user_by_username("alice") == alice
    assert store.get_user(alice.id).password_hash == "hash"
    assert store.find_user_by_username("bob") is None
    with pytest.raises(UsernameTaken):
        store.create_user("alice")


def test_insert_and_find_credential(store, alice):
    inserted = _insert(store, alice.id, counter=3)

    credential, owner = store.find_credential_by_credential_id("Y3JlZC0x")

    assert owner.id == alice.id
    assert credential.id == inserted.id
    assert credential.public_key == b"\xa5\x01\x02"
    assert credential.counter == 3
    assert credential.device_type is DeviceCategory.CROSS_PLATFORM
    assert credential.backup_eligible is True
    assert credential.backed_up is False
    assert credential.transports == ("usb",)
    assert credential.created_at is not None
    assert credential.last_used_at is None
    assert store.find_credential("Y3JlZC0x") == (credential, owner)
    assert store.find_credential_by_credential_id("missing") is None


def test_duplicate_credential_id_rejected(store, alice):
    bob = store.create_user("bob")
    _insert(store, alice.id)

    with pytest.raises(DuplicateCredential):
        _insert(store, bob.id)
    assert store.find_credentials_by_user(bob.id) == []


def test_concurrent_duplicate_insert_has_one_winner(store, alice):
    outcomes = []
    barrier = threading.Barrier(8)

    def attempt():
        barrier.wait()
        try:
            _insert(store, alice.id)
            outcomes.append("ok")
        except DuplicateCredential:
            outcomes.append("duplicate")

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("duplicate") == 7


def test_insert_for_unknown_user(store):
    with pytest.raises(ValueError):
        _insert(store, 999)


def test_credentials_newest_first(store, alice):
    _insert(store, alice.id, "Y3JlZC0x")
    _insert(store, alice.id, "Y3JlZC0y")

    assert [c.credential_id for c in store.find_credentials_by_user(alice.id)] == ["Y3JlZC0y", "Y3JlZC0x"]


def test_empty_transports_round_trip(store, alice):
    _insert(store, alice.id, transports=())

    credential, _ = store.find_credential_by_credential_id("Y3JlZC0x")
    assert credential.transports == ()
    assert credential.to_json()["transports"] is None


def test_update_counter(store, alice):
    _insert(store, alice.id, counter=5)
    used_at = utcnow()

    assert store.update_credential_counter("Y3JlZC0x", 6, now=used_at)
    credential, _ = store.find_credential_by_credential_id("Y3JlZC0x")
    assert credential.counter == 6
    assert abs((credential.last_used_at - used_at).total_seconds()) < 0.001


def test_update_counter_compare_and_set(store, alice):
    _insert(store, alice.id, counter=5)

    assert store.update_credential_counter("Y3JlZC0x", 7, expected_counter=5)
    assert not store.update_credential_counter("Y3JlZC0x", 8, expected_counter=5)
    assert not store.update_credential_counter("missing", 1)
    assert store.find_credential_by_credential_id("Y3JlZC0x")[0].counter == 7


def test_delete_credential_requires_owner(store, alice):
    bob = store.create_user("bob")
    _insert(store, alice.id)

    assert store.delete_credential("Y3JlZC0x", bob.id) == 0
    assert store.delete_credential("Y3JlZC0x", alice.id) == 1
    assert store.delete_credential("Y3JlZC0x", alice.id) == 0


def test_delete_user_cascades(store, alice):
    _insert(store, alice.id)
    store.create_login_session("login", alice.id, "password-login", utcnow() + timedelta(hours=1))
    store.create_challenge_session("challenge", alice.id, "abc", utcnow() + timedelta(minutes=5))

    assert store.delete_user(alice.id) == 1

    assert store.find_credential_by_credential_id("Y3JlZC0x") is None
    assert store.get_login_session("login") is None
    assert store.get_challenge_session("challenge") is None
    assert store.delete_user(alice.id) == 0


def test_challenge_sessions(store, alice):
    now = utcnow()
    created = store.create_challenge_session(
        "s1", alice.id, "abc", now + timedelta(minutes=5), purpose=Purpose.AUTHENTICATION, now=now
    )

    fetched = store.get_challenge_session("s1", now=now)
    assert fetched.challenge == "abc"
    assert fetched.purpose is Purpose.AUTHENTICATION
    assert fetched.expires_at == created.expires_at
    assert store.get_challenge_session("s1", now=now + timedelta(minutes=5)) is None

    assert store.pop_challenge_session("s1", now=now).challenge == "abc"
    assert store.pop_challenge_session("s1", now=now) is None


def test_pop_expired_challenge_deletes_it(store):
    now = utcnow()
    store.create_challenge_session("s1", None, "abc", now + timedelta(seconds=1), now=now)

    assert store.pop_challenge_session("s1", now=now + timedelta(seconds=2)) is None
    assert store.delete_challenge_session("s1") == 0


def test_concurrent_pop_has_one_winner(store):
    store.create_challenge_session("s1", None, "abc", utcnow() + timedelta(minutes=5))
    winners = []
    barrier = threading.Barrier(8)

    def attempt():
        barrier.wait()
        if store.pop_challenge_session("s1") is not None:
            winners.append(1)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert winners == [1]


def test_delete_expired_challenge_sessions(store, alice):
    now = utcnow()
    store.create_challenge_session("old", alice.id, "a", now - timedelta(seconds=1))
    store.create_challenge_session("new", None, "b", now + timedelta(minutes=1))

    assert store.delete_expired_challenge_sessions(now=now) == 1
    assert store.get_challenge_session("new", now=now) is not None


def test_replace_challenge_session(store, alice):
    now = utcnow()
    store.create_challenge_session("old", alice.id, "a", now + timedelta(minutes=1), now=now)
    store.create_challenge_session(
        "auth", alice.id, "b", now + timedelta(minutes=1), purpose=Purpose.AUTHENTICATION, now=now
    )

    session, replaced = store.replace_challenge_session("new", alice.id, "c", now + timedelta(minutes=1), now=now)

    assert replaced == 1
    assert session.challenge == "c"
    assert session.purpose is Purpose.REGISTRATION
    assert store.get_challenge_session("old", now=now) is None
    assert store.get_challenge_session("auth", now=now) is not None
    assert store.get_challenge_session("new", now=now).challenge == "c"


def test_login_sessions(store, alice):
    now = utcnow()
    store.create_login_session("login", alice.id, "passkey-login", now + timedelta(hours=24), now=now)

    session = store.get_login_session("login", now=now)
    assert session.username == "alice"
    assert session.method == "passkey-login"
    assert store.get_login_session("login", now=now + timedelta(hours=24)) is None
    assert store.delete_expired_login_sessions(now=now + timedelta(hours=24)) == 1
    assert store.delete_login_session("login") == 0


def test_ping(store):
    store.ping()


def test_closed_sqlite_store_is_unavailable(tmp_path):
    store = SqliteStore(str(tmp_path / "db" / "webauthn.db"))
    store.close()

    with pytest.raises(StoreUnavailable):
        store.ping()
    with pytest.raises(StoreUnavailable):
        store.find_user_by_username("alice")


def test_sqlite_store_persists_across_connections(tmp_path):
    path = str(tmp_path / "webauthn.db")
    first = SqliteStore(path)
    alice = first.create_user("alice")
    _insert(first, alice.id, counter=4)
    first.close()

    second = SqliteStore(path)
    credential, owner = second.find_credential_by_credential_id("Y3JlZC0x")
    assert owner.username == "alice"
    assert credential.counter == 4
    second.close()


def test_create_store(tmp_path):
    assert isinstance(create_store(":memory:"), MemoryStore)
    assert isinstance(create_store(""), MemoryStore)
    sqlite_store = create_store(str(tmp_path / "webauthn.db"))
    assert isinstance(sqlite_store, SqliteStore)
    sqlite_store.close()
