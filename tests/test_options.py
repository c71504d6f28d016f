"""Wire shape of registration and authentication options."""

import pytest
from fido2.utils import websafe_decode

from passkey_server.debug import CeremonyLog
from passkey_server.models import Credential, DeviceCategory
from passkey_server.options import (
    MIN_CHALLENGE_BYTES,
    SUPPORTED_ALGORITHMS,
    generate_authentication_options,
    generate_challenge,
    generate_registration_options,
)


def _credential(credential_id, transports=()):
    return Credential(
        id=1,
        user_id=1,
        credential_id=credential_id,
        public_key=b"\xa0",
        counter=0,
        device_type=DeviceCategory.PLATFORM,
        transports=tuple(transports),
    )


def test_generate_challenge_length_and_uniqueness():
    challenges = {generate_challenge() for _ in range(50)}

    assert len(challenges) == 50
    assert all(len(websafe_decode(c)) == 32 for c in challenges)
    assert len(websafe_decode(generate_challenge(MIN_CHALLENGE_BYTES))) == 16


def test_generate_challenge_rejects_short_lengths():
    with pytest.raises(ValueError):
        generate_challenge(MIN_CHALLENGE_BYTES - 1)


def test_registration_options_for_new_user(settings):
    result = generate_registration_options(settings, 1, "alice", [])
    options = result.options

    assert options["rp"] == {"name": "Test RP", "id": "localhost"}
    assert options["user"] == {"id": "MQ", "name": "alice", "displayName": "alice"}
    assert options["excludeCredentials"] == []
    assert options["challenge"] == result.challenge
    assert len(websafe_decode(result.challenge)) >= MIN_CHALLENGE_BYTES
    assert [p["alg"] for p in options["pubKeyCredParams"]] == [-7, -257]
    assert list(SUPPORTED_ALGORITHMS) == [-7, -257]
    assert all(p["type"] == "public-key" for p in options["pubKeyCredParams"])
    assert options["timeout"] == 60000
    assert options["attestation"] == "none"
    assert options["authenticatorSelection"] == {
        "authenticatorAttachment": "platform",
        "residentKey": "preferred",
        "requireResidentKey": False,
        "userVerification": "preferred",
    }


def test_registration_options_exclude_existing(settings):
    existing = [_credential("Y3JlZC0x", ["usb", "nfc"]), _credential("Y3JlZC0y")]

    options = generate_registration_options(settings, 7, "alice", existing).options

    assert options["excludeCredentials"] == [
        {"type": "public-key", "id": "Y3JlZC0x", "transports": ["usb", "nfc"]},
        {"type": "public-key", "id": "Y3JlZC0y"},
    ]


def test_registration_options_log(settings):
    log = CeremonyLog("registration-options")
    result = generate_registration_options(settings, 1, "alice", [], log=log)

    assert [e["step"] for e in result.debug_logs] == [
        "registration-start",
        "registration-query",
        "registration-generated",
    ]
    assert result.debug_logs[-1]["type"] == "success"
    assert result.challenge not in repr(result.debug_logs)
    assert len(log) == 3


def test_authentication_options_without_username(settings, store):
    result = generate_authentication_options(settings, None, store)

    assert "allowCredentials" not in result.options
    assert result.options["rpId"] == "localhost"
    assert result.options["userVerification"] == "preferred"
    assert result.options["timeout"] == 60000


def test_authentication_options_for_unknown_user_match_discoverable(settings, store):
    result = generate_authentication_options(settings, "nobody", store)

    assert "allowCredentials" not in result.options


def test_authentication_options_for_known_user(settings, store, alice):
    store.insert_credential(alice.id, "Y3JlZC0x", b"\xa0", 0, DeviceCategory.PLATFORM, False, ["internal"])

    result = generate_authentication_options(settings, "alice", store)

    assert result.options["allowCredentials"] == [
        {"type": "public-key", "id": "Y3JlZC0x", "transports": ["internal"]}
    ]
    assert [e["step"] for e in result.debug_logs] == ["auth-start", "auth-credentials", "auth-generated"]


def test_authentication_options_list_exactly_the_users_credentials(settings, store, alice):
    bob = store.create_user("bob")
    store.insert_credential(alice.id, "Y3JlZC0x", b"\xa0", 0, DeviceCategory.PLATFORM, False, ["internal"])
    store.insert_credential(alice.id, "Y3JlZC0y", b"\xa0", 0, DeviceCategory.CROSS_PLATFORM, False, ["usb"])
    store.insert_credential(bob.id, "Y3JlZC0z", b"\xa0", 0, DeviceCategory.PLATFORM, False, [])

    result = generate_authentication_options(settings, "alice", store)

    allowed = result.options["allowCredentials"]
    assert sorted(d["id"] for d in allowed) == ["Y3JlZC0x", "Y3JlZC0y"]
    assert all(d["type"] == "public-key" for d in allowed)


def test_each_call_gets_fresh_log(settings, store):
    first = generate_authentication_options(settings, None, store)
    second = generate_authentication_options(settings, None, store)

    assert len(first.debug_logs) == len(second.debug_logs) == 2
    assert first.challenge != second.challenge
