import pytest

from passkey_server.encoding import (
    decode_binary_value,
    encode_base64url,
    format_credential_id,
    normalize_credential_id,
)


def test_encode_base64url_is_unpadded():
    assert encode_base64url(b"\xfb\xff") == "-_8"


@pytest.mark.parametrize(
    "value",
    ["-_8", "-_8=", "+/8=", "+/8", b"\xfb\xff", bytearray(b"\xfb\xff"), [251, 255]],
)
def test_decode_binary_value_accepts_all_encodings(value):
    assert decode_binary_value(value) == b"\xfb\xff"


@pytest.mark.parametrize("value", [None, "", "   ", "not base64!", 12, [256]])
def test_decode_binary_value_rejects_garbage(value):
    with pytest.raises(ValueError):
        decode_binary_value(value)


def test_normalize_credential_id():
    assert normalize_credential_id("+/8=") == "-_8"
    assert normalize_credential_id([1, 2, 3]) == "AQID"


def test_format_credential_id():
    assert format_credential_id("AQID") == "010203"
    assert format_credential_id("not base64!") == "not base64!"
