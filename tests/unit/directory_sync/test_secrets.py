from app.shared.core.security import (
    SecretsCodec,
    constant_time_equals,
    generate_secret_blind_index,
)


def test_codec_round_trip():
    codec = SecretsCodec()
    ciphertext = codec.encrypt("client-secret")

    assert ciphertext != "client-secret"
    assert codec.decrypt(ciphertext) == "client-secret"


def test_undecryptable_values_come_back_empty():
    codec = SecretsCodec()

    assert codec.decrypt(None) == ""
    assert codec.decrypt("") == ""
    assert codec.decrypt("not-a-fernet-token") == ""
    assert SecretsCodec(primary_key="another-key").decrypt(codec.encrypt("x")) == ""


def test_rotated_key_still_decrypts_old_values():
    old = SecretsCodec(primary_key="old-master-key")
    rotated = SecretsCodec(primary_key="new-master-key", fallback_keys=("old-master-key",))

    assert rotated.decrypt(old.encrypt("client-secret")) == "client-secret"


def test_blind_index_is_deterministic_and_case_sensitive():
    first = generate_secret_blind_index("Token-ABC")

    assert first is not None
    assert first == generate_secret_blind_index("Token-ABC")
    assert first != generate_secret_blind_index("token-abc")
    assert generate_secret_blind_index(None) is None
    assert generate_secret_blind_index("   ") is None


def test_constant_time_equals():
    assert constant_time_equals("abc", "abc")
    assert not constant_time_equals("abc", "abd")
    assert not constant_time_equals("abc", "abcd")
