"""Tests for identity key generation and validation."""

import base58
import pytest
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from aerowhisper.kdf import derive_session_key
from aerowhisper.keys import (
    decode_public_key,
    derive_shared_secret,
    ed25519_public_to_x25519,
    ed25519_secret_to_x25519,
    fingerprint,
    generate_identity,
    keypair_from_secret_key,
    parse_challenge,
    sign_challenge,
    validate_keypair,
    verify_challenge,
)
from aerowhisper.types import ValidationError
from .test_vectors import RFC8032_PUBLIC_KEY_HEX, RFC8032_SEED_HEX


class TestGenerateIdentity:
    """Test Ed25519 identity generation."""

    def test_key_sizes(self) -> None:
        """Generated keys have the NaCl sizes."""
        keypair = generate_identity()

        assert len(keypair.public_key) == 32
        assert len(keypair.secret_key) == 64

    def test_embedded_public_key(self) -> None:
        """The secret key's second half is the public key."""
        for _ in range(5):
            keypair = generate_identity()
            assert keypair.secret_key[32:] == keypair.public_key

    def test_public_key_encoded_is_base58(self) -> None:
        """The encoded public key decodes back to the raw key."""
        keypair = generate_identity()

        assert base58.b58decode(keypair.public_key_encoded) == keypair.public_key
        assert decode_public_key(keypair.public_key_encoded) == keypair.public_key

    def test_fresh_keys_each_time(self) -> None:
        """Two generations never collide."""
        assert generate_identity().public_key != generate_identity().public_key

    def test_repr_hides_secret(self) -> None:
        """The secret key never appears in repr."""
        keypair = generate_identity()
        assert keypair.secret_key.hex() not in repr(keypair)
        assert "secret_key" not in repr(keypair)


class TestKeypairFromSecretKey:
    """Test rebuilding identities from a 64-byte secret key."""

    def test_known_vector(self) -> None:
        """RFC 8032 seed rebuilds the expected public key."""
        seed = bytes.fromhex(RFC8032_SEED_HEX)
        public_key = bytes.fromhex(RFC8032_PUBLIC_KEY_HEX)

        keypair = keypair_from_secret_key(seed + public_key)

        assert keypair.public_key == public_key
        assert keypair.public_key_encoded == base58.b58encode(public_key).decode()

    def test_invalid_length(self) -> None:
        """Secret keys that are not 64 bytes are rejected."""
        with pytest.raises(ValidationError, match="64 bytes"):
            keypair_from_secret_key(b"x" * 32)


class TestValidateKeypair:
    """Test the binding between public and secret halves."""

    def test_valid_keypair(self) -> None:
        """A generated keypair validates."""
        keypair = generate_identity()
        validate_keypair(keypair.public_key, keypair.secret_key)

    @pytest.mark.parametrize("length", [0, 31, 33, 64])
    def test_public_key_length(self, length: int) -> None:
        """Public keys must be 32 bytes."""
        keypair = generate_identity()
        with pytest.raises(ValidationError, match="public key size"):
            validate_keypair(b"\x01" * length, keypair.secret_key)

    @pytest.mark.parametrize("length", [0, 32, 63, 65])
    def test_secret_key_length(self, length: int) -> None:
        """Secret keys must be 64 bytes."""
        keypair = generate_identity()
        with pytest.raises(ValidationError, match="secret key size"):
            validate_keypair(keypair.public_key, b"\x01" * length)

    def test_embedded_mismatch(self) -> None:
        """A public key that differs from the embedded half is rejected."""
        first = generate_identity()
        second = generate_identity()

        with pytest.raises(ValidationError, match="embedded"):
            validate_keypair(second.public_key, first.secret_key)

    def test_seed_mismatch(self) -> None:
        """An embedded half that the seed doesn't derive is rejected."""
        first = generate_identity()
        second = generate_identity()
        spliced = first.secret_key[:32] + second.public_key

        with pytest.raises(ValidationError, match="derivable"):
            validate_keypair(second.public_key, spliced)

    def test_missing_key(self) -> None:
        """None for either half is rejected."""
        with pytest.raises(ValidationError, match="missing"):
            validate_keypair(None, b"")


class TestChallengeSignatures:
    """Test challenge-response signing."""

    def test_sign_and_verify(self) -> None:
        """A signature over a challenge verifies with the public key."""
        keypair = generate_identity()
        challenge = b"server-challenge-1234"

        signature = sign_challenge(challenge, keypair.secret_key)

        assert len(base58.b58decode(signature)) == 64
        assert verify_challenge(challenge, signature, keypair.public_key_encoded)

    def test_wrong_challenge(self) -> None:
        """A signature does not verify over a different challenge."""
        keypair = generate_identity()
        signature = sign_challenge(b"challenge-a", keypair.secret_key)

        assert not verify_challenge(b"challenge-b", signature, keypair.public_key_encoded)

    def test_wrong_key(self) -> None:
        """A signature does not verify under another identity."""
        signer = generate_identity()
        other = generate_identity()
        signature = sign_challenge(b"challenge", signer.secret_key)

        assert not verify_challenge(b"challenge", signature, other.public_key_encoded)

    def test_invalid_secret_key(self) -> None:
        """Signing needs a 64-byte secret key."""
        with pytest.raises(ValidationError, match="64 bytes"):
            sign_challenge(b"challenge", b"x" * 32)

    def test_malformed_signature(self) -> None:
        """Signatures that are not base58 or not 64 bytes are rejected."""
        keypair = generate_identity()

        with pytest.raises(ValidationError):
            verify_challenge(b"challenge", "0OIl", keypair.public_key_encoded)

        with pytest.raises(ValidationError, match="64 bytes"):
            verify_challenge(b"challenge", base58.b58encode(b"short").decode(), keypair.public_key_encoded)


class TestFingerprint:
    """Test public key fingerprints."""

    def test_format(self) -> None:
        """Fingerprints are four groups of four hex characters."""
        result = fingerprint(generate_identity().public_key)
        groups = result.split(" ")

        assert len(groups) == 4
        assert all(len(g) == 4 for g in groups)

    def test_deterministic(self) -> None:
        """The same key always has the same fingerprint."""
        public_key = bytes.fromhex(RFC8032_PUBLIC_KEY_HEX)
        assert fingerprint(public_key) == fingerprint(public_key)


class TestSharedSecret:
    """Test ECDH between Ed25519 identities."""

    def test_both_sides_agree(self) -> None:
        """Each side derives the same 32-byte secret."""
        alice = generate_identity()
        bob = generate_identity()

        alice_view = derive_shared_secret(alice.secret_key, bob.public_key)
        bob_view = derive_shared_secret(bob.secret_key, alice.public_key)

        assert alice_view == bob_view
        assert len(alice_view) == 32

    def test_different_peers_differ(self) -> None:
        """Secrets with different peers are different."""
        alice = generate_identity()

        first = derive_shared_secret(alice.secret_key, generate_identity().public_key)
        second = derive_shared_secret(alice.secret_key, generate_identity().public_key)

        assert first != second

    def test_conversions_are_consistent(self) -> None:
        """The converted scalar's X25519 public key is the mapped Ed25519 key."""
        seed = bytes.fromhex(RFC8032_SEED_HEX)
        public_key = bytes.fromhex(RFC8032_PUBLIC_KEY_HEX)

        scalar = ed25519_secret_to_x25519(seed + public_key)
        x25519_public = (
            X25519PrivateKey.from_private_bytes(bytes(scalar))
            .public_key()
            .public_bytes(Encoding.Raw, PublicFormat.Raw)
        )

        assert x25519_public == ed25519_public_to_x25519(public_key)

    def test_scalar_is_clamped(self) -> None:
        """The converted scalar carries X25519 clamping."""
        scalar = ed25519_secret_to_x25519(generate_identity().secret_key)

        assert scalar[0] & 7 == 0
        assert scalar[31] & 0x80 == 0
        assert scalar[31] & 0x40

    def test_feeds_session_key(self) -> None:
        """The shared secret is accepted by session key derivation."""
        alice = generate_identity()
        bob = generate_identity()
        shared = derive_shared_secret(alice.secret_key, bob.public_key)

        assert len(derive_session_key(shared, b"salt").key) == 32

    def test_invalid_secret_key(self) -> None:
        """The secret key must be 64 bytes."""
        with pytest.raises(ValidationError, match="64 bytes"):
            derive_shared_secret(b"x" * 32, generate_identity().public_key)

    def test_invalid_peer_key_length(self) -> None:
        """The peer key must be 32 bytes."""
        with pytest.raises(ValidationError, match="public key size"):
            derive_shared_secret(generate_identity().secret_key, b"x" * 31)

    @pytest.mark.parametrize("y", [1, 2**255 - 19, 2**255 - 1])
    def test_unmappable_peer_key(self, y: int) -> None:
        """Edwards points with no Montgomery form are rejected."""
        with pytest.raises(ValidationError):
            ed25519_public_to_x25519(y.to_bytes(32, "little"))

    def test_low_order_peer_key(self) -> None:
        """A peer key that maps to a low-order point is rejected."""
        low_order = (2**255 - 20).to_bytes(32, "little")

        with pytest.raises(ValidationError):
            derive_shared_secret(generate_identity().secret_key, low_order)


class TestParseChallenge:
    """Test challenge normalisation."""

    def test_int_array(self) -> None:
        """Arrays of ints become bytes."""
        assert parse_challenge([1, 2, 255]) == b"\x01\x02\xff"

    def test_bytes_pass_through(self) -> None:
        """Bytes are returned unchanged."""
        assert parse_challenge(bytearray(b"abc")) == b"abc"

    def test_base58_string(self) -> None:
        """Base58 strings are decoded."""
        raw = bytes(range(1, 33))
        assert parse_challenge(base58.b58encode(raw).decode()) == raw

    def test_base64_string(self) -> None:
        """Strings that aren't base58 are read as base64."""
        assert parse_challenge("aGVsbG8rd29ybGQ=") == b"hello+world"

    def test_plain_string(self) -> None:
        """Anything else falls back to UTF-8 bytes."""
        assert parse_challenge("not/base-anything!") == b"not/base-anything!"

    def test_non_ascii_string(self) -> None:
        """Non-ASCII text is neither encoding and is used as UTF-8."""
        assert parse_challenge("défi") == "défi".encode("utf-8")

    @pytest.mark.parametrize("value", [[256], [-1], [True], ["a"]])
    def test_bad_array(self, value) -> None:
        """Array items must be byte values."""
        with pytest.raises(ValidationError):
            parse_challenge(value)

    @pytest.mark.parametrize("value", [None, 42, {"challenge": []}])
    def test_unsupported_type(self, value) -> None:
        """Other types are rejected."""
        with pytest.raises(ValidationError, match="challenge"):
            parse_challenge(value)

    def test_parsed_challenge_signs(self) -> None:
        """A parsed array challenge can be signed and verified."""
        keypair = generate_identity()
        challenge = parse_challenge(list(b"server-nonce"))

        signature = sign_challenge(challenge, keypair.secret_key)

        assert verify_challenge(challenge, signature, keypair.public_key_encoded)
