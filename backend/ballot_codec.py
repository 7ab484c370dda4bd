import base64
import binascii
import hashlib
import json
import os
from dataclasses import dataclass
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from errors import DecryptionFailed
from key_manager import generate_keypair, load_private_key, load_public_key, public_bytes

ALGORITHM_VERSION = "x25519-hkdf-sha256-aes256gcm"
NONCE_LENGTH = 12
# upper bound on a stored ballot ciphertext, GCM tag included
MAX_CIPHERTEXT_LENGTH = 512 * 1024

# Hybrid encryption (ECIES style):
# fresh ephemeral x25519 key per ballot + election public key -> shared secret
# shared secret -> HKDF -> AES-256-GCM key
# ballot json encrypted with AES-GCM, ephemeral public key travels with it
# Public -> encrypt, Private -> decrypt


@dataclass(frozen=True)
class EncryptedBallot:
    version: str
    nonce: bytes
    ephemeral_public_key: bytes
    ciphertext: bytes

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "nonce": _b64(self.nonce),
            "ephemeral_public_key": _b64(self.ephemeral_public_key),
            "ciphertext": _b64(self.ciphertext),
        }

    @classmethod
    def from_dict(cls, doc) -> "EncryptedBallot":
        if not isinstance(doc, dict):
            raise DecryptionFailed("encrypted ballot must be an object")
        try:
            return cls(
                version=str(doc["version"]),
                nonce=base64.b64decode(doc["nonce"], validate=True),
                ephemeral_public_key=base64.b64decode(doc["ephemeral_public_key"], validate=True),
                ciphertext=base64.b64decode(doc["ciphertext"], validate=True),
            )
        except KeyError as e:
            raise DecryptionFailed(f"encrypted ballot missing field {e}") from e
        except (TypeError, ValueError, binascii.Error) as e:
            raise DecryptionFailed(f"encrypted ballot field is not base64: {e}") from e

    def ciphertext_digest(self) -> str:
        # receipt handed to the voter; sha256 over the stored ciphertext
        return hashlib.sha256(self.ciphertext).hexdigest()


def _b64(b: bytes) -> str:
    return base64.b64encode(b).decode('utf-8')


def _derive_key(shared_secret: bytes, ephemeral_public: bytes, recipient_public: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=ALGORITHM_VERSION.encode('utf-8') + ephemeral_public + recipient_public,
    )
    return hkdf.derive(shared_secret)


def encode_ballot(plaintext_ballot: dict) -> bytes:
    return json.dumps(plaintext_ballot, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode('utf-8')


def encrypt(plaintext_ballot: dict, public_key: bytes) -> EncryptedBallot:
    return encrypt_bytes(encode_ballot(plaintext_ballot), public_key)


def encrypt_bytes(plaintext: bytes, public_key: bytes) -> EncryptedBallot:
    recipient = load_public_key(public_key)
    ephemeral_public, ephemeral_private = generate_keypair()
    shared = load_private_key(ephemeral_private).exchange(recipient)
    aes_key = _derive_key(shared, ephemeral_public, public_key)
    nonce = os.urandom(NONCE_LENGTH)
    # version tag is bound as associated data
    ct = AESGCM(aes_key).encrypt(nonce, plaintext, ALGORITHM_VERSION.encode('utf-8'))
    return EncryptedBallot(
        version=ALGORITHM_VERSION,
        nonce=nonce,
        ephemeral_public_key=ephemeral_public,
        ciphertext=ct,
    )


def decrypt(encrypted_ballot: EncryptedBallot, private_key: bytes) -> dict:
    if encrypted_ballot.version != ALGORITHM_VERSION:
        raise DecryptionFailed(f"unsupported ballot version: {encrypted_ballot.version}")
    if len(encrypted_ballot.nonce) != NONCE_LENGTH:
        raise DecryptionFailed("nonce has wrong length")
    if len(encrypted_ballot.ciphertext) > MAX_CIPHERTEXT_LENGTH:
        raise DecryptionFailed("ciphertext too large")
    try:
        priv = load_private_key(private_key)
        ephemeral = load_public_key(encrypted_ballot.ephemeral_public_key)
        shared = priv.exchange(ephemeral)
    except ValueError as e:
        raise DecryptionFailed(f"bad key material: {e}") from e
    recipient_public = public_bytes(priv.public_key())
    aes_key = _derive_key(shared, encrypted_ballot.ephemeral_public_key, recipient_public)
    try:
        pt = AESGCM(aes_key).decrypt(encrypted_ballot.nonce, encrypted_ballot.ciphertext, ALGORITHM_VERSION.encode('utf-8'))
    except InvalidTag as e:
        raise DecryptionFailed("ciphertext failed authentication") from e
    try:
        ballot = json.loads(pt.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise DecryptionFailed(f"decrypted payload is not json: {e}") from e
    if not isinstance(ballot, dict):
        raise DecryptionFailed("decrypted payload is not a ballot object")
    return ballot
