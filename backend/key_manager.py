import os
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey

from errors import EntropyFailure

KEY_LENGTH = 32

# X25519 keypair per election
# public key -> voters encrypt ballots with it
# private key -> stays on the backend until the election is closed
def generate_keypair():
    try:
        seed = os.urandom(KEY_LENGTH)
    except (OSError, NotImplementedError) as e:
        raise EntropyFailure(f"secure random source unavailable: {e}") from e
    private_key = X25519PrivateKey.from_private_bytes(seed)
    return public_bytes(private_key.public_key()), private_bytes(private_key)


def private_bytes(private_key: X25519PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )


def public_bytes(public_key: X25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def load_private_key(raw: bytes) -> X25519PrivateKey:
    return X25519PrivateKey.from_private_bytes(raw)


def load_public_key(raw: bytes) -> X25519PublicKey:
    return X25519PublicKey.from_public_bytes(raw)


# private key at rest: PKCS8 PEM locked with the server passphrase
def seal_private_key(raw: bytes, passphrase: bytes = None) -> str:
    if passphrase:
        enc_algorithm = serialization.BestAvailableEncryption(passphrase)
    else:
        enc_algorithm = serialization.NoEncryption()
    pem = load_private_key(raw).private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=enc_algorithm
    )
    return pem.decode('utf-8')


def open_private_key(sealed_pem: str, passphrase: bytes = None) -> bytes:
    key = serialization.load_pem_private_key(sealed_pem.encode('utf-8'), password=passphrase)
    if not isinstance(key, X25519PrivateKey):
        raise ValueError("sealed key is not an X25519 private key")
    return private_bytes(key)
