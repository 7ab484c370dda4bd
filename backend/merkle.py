"""
Merkle eligibility tree.

Leaves are sha256(address bytes). Parents are sha256(min(a, b) || max(a, b)),
so a proof is just the list of siblings from leaf to root and the verifier
never needs to know left/right positions. When a level has an odd number of
nodes the last one is promoted to the next level unchanged.
"""

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import List

from errors import EmptyWhitelist, InvalidProof, LeafNotFound

HASH_LENGTH = 32


def _sha256(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()


def hash_leaf(address_bytes: bytes) -> bytes:
    return _sha256(address_bytes)


def hash_pair(a: bytes, b: bytes) -> bytes:
    if a <= b:
        return _sha256(a + b)
    return _sha256(b + a)


@dataclass(frozen=True)
class MerkleTreeSnapshot:
    root: bytes
    leaves: List[bytes] = field(default_factory=list)
    layers: List[List[bytes]] = field(default_factory=list)

    @property
    def root_hex(self) -> str:
        return self.root.hex()

    def to_dict(self) -> dict:
        return {
            "root": self.root.hex(),
            "leaves": [l.hex() for l in self.leaves],
            "layers": [[n.hex() for n in layer] for layer in self.layers],
        }

    @classmethod
    def from_dict(cls, doc: dict) -> "MerkleTreeSnapshot":
        leaves = [bytes.fromhex(l) for l in doc["leaves"]]
        layers = doc.get("layers")
        if not layers:
            # layers were not persisted; rebuild them from the leaves
            return build_tree(leaves)
        snapshot = cls(
            root=bytes.fromhex(doc["root"]),
            leaves=leaves,
            layers=[[bytes.fromhex(n) for n in layer] for layer in layers],
        )
        if snapshot.layers[-1] != [snapshot.root] or snapshot.layers[0] != snapshot.leaves:
            raise ValueError("stored merkle snapshot is inconsistent")
        return snapshot


def build_tree(leaves) -> MerkleTreeSnapshot:
    level = [bytes(l) for l in leaves]
    if not level:
        raise EmptyWhitelist("cannot build a merkle tree from an empty whitelist")
    for l in level:
        if len(l) != HASH_LENGTH:
            raise ValueError(f"leaf must be {HASH_LENGTH} bytes, got {len(l)}")

    layers = [level]
    while len(level) > 1:
        nxt = []
        for i in range(0, len(level) - 1, 2):
            nxt.append(hash_pair(level[i], level[i + 1]))
        if len(level) % 2 == 1:
            nxt.append(level[-1])
        layers.append(nxt)
        level = nxt
    return MerkleTreeSnapshot(root=level[0], leaves=list(layers[0]), layers=layers)


def get_proof(tree: MerkleTreeSnapshot, leaf: bytes) -> List[bytes]:
    try:
        index = tree.leaves.index(leaf)
    except ValueError:
        raise LeafNotFound(f"leaf {leaf.hex()} is not in the tree") from None

    proof = []
    for layer in tree.layers[:-1]:
        sibling = index ^ 1
        # promoted odd node has no sibling on this level
        if sibling < len(layer):
            proof.append(layer[sibling])
        index //= 2
    return proof


def compute_root(leaf: bytes, proof) -> bytes:
    computed = leaf
    for sibling in proof:
        computed = hash_pair(computed, sibling)
    return computed


def verify_proof(leaf: bytes, proof, expected_root: bytes) -> bool:
    if len(leaf) != HASH_LENGTH or len(expected_root) != HASH_LENGTH:
        return False
    if any(len(p) != HASH_LENGTH for p in proof):
        return False
    return hmac.compare_digest(compute_root(leaf, proof), expected_root)


def require_valid_proof(leaf: bytes, proof, expected_root: bytes) -> None:
    if not verify_proof(leaf, proof, expected_root):
        raise InvalidProof("merkle proof does not reconstruct the election root")


def proof_to_hex(proof) -> List[str]:
    return [p.hex() for p in proof]


def proof_from_hex(items) -> List[bytes]:
    if not isinstance(items, (list, tuple)):
        raise InvalidProof("merkle proof must be a list of hex strings")
    try:
        return [bytes.fromhex(s) for s in items]
    except (TypeError, ValueError) as e:
        raise InvalidProof(f"malformed merkle proof: {e}") from e
