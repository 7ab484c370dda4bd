import hashlib
import os

import pytest

from conftest import make_address
from errors import EmptyWhitelist, InvalidProof, LeafNotFound
from merkle import (
    MerkleTreeSnapshot, build_tree, get_proof, hash_leaf, hash_pair, proof_from_hex, proof_to_hex,
    require_valid_proof, verify_proof
)
from validators import decode_address


def _sha(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()


def _leaves(n):
    return [hash_leaf(decode_address(make_address(i))) for i in range(n)]


@pytest.mark.parametrize("n", [1, 2, 3, 4, 5, 7, 8, 9, 16, 33])
def test_every_whitelisted_leaf_verifies(n):
    leaves = _leaves(n)
    tree = build_tree(leaves)
    for leaf in leaves:
        assert verify_proof(leaf, get_proof(tree, leaf), tree.root)


def test_root_is_deterministic():
    leaves = _leaves(6)
    assert build_tree(leaves).root == build_tree(list(leaves)).root


def test_hand_built_four_leaf_tree():
    l1, l2, l3, l4 = (_sha(x) for x in (b"leaf one", b"leaf two", b"leaf three", b"leaf four"))
    h12 = _sha(min(l1, l2) + max(l1, l2))
    h34 = _sha(min(l3, l4) + max(l3, l4))
    root = _sha(min(h12, h34) + max(h12, h34))

    tree = build_tree([l1, l2, l3, l4])
    assert tree.root == root
    assert get_proof(tree, l1) == [l2, h34]
    assert verify_proof(l1, [l2, h34], root)


def test_odd_node_is_promoted_unchanged():
    l0, l1, l2 = _leaves(3)
    tree = build_tree([l0, l1, l2])
    assert tree.layers[1] == [hash_pair(l0, l1), l2]
    assert tree.root == hash_pair(hash_pair(l0, l1), l2)
    assert get_proof(tree, l2) == [hash_pair(l0, l1)]


def test_single_leaf_tree_has_empty_proof():
    (leaf,) = _leaves(1)
    tree = build_tree([leaf])
    assert tree.root == leaf
    assert get_proof(tree, leaf) == []
    assert verify_proof(leaf, [], tree.root)


def test_empty_whitelist_rejected():
    with pytest.raises(EmptyWhitelist):
        build_tree([])


def test_unlisted_address_has_no_proof():
    tree = build_tree(_leaves(4))
    outsider = hash_leaf(decode_address(make_address(50)))
    with pytest.raises(LeafNotFound):
        get_proof(tree, outsider)


def test_forged_proofs_fail():
    leaves = _leaves(4)
    tree = build_tree(leaves)
    outsider = hash_leaf(decode_address(make_address(50)))

    # someone else's proof
    assert not verify_proof(outsider, get_proof(tree, leaves[0]), tree.root)
    # random siblings
    for _ in range(20):
        assert not verify_proof(outsider, [os.urandom(32), os.urandom(32)], tree.root)
    with pytest.raises(InvalidProof):
        require_valid_proof(outsider, get_proof(tree, leaves[1]), tree.root)


def test_tampered_sibling_fails():
    leaves = _leaves(4)
    tree = build_tree(leaves)
    proof = get_proof(tree, leaves[0])
    bad = bytearray(proof[0])
    bad[0] ^= 0xFF
    assert not verify_proof(leaves[0], [bytes(bad)] + proof[1:], tree.root)


def test_wrong_length_elements_fail():
    leaves = _leaves(2)
    tree = build_tree(leaves)
    assert not verify_proof(leaves[0], [leaves[1][:31]], tree.root)
    assert not verify_proof(leaves[0], [leaves[1]], tree.root[:16])


def test_snapshot_round_trips_through_storage_form():
    tree = build_tree(_leaves(5))
    doc = tree.to_dict()
    assert doc["root"] == tree.root_hex
    assert MerkleTreeSnapshot.from_dict(doc) == tree

    # layers missing: rebuilt from leaves
    rebuilt = MerkleTreeSnapshot.from_dict({"root": doc["root"], "leaves": doc["leaves"]})
    assert rebuilt == tree


def test_inconsistent_snapshot_rejected():
    doc = build_tree(_leaves(4)).to_dict()
    doc["root"] = "00" * 32
    with pytest.raises(ValueError):
        MerkleTreeSnapshot.from_dict(doc)


def test_proof_hex_helpers():
    leaves = _leaves(3)
    tree = build_tree(leaves)
    proof = get_proof(tree, leaves[0])
    assert proof_from_hex(proof_to_hex(proof)) == proof
    with pytest.raises(InvalidProof):
        proof_from_hex(["not-hex"])
    with pytest.raises(InvalidProof):
        proof_from_hex("abcd")
