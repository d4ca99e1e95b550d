# Copyright (C) 2026 The merkle-anchor developers
#
# This file is part of merkle-anchor.
#
# It is subject to the license terms in the LICENSE file found in the top-level
# directory of this distribution.
#
# No part of merkle-anchor, including this file, may be copied,
# modified, propagated, or distributed except according to the terms contained
# in the LICENSE file.

import hashlib
import random
import unittest

from merkleanchor.errors import EmptyInputError
from merkleanchor.merkle import (LEFT, RIGHT, ProofStep, build_proof, build_tree, compute_root_from_proof,
                                 content_hash, leaf_hash, levels_from_hex, levels_to_hex, node_hash,
                                 proof_from_json, proof_to_json, verify_proof)


def make_leaves(n):
    return [leaf_hash(content_hash(b'file %d' % i)) for i in range(n)]


class Test_hashes(unittest.TestCase):
    def test_leaf_hash(self):
        """Leaf hash is domain separated from the content hash"""
        digest = hashlib.sha256(b'hello').digest()
        self.assertEqual(content_hash(b'hello'), digest)
        self.assertEqual(leaf_hash(digest), hashlib.sha256(b'leaf\x00' + digest).digest())
        self.assertNotEqual(leaf_hash(digest), digest)

    def test_leaf_hash_length(self):
        """Leaf hash only accepts 32-byte content hashes"""
        with self.assertRaises(ValueError):
            leaf_hash(b'\x00' * 31)
        with self.assertRaises(ValueError):
            leaf_hash(b'\x00' * 33)

    def test_node_hash(self):
        l = b'\x01' * 32
        r = b'\x02' * 32
        self.assertEqual(node_hash(l, r), hashlib.sha256(b'node\x00' + l + r).digest())
        self.assertNotEqual(node_hash(l, r), node_hash(r, l))


class Test_build_tree(unittest.TestCase):
    def test_empty(self):
        """Building a tree from nothing"""
        with self.assertRaises(EmptyInputError):
            build_tree([])

    def test_single_leaf(self):
        """A single leaf is its own root"""
        leaf = make_leaves(1)[0]
        tree = build_tree([leaf])
        self.assertEqual(tree.root, leaf)
        self.assertEqual(tree.levels, [[leaf]])

    def test_two_leaves(self):
        leaves = sorted(make_leaves(2), key=lambda h: h.hex())
        tree = build_tree(reversed(leaves))
        self.assertEqual(tree.levels[0], leaves)
        self.assertEqual(tree.root, node_hash(leaves[0], leaves[1]))

    def test_odd_count_duplicates_last(self):
        """Odd last node is paired with itself"""
        leaves = sorted(make_leaves(3), key=lambda h: h.hex())
        tree = build_tree(leaves)

        self.assertEqual(len(tree.levels), 3)
        self.assertEqual(tree.levels[1], [node_hash(leaves[0], leaves[1]),
                                          node_hash(leaves[2], leaves[2])])
        self.assertEqual(tree.root, node_hash(tree.levels[1][0], tree.levels[1][1]))

    def test_level_sizes(self):
        tree = build_tree(make_leaves(5))
        self.assertEqual([len(level) for level in tree.levels], [5, 3, 2, 1])

    def test_order_independence(self):
        """Root doesn't depend on the order leaves are given in"""
        leaves = make_leaves(11)
        expected = build_tree(leaves).root

        rng = random.Random(42)
        for _i in range(10):
            shuffled = list(leaves)
            rng.shuffle(shuffled)
            self.assertEqual(build_tree(shuffled).root, expected)

    def test_sorted_by_hex(self):
        leaves = make_leaves(8)
        tree = build_tree(leaves)
        self.assertEqual([h.hex() for h in tree.levels[0]], sorted(h.hex() for h in leaves))

    def test_bad_leaf_length(self):
        with self.assertRaises(ValueError):
            build_tree([b'\x00' * 32, b'\x00' * 20])


class Test_proofs(unittest.TestCase):
    def test_proofs_for_every_leaf(self):
        """Every leaf's proof folds back up to the root"""
        for n in range(1, 10):
            tree = build_tree(make_leaves(n))
            for i, leaf in enumerate(tree.levels[0]):
                proof = build_proof(tree.levels, i)
                self.assertEqual(len(proof), len(tree.levels) - 1)
                self.assertTrue(verify_proof(leaf, proof, tree.root))

    def test_single_leaf_proof_is_empty(self):
        tree = build_tree(make_leaves(1))
        self.assertEqual(build_proof(tree.levels, 0), [])
        self.assertTrue(verify_proof(tree.root, [], tree.root))

    def test_positions(self):
        leaves = sorted(make_leaves(2), key=lambda h: h.hex())
        tree = build_tree(leaves)
        self.assertEqual(build_proof(tree.levels, 0), [ProofStep(RIGHT, leaves[1])])
        self.assertEqual(build_proof(tree.levels, 1), [ProofStep(LEFT, leaves[0])])

    def test_odd_last_leaf_is_own_sibling(self):
        tree = build_tree(make_leaves(3))
        proof = build_proof(tree.levels, 2)
        self.assertEqual(proof[0], ProofStep(RIGHT, tree.levels[0][2]))

    def test_wrong_leaf(self):
        tree = build_tree(make_leaves(4))
        proof = build_proof(tree.levels, 0)
        self.assertFalse(verify_proof(tree.levels[0][1], proof, tree.root))

    def test_out_of_range(self):
        tree = build_tree(make_leaves(4))
        with self.assertRaises(IndexError):
            build_proof(tree.levels, 4)
        with self.assertRaises(IndexError):
            build_proof(tree.levels, -1)

    def test_bad_position(self):
        with self.assertRaises(ValueError):
            compute_root_from_proof(b'\x00' * 32, [ProofStep('up', b'\x00' * 32)])

    def test_hex_sibling(self):
        tree = build_tree(make_leaves(2))
        proof = [ProofStep(step.position, step.hash.hex()) for step in build_proof(tree.levels, 0)]
        self.assertEqual(compute_root_from_proof(tree.levels[0][0], proof), tree.root)

    def test_json(self):
        tree = build_tree(make_leaves(6))
        proof = build_proof(tree.levels, 3)
        self.assertEqual(proof_from_json(proof_to_json(proof)), proof)
        self.assertEqual(levels_from_hex(levels_to_hex(tree.levels)), tree.levels)


if __name__ == '__main__':
    unittest.main()
