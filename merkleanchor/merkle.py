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

"""Canonical Merkle tree over file contents

contentHash = SHA256(fileBytes)
leafHash    = SHA256("leaf\\0" + contentHash)
nodeHash    = SHA256("node\\0" + left + right)

Leaves are ordered by the hex of their leaf hash, and a level with an odd
number of nodes pairs its last node with itself. File names and paths never
enter any hash, so renaming or moving a file leaves the root unchanged.
"""

import hashlib

from collections import namedtuple

from bitcoin.core import b2x, x

from merkleanchor.errors import EmptyInputError

LEAF_TAG = b'leaf\x00'
NODE_TAG = b'node\x00'

HASH_LENGTH = 32

LEFT = 'left'
RIGHT = 'right'

MerkleTree = namedtuple('MerkleTree', ['root', 'levels'])
ProofStep = namedtuple('ProofStep', ['position', 'hash'])


def content_hash(data):
    """SHA256 of the raw file bytes"""
    return hashlib.sha256(data).digest()


def leaf_hash(content_digest):
    if len(content_digest) != HASH_LENGTH:
        raise ValueError('content hash must be %d bytes; got %d' % (HASH_LENGTH, len(content_digest)))
    return hashlib.sha256(LEAF_TAG + content_digest).digest()


def node_hash(left, right):
    return hashlib.sha256(NODE_TAG + left + right).digest()


def sort_leaf_hashes(leaf_hashes):
    """Canonical leaf order: ascending by hex representation"""
    return sorted(leaf_hashes, key=b2x)


def build_tree(leaf_hashes):
    """Build a Merkle tree

    Returns a MerkleTree whose levels[0] is the sorted leaf hashes and whose
    last level holds only the root. A single leaf is its own root.

    Raises EmptyInputError if there are no leaves.
    """
    leaves = sort_leaf_hashes(bytes(h) for h in leaf_hashes)
    if not leaves:
        raise EmptyInputError('Cannot build Merkle tree with 0 leaves')

    for leaf in leaves:
        if len(leaf) != HASH_LENGTH:
            raise ValueError('leaf hash must be %d bytes; got %d' % (HASH_LENGTH, len(leaf)))

    levels = [leaves]
    while len(levels[-1]) > 1:
        prev = levels[-1]
        next_level = []
        for i in range(0, len(prev), 2):
            left = prev[i]
            right = prev[i + 1] if i + 1 < len(prev) else left
            next_level.append(node_hash(left, right))
        levels.append(next_level)

    return MerkleTree(levels[-1][0], levels)


def build_proof(levels, leaf_index):
    """Build an inclusion proof for the leaf at leaf_index of levels[0]

    Each step is the sibling hash and which side of the running hash it goes
    on. The root level contributes no step.
    """
    if not 0 <= leaf_index < len(levels[0]):
        raise IndexError('leaf index %d out of range for %d leaves' % (leaf_index, len(levels[0])))

    proof = []
    idx = leaf_index
    for nodes in levels[:-1]:
        sibling_idx = idx ^ 1
        # duplicate-last rule
        sibling = nodes[sibling_idx] if sibling_idx < len(nodes) else nodes[idx]
        position = LEFT if idx & 1 else RIGHT
        proof.append(ProofStep(position, sibling))
        idx //= 2

    return proof


def compute_root_from_proof(leaf, proof):
    running = leaf
    for step in proof:
        sibling = step.hash
        if isinstance(sibling, str):
            sibling = x(sibling)

        if step.position == LEFT:
            running = node_hash(sibling, running)
        elif step.position == RIGHT:
            running = node_hash(running, sibling)
        else:
            raise ValueError('Invalid proof step position %r' % step.position)
    return running


def verify_proof(leaf, proof, expected_root):
    """True if proof folds leaf up to expected_root"""
    return compute_root_from_proof(leaf, proof) == expected_root


def levels_to_hex(levels):
    return [[b2x(h) for h in level] for level in levels]


def levels_from_hex(hex_levels):
    return [[x(h) for h in level] for level in hex_levels]


def proof_to_json(proof):
    return [{'position': step.position, 'hash': b2x(step.hash)} for step in proof]


def proof_from_json(steps):
    return [ProofStep(step['position'], x(step['hash'])) for step in steps]
