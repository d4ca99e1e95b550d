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

"""Commitment artifact: the JSON record of a Merkle tree over a set of files

Schema merkle-bytes-tree@1. Leaves are listed in canonical order (leaf hash
hex ascending) and carry their path as metadata only. The artifact is never
modified after it is generated; verification recomputes and compares.
"""

import binascii
import json
import logging

from collections import namedtuple
from datetime import datetime, timezone

from bitcoin.core import b2x, x

from merkleanchor.errors import ValidationError
from merkleanchor.merkle import (build_tree, build_proof, compute_root_from_proof,
                                 content_hash, leaf_hash, levels_from_hex, levels_to_hex)

SCHEMA = 'merkle-bytes-tree@1'
SCHEMA_PREFIX = 'merkle-'

CANONICALIZATION = {
    'contentHash': 'SHA256(fileBytes)',
    'leaf': 'SHA256("leaf\\0" + contentHashBytes)',
    'node': 'SHA256("node\\0" + left + right)',
    'ordering': 'leafHash hex asc',
    'oddRule': 'duplicate last',
}

# Recorded in the artifact; applying it is the job of whatever enumerates the
# files.
DEFAULT_FOLDER_POLICY = {
    'includeHidden': False,
    'ignoreJunk': True,
    'ignoreNames': ['.DS_Store', 'Thumbs.db', 'desktop.ini'],
    'ignorePrefixes': ['._'],
    'ignorePathPrefixes': ['.git/', 'node_modules/', '.Spotlight-V100/', '.Trashes/'],
}

FILE_SIZE_UNITS = ['B', 'KB', 'MB', 'GB', 'TB']

FolderResult = namedtuple('FolderResult', ['ok', 'expected', 'computed', 'file_count', 'artifact_file_count'])
FileResult = namedtuple('FileResult', ['ok', 'reason', 'proof'])


def is_hex256(value):
    if not isinstance(value, str):
        return False
    if value.startswith('0x') or value.startswith('0X'):
        value = value[2:]
    if len(value) != 64:
        return False
    try:
        binascii.unhexlify(value)
    except (binascii.Error, ValueError):
        return False
    return True


def normalize_rel_path(path):
    path = str(path).replace('\\', '/')
    while path.startswith('./'):
        path = path[2:]
    while '//' in path:
        path = path.replace('//', '/')
    return path


def human_bytes(n):
    units = iter(FILE_SIZE_UNITS)
    unit = next(units)
    value = float(n)
    for next_unit in units:
        if value < 1024:
            break
        value /= 1024
        unit = next_unit

    if unit == 'B':
        return '%d B' % value
    return '%.2f %s' % (value, unit)


def make_leaf(path, data):
    """Leaf record for one file"""
    digest = content_hash(data)
    return {'path': normalize_rel_path(path),
            'size': len(data),
            'contentHash': b2x(digest),
            'leafHash': b2x(leaf_hash(digest))}


def build_commitment(files, folder_policy=None, generated_at=None):
    """Build a commitment artifact

    files - iterable of (path, bytes) pairs

    Raises EmptyInputError if files is empty.
    """
    leaves = [make_leaf(path, data) for path, data in files]
    leaves.sort(key=lambda leaf: leaf['leafHash'])

    tree = build_tree(x(leaf['leafHash']) for leaf in leaves)

    total_bytes = sum(leaf['size'] for leaf in leaves)
    if generated_at is None:
        generated_at = datetime.now(timezone.utc)

    logging.debug('Built Merkle tree over %d file(s), %d level(s), root %s' %
                  (len(leaves), len(tree.levels), b2x(tree.root)))

    return {'schema': SCHEMA,
            'generatedAt': generated_at.isoformat(),
            'algorithm': 'SHA-256',
            'folderPolicy': dict(folder_policy if folder_policy is not None else DEFAULT_FOLDER_POLICY),
            'canonicalization': dict(CANONICALIZATION),
            'summary': {'fileCount': len(leaves),
                        'totalBytes': total_bytes,
                        'totalBytesHuman': human_bytes(total_bytes)},
            'root': b2x(tree.root),
            'tree': {'levels': levels_to_hex(tree.levels)},
            'leaves': leaves}


def dumps(artifact):
    return json.dumps(artifact, indent=2) + '\n'


def loads(text):
    """Parse and shape-check an artifact

    Raises ValidationError on anything that is not a usable artifact.
    """
    try:
        artifact = json.loads(text)
    except ValueError as exp:
        raise ValidationError('Invalid JSON: %s' % exp)

    check_shape(artifact)
    if not artifact.get('folderPolicy'):
        artifact['folderPolicy'] = dict(DEFAULT_FOLDER_POLICY)
    return artifact


def check_shape(artifact):
    if not isinstance(artifact, dict):
        raise ValidationError('Artifact must be a JSON object')

    schema = str(artifact.get('schema') or '')
    if not schema.startswith(SCHEMA_PREFIX):
        raise ValidationError('Unsupported schema: %r' % (schema or '(missing)'))

    if not is_hex256(artifact.get('root')):
        raise ValidationError('Invalid root')

    leaves = artifact.get('leaves')
    if not isinstance(leaves, list) or not leaves:
        raise ValidationError('Invalid leaves')
    for leaf in leaves:
        if not isinstance(leaf, dict) or not is_hex256(leaf.get('leafHash')) or not is_hex256(leaf.get('contentHash')):
            raise ValidationError('Invalid leaf record: %r' % (leaf,))

    tree = artifact.get('tree')
    levels = tree.get('levels') if isinstance(tree, dict) else None
    if not isinstance(levels, list) or not levels:
        raise ValidationError('Invalid tree.levels')
    for level in levels:
        if not isinstance(level, list) or not all(is_hex256(h) for h in level):
            raise ValidationError('Invalid tree.levels')


def strip_hex(value):
    value = value.lower()
    return value[2:] if value.startswith('0x') else value


def verify_artifact(artifact):
    """Check that leaves, tree.levels and root are mutually consistent

    Recomputes the tree from the leaf hashes alone.
    """
    check_shape(artifact)

    tree = build_tree(x(strip_hex(leaf['leafHash'])) for leaf in artifact['leaves'])
    stored_levels = [[strip_hex(h) for h in level] for level in artifact['tree']['levels']]

    if b2x(tree.root) != strip_hex(artifact['root']):
        logging.debug('Artifact root mismatch: computed %s' % b2x(tree.root))
        return False
    if levels_to_hex(tree.levels) != stored_levels:
        logging.debug('Artifact tree.levels do not match recomputed tree')
        return False
    return True


def verify_folder(artifact, files):
    """Recompute the root from file contents and compare with the artifact

    files - iterable of (path, bytes); paths are ignored
    """
    check_shape(artifact)

    leaf_hashes = [leaf_hash(content_hash(data)) for _path, data in files]
    computed = b2x(build_tree(leaf_hashes).root)
    expected = strip_hex(artifact['root'])

    summary = artifact.get('summary') or {}
    return FolderResult(computed == expected, expected, computed, len(leaf_hashes),
                        summary.get('fileCount', len(artifact['leaves'])))


def verify_file(artifact, data):
    """Prove that a single file's bytes are committed to by the artifact

    Uses the stored tree levels to build an inclusion proof for the matching
    leaf, then folds the proof back up to the stored root.
    """
    check_shape(artifact)

    digest = content_hash(data)
    content_hex = b2x(digest)
    leaf = leaf_hash(digest)
    leaf_hex = b2x(leaf)

    leaves = artifact['leaves']
    if not any(strip_hex(l['contentHash']) == content_hex for l in leaves):
        return FileResult(False, 'No matching content hash exists in the commitment', None)

    levels = levels_from_hex([[strip_hex(h) for h in level] for level in artifact['tree']['levels']])
    expected_root = x(strip_hex(artifact['root']))

    for idx, record in enumerate(leaves):
        if strip_hex(record['contentHash']) != content_hex or strip_hex(record['leafHash']) != leaf_hex:
            continue
        if idx >= len(levels[0]):
            break

        proof = build_proof(levels, idx)
        if compute_root_from_proof(leaf, proof) == expected_root:
            return FileResult(True, None, proof)

    return FileResult(False, 'Content matched, but proof could not be constructed to the stored root', None)
