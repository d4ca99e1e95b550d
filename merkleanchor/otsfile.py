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

"""OpenTimestamps proof bytes: magic validation and attestation parsing

Two layers live here. Full detached proofs are handled by the opentimestamps
library; this module converts its deserialization failures into
ProtocolError. On top of that is a small bounded reader for the compact
attestation stream:

    0x00 'OpenTimestamps'           magic, 15 bytes
    version                         1 byte
    0x00 len url commitment[32]     pending at a calendar
    0x05 varuint(height) root[32]   anchored in a Bitcoin block

Parsing stops at the first tag it does not know rather than guessing at the
structure that follows.
"""

import base64
import binascii
import logging

from collections import namedtuple

from bitcoin.core import b2x

from opentimestamps.core.notary import BitcoinBlockHeaderAttestation
from opentimestamps.core.serialize import (BytesDeserializationContext, BytesSerializationContext,
                                           DeserializationError)
from opentimestamps.core.timestamp import DetachedTimestampFile

from merkleanchor.errors import ProtocolError, TruncatedStreamError

MAGIC = b'\x00OpenTimestamps'
MIN_PROOF_LENGTH = len(MAGIC) + 1

VERSION = 1

TAG_CALENDAR = 0x00
TAG_BITCOIN_BLOCK = 0x05

COMMITMENT_LENGTH = 32

MAX_VARUINT_BYTES = 9

BitcoinCheck = namedtuple('BitcoinCheck', ['has_attestation', 'block_height'])


def _first_bytes_hex(data, n=16):
    return ' '.join('%02x' % b for b in data[:n])


class BinaryReader:
    """Bounded reader over a bytes value

    Every read is checked against the remaining length; reading past the end
    raises TruncatedStreamError instead of returning short data.
    """

    def __init__(self, data, pos=0):
        self.data = bytes(data)
        self.pos = pos

    @property
    def remaining(self):
        return len(self.data) - self.pos

    def at_end(self):
        return self.pos >= len(self.data)

    def read_bytes(self, n):
        if n < 0:
            raise ValueError('negative read length %d' % n)
        if n > self.remaining:
            raise TruncatedStreamError(n, self.remaining)
        r = self.data[self.pos:self.pos + n]
        self.pos += n
        return r

    def read_byte(self):
        return self.read_bytes(1)[0]

    def read_varuint(self):
        # unsigned little-endian base128 format (LEB128)
        value = 0
        shift = 0
        for _i in range(MAX_VARUINT_BYTES):
            b = self.read_byte()
            value |= (b & 0b01111111) << shift
            if not (b & 0b10000000):
                return value
            shift += 7

        raise ProtocolError('varuint longer than %d bytes' % MAX_VARUINT_BYTES)


class CalendarAttestation:
    """Pending at a calendar server

    The calendar at url has been given commitment and will eventually anchor
    it in a Bitcoin block.
    """

    TAG = TAG_CALENDAR
    MAX_URL_LENGTH = 255

    def __init__(self, url, commitment):
        if not isinstance(url, str):
            raise TypeError('URL must be a string')
        if len(url.encode()) > self.MAX_URL_LENGTH:
            raise ValueError('URL exceeds maximum length')
        if len(commitment) != COMMITMENT_LENGTH:
            raise ValueError('commitment must be %d bytes; got %d' % (COMMITMENT_LENGTH, len(commitment)))
        self.url = url
        self.commitment = bytes(commitment)

    def __repr__(self):
        return 'CalendarAttestation(%r, %s)' % (self.url, b2x(self.commitment))

    def __eq__(self, other):
        if other.__class__ is CalendarAttestation:
            return (self.url, self.commitment) == (other.url, other.commitment)
        return NotImplemented

    def __hash__(self):
        return hash((self.url, self.commitment))

    def serialize(self, ctx):
        url = self.url.encode()
        ctx.write_bytes(bytes([self.TAG, len(url)]))
        ctx.write_bytes(url)
        ctx.write_bytes(self.commitment)

    @classmethod
    def deserialize(cls, reader):
        url_length = reader.read_byte()
        url = reader.read_bytes(url_length)
        commitment = reader.read_bytes(COMMITMENT_LENGTH)
        try:
            url = url.decode('utf8')
        except UnicodeDecodeError:
            raise ProtocolError('Calendar URL is not valid UTF-8')
        return cls(url, commitment)


class BitcoinBlockAttestation:
    """Anchored in the Bitcoin block at height"""

    TAG = TAG_BITCOIN_BLOCK

    def __init__(self, height, merkle_root):
        if height < 0:
            raise ValueError('height must be non-negative')
        if len(merkle_root) != COMMITMENT_LENGTH:
            raise ValueError('merkle root must be %d bytes; got %d' % (COMMITMENT_LENGTH, len(merkle_root)))
        self.height = height
        self.merkle_root = bytes(merkle_root)

    def __repr__(self):
        return 'BitcoinBlockAttestation(%d, %s)' % (self.height, b2x(self.merkle_root))

    def __eq__(self, other):
        if other.__class__ is BitcoinBlockAttestation:
            return (self.height, self.merkle_root) == (other.height, other.merkle_root)
        return NotImplemented

    def __hash__(self):
        return hash((self.height, self.merkle_root))

    def serialize(self, ctx):
        ctx.write_bytes(bytes([self.TAG]))
        ctx.write_varuint(self.height)
        ctx.write_bytes(self.merkle_root)

    @classmethod
    def deserialize(cls, reader):
        height = reader.read_varuint()
        merkle_root = reader.read_bytes(COMMITMENT_LENGTH)
        return cls(height, merkle_root)


ATTESTATION_CLASSES = {cls.TAG: cls for cls in (CalendarAttestation, BitcoinBlockAttestation)}


def validate(data, strict=True):
    """Check the magic header of a proof

    strict  - raise ProtocolError on any mismatch. Otherwise the problem is
              logged and False returned; used where a deserializer upstream
              has already accepted the bytes.
    """
    error = None
    if data is None or len(data) < MIN_PROOF_LENGTH:
        error = 'Invalid OTS proof: too short (%d bytes)' % (len(data) if data is not None else 0)

    elif data[0] != MAGIC[0]:
        error = 'Invalid OTS proof: first byte is 0x%02x, expected 0x00' % data[0]

    else:
        for i in range(1, len(MAGIC)):
            if data[i] != MAGIC[i]:
                error = ('Invalid OTS proof: magic bytes mismatch at position %d. Expected: %s, Got: %s' %
                         (i, _first_bytes_hex(MAGIC), _first_bytes_hex(data)))
                break

    if error is None:
        logging.debug('OTS proof validation passed (%d bytes)' % len(data))
        return True

    if strict:
        raise ProtocolError(error)

    logging.warning('%s (accepted by deserializer, treating as warning)' % error)
    return False


def parse_attestations(data):
    """Parse a compact attestation stream

    Returns (version, attestations). Stops quietly at an unknown tag; raises
    ProtocolError on bad magic or a truncated record.
    """
    validate(data, strict=True)

    reader = BinaryReader(data, len(MAGIC))
    version = reader.read_byte()

    attestations = []
    while not reader.at_end():
        tag = reader.read_byte()
        try:
            cls = ATTESTATION_CLASSES[tag]
        except KeyError:
            logging.debug('Unknown attestation tag 0x%02x at offset %d; stopping' % (tag, reader.pos - 1))
            break
        attestations.append(cls.deserialize(reader))

    return (version, attestations)


def serialize_attestations(attestations, version=VERSION):
    """Write a compact attestation stream"""
    ctx = BytesSerializationContext()
    ctx.write_bytes(MAGIC)
    ctx.write_bytes(bytes([version]))
    for attestation in attestations:
        attestation.serialize(ctx)
    return ctx.getbytes()


def scan_bitcoin_attestation(data):
    """First Bitcoin block attestation in a compact attestation stream

    Records are read one at a time, so a damaged record after a complete
    Bitcoin block attestation doesn't hide it.
    """
    try:
        validate(data, strict=True)
    except ProtocolError as exp:
        logging.debug('Not an attestation stream: %s' % exp)
        return BitcoinCheck(False, None)

    reader = BinaryReader(data, len(MAGIC) + 1)
    try:
        while not reader.at_end():
            tag = reader.read_byte()
            cls = ATTESTATION_CLASSES.get(tag)
            if cls is None:
                break

            attestation = cls.deserialize(reader)
            if isinstance(attestation, BitcoinBlockAttestation):
                return BitcoinCheck(True, attestation.height)

    except ProtocolError as exp:
        logging.debug('Attestation stream ends early: %s' % exp)

    return BitcoinCheck(False, None)


def detached_from_bytes(data):
    """Deserialize a full detached timestamp proof

    Raises ProtocolError if the bytes are not a valid proof.
    """
    ctx = BytesDeserializationContext(bytes(data))
    try:
        detached = DetachedTimestampFile.deserialize(ctx)
        ctx.assert_eof()
    except (DeserializationError, ValueError) as exp:
        raise ProtocolError('Invalid timestamp proof: %s' % exp)
    return detached


def detached_to_bytes(detached):
    ctx = BytesSerializationContext()
    detached.serialize(ctx)
    return ctx.getbytes()


def bitcoin_heights(timestamp):
    """Heights of all Bitcoin block header attestations in a timestamp tree"""
    return sorted(attestation.height
                  for _msg, attestation in timestamp.all_attestations()
                  if isinstance(attestation, BitcoinBlockHeaderAttestation))


def has_bitcoin_attestation(data):
    """Does the proof contain a Bitcoin block attestation?

    Returns BitcoinCheck(has_attestation, block_height). Never raises on
    malformed input: anything unreadable simply has no attestation.
    """
    if not isinstance(data, (bytes, bytearray)):
        return BitcoinCheck(False, None)

    try:
        detached = detached_from_bytes(data)
    except ProtocolError:
        return scan_bitcoin_attestation(data)

    heights = bitcoin_heights(detached.timestamp)
    if heights:
        return BitcoinCheck(True, heights[0])
    return BitcoinCheck(False, None)


def _is_text_content_type(content_type):
    content_type = (content_type or '').lower()
    return 'text' in content_type or 'application/json' in content_type


def decode_proof_body(body, content_type=None):
    """Decode a calendar response body into raw proof bytes

    Binary bodies are returned unchanged. Text bodies are decoded as hex when
    they look like hex and as base64 otherwise.
    """
    if not _is_text_content_type(content_type):
        return bytes(body)

    try:
        text = body.decode('ascii').strip()
    except UnicodeDecodeError:
        raise ProtocolError('Calendar server returned a non-ASCII text response')

    if text and len(text) % 2 == 0:
        try:
            return binascii.unhexlify(text)
        except (binascii.Error, ValueError):
            pass

    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        raise ProtocolError('Calendar server returned text response that is neither hex nor base64: %r' % text[:50])
