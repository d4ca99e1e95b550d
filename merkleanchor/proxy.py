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

"""Timestamp proxy: stamping and upgrading on behalf of clients

Stateless; every call builds what it needs from its arguments. Proofs are
immutable values: an upgrade returns new bytes and never touches the input.
"""

import binascii
import logging
import time

from collections import namedtuple
from datetime import datetime, timezone

from bitcoin.core import b2x

from opentimestamps.calendar import CommitmentNotFoundError
from opentimestamps.core.notary import PendingAttestation
from opentimestamps.core.op import OpSHA256
from opentimestamps.core.timestamp import DetachedTimestampFile, Timestamp

from merkleanchor import config
from merkleanchor.calendar import RemoteCalendar
from merkleanchor.errors import ValidationError, UpstreamTimeoutError, UpstreamUnavailableError
from merkleanchor.fanout import fan_out, first_success
from merkleanchor.otsfile import (bitcoin_heights, detached_from_bytes, detached_to_bytes,
                                  has_bitcoin_attestation, validate)

DIGEST_HEX_LENGTH = 64

STATUS_PENDING = 'pending'
STATUS_ANCHORED = 'anchored'

# Seconds fan-out collection may outlast the calendar races it waits for
UPGRADE_GRACE_PERIOD = 1

StampResult = namedtuple('StampResult', ['ots_proof', 'server', 'servers'])
UpgradeResult = namedtuple('UpgradeResult', ['ots_proof', 'upgraded', 'status', 'block_height'])


def parse_digest_hex(value, expected_length=DIGEST_HEX_LENGTH):
    """Validate a hex digest and return its bytes

    An optional 0x prefix is accepted.
    """
    if not isinstance(value, str):
        raise ValidationError('Invalid input: must be a string')

    clean = value[2:] if value.startswith('0x') else value
    if not clean or any(c not in '0123456789abcdefABCDEF' for c in clean):
        raise ValidationError('Invalid hex string: contains non-hexadecimal characters')
    if len(clean) != expected_length:
        raise ValidationError('Invalid hex string length: expected %d characters, got %d' % (expected_length, len(clean)))

    return binascii.unhexlify(clean)


def validate_ots_array(value, max_size=config.MAX_OTS_BYTES):
    """Convert a JSON array of byte values into bytes

    Raises ValidationError unless value is a list of at most max_size
    integers in the range 0-255.
    """
    if not isinstance(value, list):
        raise ValidationError('Invalid input: otsFile must be an array')
    if len(value) > max_size:
        raise ValidationError('OTS file too large: %d bytes (max %d bytes)' % (len(value), max_size))

    for i, b in enumerate(value):
        if b.__class__ is not int or not 0 <= b <= 255:
            raise ValidationError('Invalid byte value at index %d: must be integer between 0-255' % i)

    return bytes(value)


def is_timestamp_complete(timestamp):
    """Determine if timestamp is complete and can be verified"""
    return bool(bitcoin_heights(timestamp))


def pending_stamps(timestamp):
    """Sub-timestamps carrying a pending attestation, one per message"""
    seen = set()

    def walk(stamp):
        yield stamp
        for sub_stamp in stamp.ops.values():
            yield from walk(sub_stamp)

    for sub_stamp in walk(timestamp):
        if sub_stamp.msg in seen:
            continue
        if any(isinstance(attestation, PendingAttestation) for attestation in sub_stamp.attestations):
            seen.add(sub_stamp.msg)
            yield sub_stamp


class TimestampProxy:
    """Submit digests to pool servers and query calendar servers"""

    def __init__(self, pool_servers=None, calendar_servers=None,
                 quorum=config.DEFAULT_QUORUM,
                 request_timeout=config.REQUEST_TIMEOUT,
                 calendar_timeout=config.CALENDAR_TIMEOUT,
                 calendar_factory=RemoteCalendar,
                 clock=time.monotonic):
        self.pool_servers = list(pool_servers or config.DEFAULT_POOL_SERVERS)
        self.calendar_servers = list(calendar_servers or config.DEFAULT_CALENDAR_SERVERS)

        if not 0 < quorum <= len(self.pool_servers):
            raise ValueError('quorum must be between 1 and %d; got %d' % (len(self.pool_servers), quorum))
        self.quorum = quorum

        self.request_timeout = request_timeout
        self.calendar_timeout = calendar_timeout
        self.calendar_factory = calendar_factory
        self.clock = clock

    @classmethod
    def from_config(cls, cfg, **kwargs):
        return cls(pool_servers=cfg.pool_servers,
                   calendar_servers=cfg.calendar_servers,
                   quorum=cfg.quorum,
                   request_timeout=cfg.request_timeout,
                   calendar_timeout=cfg.calendar_timeout,
                   **kwargs)

    def _remaining(self, deadline):
        return max(0, deadline - self.clock())

    def stamp(self, digest_hex):
        """Timestamp a 32-byte digest

        Succeeds only if at least quorum pool servers answer; their
        timestamps are merged into a single proof.
        """
        digest = parse_digest_hex(digest_hex)
        deadline = self.clock() + self.request_timeout

        detached = DetachedTimestampFile(OpSHA256(), Timestamp(digest))

        def submit(url):
            logging.info('Submitting to remote calendar %s' % url)
            return self.calendar_factory(url).submit(digest, timeout=self.calendar_timeout)

        n = len(self.pool_servers)
        logging.debug('Doing %d-of-%d request, timeout is %d second%s' %
                      (self.quorum, n, self.request_timeout, '' if self.request_timeout == 1 else 's'))

        result = fan_out(submit, self.pool_servers, self._remaining(deadline))

        merged = []
        for url, calendar_timestamp in result.successes:
            try:
                detached.timestamp.merge(calendar_timestamp)
                merged.append(url)
            except (TypeError, ValueError) as exp:
                logging.debug('%s: %s' % (url, exp))

        servers = [{'url': url, 'success': url in merged} for url in self.pool_servers]

        if len(merged) < self.quorum:
            msg = ('Failed to create timestamp: need at least %d attestation%s but received %d (%s)' %
                   (self.quorum, '' if self.quorum == 1 else 's', len(merged),
                    ', '.join(merged) or 'none'))
            logging.error(msg)
            if result.pending:
                raise UpstreamTimeoutError(msg + ' within timeout')
            raise UpstreamUnavailableError(msg)

        ots_proof = detached_to_bytes(detached)
        validate(ots_proof, strict=True)

        logging.info('Stamped %s... with %d of %d pool servers' % (b2x(digest)[:16], len(merged), n))
        return StampResult(ots_proof, 'calendar-managed', servers)

    def _upgrade_timestamp(self, timestamp, deadline):
        """Merge upgrades from calendar servers into timestamp, in place

        timestamp is a freshly deserialized copy owned by the caller.
        """
        stamps = list(pending_stamps(timestamp))
        if not stamps:
            return

        def race_calendars(sub_stamp):
            commitment = sub_stamp.msg

            def get_timestamp(url):
                logging.debug('Checking calendar %s for %s' % (url, b2x(commitment)))
                return self.calendar_factory(url).get_timestamp(commitment, timeout=self.calendar_timeout)

            return first_success(get_timestamp, self.calendar_servers, self._remaining(deadline), clock=self.clock)

        # All commitments are raced at once; each race stops at the deadline.
        races = fan_out(race_calendars, stamps, self._remaining(deadline) + UPGRADE_GRACE_PERIOD, clock=self.clock)

        answered = False
        timed_out = bool(races.pending)
        for sub_stamp, result in races.successes:
            for url, exp in result.failures:
                if isinstance(exp, CommitmentNotFoundError):
                    answered = True
                    logging.debug('Calendar %s: commitment pending' % url)
                else:
                    logging.warning('Calendar %s: %s' % (url, exp))

            if result.successes:
                answered = True
                url, upgraded_stamp = result.successes[0]
                logging.info('Got upgraded timestamp for %s from %s' % (b2x(sub_stamp.msg), url))
                sub_stamp.merge(upgraded_stamp)
            elif result.pending:
                timed_out = True

        for sub_stamp, exp in races.failures:
            logging.warning('Upgrading %s failed: %s' % (b2x(sub_stamp.msg), exp))

        if not answered:
            if timed_out:
                raise UpstreamTimeoutError('Timed out waiting for calendar servers')
            raise UpstreamUnavailableError('No calendar server could be reached')

        if timed_out:
            logging.warning('Some calendar servers did not answer in time; keeping what was received')

    def upgrade(self, ots_proof):
        """Upgrade a proof with whatever the calendar servers now know

        Returns an UpgradeResult; upgraded is True once the proof has a
        Bitcoin block attestation.
        """
        if not isinstance(ots_proof, (bytes, bytearray)):
            raise ValidationError('Invalid input: OTS proof must be bytes')
        if len(ots_proof) > config.MAX_OTS_BYTES:
            raise ValidationError('OTS file too large: %d bytes (max %d bytes)' % (len(ots_proof), config.MAX_OTS_BYTES))

        original = bytes(ots_proof)
        deadline = self.clock() + self.request_timeout

        detached = detached_from_bytes(original)

        if not is_timestamp_complete(detached.timestamp):
            self._upgrade_timestamp(detached.timestamp, deadline)

        upgraded_bytes = detached_to_bytes(detached)
        if upgraded_bytes != original:
            validate(upgraded_bytes, strict=True)

        check = has_bitcoin_attestation(upgraded_bytes)
        status = STATUS_ANCHORED if check.has_attestation else STATUS_PENDING

        logging.info('Upgrade completed, Bitcoin attestation: %s' % check.has_attestation)
        return UpgradeResult(upgraded_bytes, check.has_attestation, status, check.block_height)

    def health(self):
        return {'status': 'OK', 'timestamp': datetime.now(timezone.utc).isoformat()}
