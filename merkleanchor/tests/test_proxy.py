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

import threading
import time
import unittest

from opentimestamps.calendar import CommitmentNotFoundError
from opentimestamps.core.notary import BitcoinBlockHeaderAttestation, PendingAttestation
from opentimestamps.core.op import OpAppend, OpSHA256
from opentimestamps.core.timestamp import Timestamp

from merkleanchor.errors import ProtocolError, UpstreamTimeoutError, UpstreamUnavailableError, ValidationError
from merkleanchor.otsfile import detached_from_bytes, has_bitcoin_attestation
from merkleanchor.proxy import TimestampProxy, parse_digest_hex, validate_ots_array

POOLS = ['https://pool%d.example.com' % i for i in range(4)]
CALENDARS = ['https://cal%d.example.com' % i for i in range(3)]

DIGEST_HEX = '2f' * 32


def pending_timestamp(digest, url):
    """What a calendar returns from /digest"""
    stamp = Timestamp(digest)
    commitment = stamp.ops.add(OpAppend(url.encode())).ops.add(OpSHA256())
    commitment.attestations.add(PendingAttestation(url))
    return stamp


def anchored_timestamp(commitment, height=800000):
    """What a calendar returns from /timestamp once anchored"""
    stamp = Timestamp(commitment)
    stamp.ops.add(OpAppend(b'block')).ops.add(OpSHA256()).attestations.add(BitcoinBlockHeaderAttestation(height))
    return stamp


class FakeCalendars:
    """Calendar factory; behaviour per URL

    submit and get map a URL to 'ok', 'fail', 'slow', 'hang' or 'notfound'.
    """

    def __init__(self, submit=None, get=None):
        self.submit_behaviour = submit or {}
        self.get_behaviour = get or {}
        self.calls = []
        self.release = threading.Event()

    def __call__(self, url):
        fake = self

        class Calendar:
            def submit(self, digest, timeout=None):
                fake.calls.append(('submit', url))
                return fake.act(fake.submit_behaviour.get(url, 'ok'), url, lambda: pending_timestamp(digest, url))

            def get_timestamp(self, commitment, timeout=None):
                fake.calls.append(('get', url))
                return fake.act(fake.get_behaviour.get(url, 'notfound'), url, lambda: anchored_timestamp(commitment))

        return Calendar()

    def act(self, behaviour, url, make):
        if behaviour == 'ok':
            return make()
        elif behaviour == 'fail':
            raise UpstreamUnavailableError('%s: connection refused' % url)
        elif behaviour == 'slow':
            time.sleep(0.2)
            raise UpstreamTimeoutError('%s: timed out' % url)
        elif behaviour == 'hang':
            self.release.wait(10)
            raise UpstreamTimeoutError('%s: timed out' % url)
        elif behaviour == 'notfound':
            raise CommitmentNotFoundError('Commitment not found')
        raise AssertionError(behaviour)


class ProxyTestCase(unittest.TestCase):
    def make_proxy(self, calendars, **kwargs):
        self.addCleanup(calendars.release.set)
        return TimestampProxy(POOLS, CALENDARS, calendar_factory=calendars, **kwargs)


class Test_parse_digest_hex(unittest.TestCase):
    def test_valid(self):
        self.assertEqual(parse_digest_hex('ab' * 32), b'\xab' * 32)
        self.assertEqual(parse_digest_hex('0x' + 'AB' * 32), b'\xab' * 32)

    def test_invalid(self):
        for value in ('ab' * 31, 'ab' * 33, 'zz' * 32, '', '0x', None, 42, b'\xab' * 32):
            with self.assertRaises(ValidationError):
                parse_digest_hex(value)


class Test_validate_ots_array(unittest.TestCase):
    def test_valid(self):
        self.assertEqual(validate_ots_array([0, 79, 255]), b'\x00\x4f\xff')
        self.assertEqual(validate_ots_array([]), b'')

    def test_invalid(self):
        for value in ('abc', b'abc', None, {'0': 1}, [256], [-1], [1.0], ['1'], [True], [None]):
            with self.assertRaises(ValidationError):
                validate_ots_array(value)

    def test_too_large(self):
        with self.assertRaises(ValidationError):
            validate_ots_array([0] * 11, max_size=10)


class Test_stamp(ProxyTestCase):
    def test_all_pools(self):
        calendars = FakeCalendars()
        result = self.make_proxy(calendars).stamp(DIGEST_HEX)

        self.assertEqual(result.server, 'calendar-managed')
        self.assertEqual(result.servers, [{'url': url, 'success': True} for url in POOLS])

        detached = detached_from_bytes(result.ots_proof)
        self.assertEqual(detached.file_digest, b'\x2f' * 32)
        uris = sorted(att.uri for _msg, att in detached.timestamp.all_attestations())
        self.assertEqual(uris, sorted(POOLS))
        self.assertFalse(has_bitcoin_attestation(result.ots_proof).has_attestation)

    def test_quorum_met(self):
        """Two of four pool servers is enough"""
        calendars = FakeCalendars(submit={POOLS[0]: 'fail', POOLS[2]: 'fail'})
        result = self.make_proxy(calendars).stamp('0x' + DIGEST_HEX)

        self.assertEqual([s['success'] for s in result.servers], [False, True, False, True])
        detached = detached_from_bytes(result.ots_proof)
        self.assertEqual(len(list(detached.timestamp.all_attestations())), 2)

    def test_quorum_failed(self):
        """Fewer than two pool servers is a hard error"""
        calendars = FakeCalendars(submit={POOLS[0]: 'fail', POOLS[1]: 'fail', POOLS[2]: 'fail'})
        with self.assertRaises(UpstreamUnavailableError) as cm:
            self.make_proxy(calendars).stamp(DIGEST_HEX)
        self.assertIn('received 1', str(cm.exception))

    def test_timeout(self):
        calendars = FakeCalendars(submit={POOLS[0]: 'hang', POOLS[1]: 'hang', POOLS[2]: 'hang'})
        with self.assertRaises(UpstreamTimeoutError):
            self.make_proxy(calendars, request_timeout=0.3).stamp(DIGEST_HEX)

    def test_invalid_digest(self):
        calendars = FakeCalendars()
        with self.assertRaises(ValidationError):
            self.make_proxy(calendars).stamp('not hex')
        self.assertEqual(calendars.calls, [])

    def test_bad_quorum(self):
        with self.assertRaises(ValueError):
            TimestampProxy(POOLS, CALENDARS, quorum=5)


class Test_upgrade(ProxyTestCase):
    def stamped(self, pools=POOLS[:2]):
        calendars = FakeCalendars(submit={url: 'fail' for url in POOLS if url not in pools})
        return TimestampProxy(POOLS, CALENDARS, calendar_factory=calendars).stamp(DIGEST_HEX).ots_proof

    def test_still_pending(self):
        """404 from every calendar means still pending"""
        ots_proof = self.stamped()
        result = self.make_proxy(FakeCalendars()).upgrade(ots_proof)

        self.assertFalse(result.upgraded)
        self.assertEqual(result.status, 'pending')
        self.assertIsNone(result.block_height)
        self.assertEqual(result.ots_proof, ots_proof)

    def test_anchored(self):
        ots_proof = self.stamped()
        calendars = FakeCalendars(get={CALENDARS[0]: 'fail', CALENDARS[1]: 'ok'})
        result = self.make_proxy(calendars).upgrade(bytearray(ots_proof))

        self.assertTrue(result.upgraded)
        self.assertEqual(result.status, 'anchored')
        self.assertEqual(result.block_height, 800000)
        self.assertNotEqual(result.ots_proof, ots_proof)
        self.assertEqual(has_bitcoin_attestation(result.ots_proof), (True, 800000))

        # Input proof untouched
        self.assertFalse(has_bitcoin_attestation(ots_proof).has_attestation)

    def test_already_complete(self):
        """A complete proof doesn't contact any calendar"""
        ots_proof = self.make_proxy(FakeCalendars(get={CALENDARS[0]: 'ok'})).upgrade(self.stamped()).ots_proof

        calendars = FakeCalendars()
        result = self.make_proxy(calendars).upgrade(ots_proof)
        self.assertEqual(calendars.calls, [])
        self.assertTrue(result.upgraded)
        self.assertEqual(result.ots_proof, ots_proof)

    def test_all_calendars_down(self):
        calendars = FakeCalendars(get={url: 'fail' for url in CALENDARS})
        with self.assertRaises(UpstreamUnavailableError):
            self.make_proxy(calendars).upgrade(self.stamped())

    def test_timeout(self):
        calendars = FakeCalendars(get={url: 'hang' for url in CALENDARS})
        with self.assertRaises(UpstreamTimeoutError):
            self.make_proxy(calendars, request_timeout=0.3).upgrade(self.stamped())

    def test_slow_calendar(self):
        """A slow calendar delays every commitment once, not once per commitment"""
        ots_proof = self.stamped(pools=POOLS)
        calendars = FakeCalendars(get={CALENDARS[0]: 'slow'})

        start = time.monotonic()
        result = self.make_proxy(calendars, request_timeout=0.5).upgrade(ots_proof)

        self.assertEqual(result.status, 'pending')
        self.assertEqual(result.ots_proof, ots_proof)
        self.assertLess(time.monotonic() - start, 0.5)
        self.assertEqual(len([call for call in calendars.calls if call == ('get', CALENDARS[0])]), 4)

    def test_hung_calendar(self):
        """Running out of time with other calendars answered keeps their answers"""
        ots_proof = self.stamped(pools=POOLS)
        calendars = FakeCalendars(get={CALENDARS[0]: 'hang'})

        with self.assertLogs(level='WARNING'):
            result = self.make_proxy(calendars, request_timeout=0.3).upgrade(ots_proof)
        self.assertEqual(result.status, 'pending')
        self.assertEqual(result.ots_proof, ots_proof)

    def test_hung_calendar_anchored(self):
        ots_proof = self.stamped(pools=POOLS)
        calendars = FakeCalendars(get={CALENDARS[0]: 'hang', CALENDARS[1]: 'ok'})

        result = self.make_proxy(calendars, request_timeout=5).upgrade(ots_proof)
        self.assertEqual(result.status, 'anchored')
        self.assertEqual(result.block_height, 800000)

    def test_invalid(self):
        proxy = self.make_proxy(FakeCalendars())
        with self.assertRaises(ValidationError):
            proxy.upgrade([0, 1, 2])
        with self.assertRaises(ValidationError):
            proxy.upgrade(b'\x00' * (1024 * 1024 + 1))
        with self.assertRaises(ProtocolError):
            proxy.upgrade(b'\x00OpenTimestamps garbage')


class Test_health(unittest.TestCase):
    def test_health(self):
        health = TimestampProxy(POOLS, CALENDARS).health()
        self.assertEqual(health['status'], 'OK')
        self.assertIn('T', health['timestamp'])


if __name__ == '__main__':
    unittest.main()
