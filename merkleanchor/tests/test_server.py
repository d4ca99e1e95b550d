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

import json
import threading
import unittest
import urllib.error
import urllib.request

from merkleanchor.config import Config
from merkleanchor.errors import InternalError, ProtocolError, UpstreamTimeoutError, UpstreamUnavailableError
from merkleanchor.proxy import StampResult, UpgradeResult, parse_digest_hex
from merkleanchor.server import (ProxyAPIServer, RateLimiter, error_response, handle_health, handle_stamp,
                                 handle_upgrade)

OTS_PROOF = b'\x00OpenTimestamps\x00\x00Proof'

ROOT_HEX = 'ab' * 32


class FakeProxy:
    """Stands in for TimestampProxy

    Roots and proofs pick the behaviour: a root starting with 'ee' times out,
    'dd' is unavailable, 'cc' crashes; the proof b'bad' is corrupt.
    """

    pool_servers = ['https://pool.example.com']
    calendar_servers = ['https://cal.example.com']

    def stamp(self, digest_hex):
        digest = parse_digest_hex(digest_hex)
        if digest.startswith(b'\xee'):
            raise UpstreamTimeoutError('pool.example.com: timed out')
        elif digest.startswith(b'\xdd'):
            raise UpstreamUnavailableError('need at least 2 attestations but received 1')
        elif digest.startswith(b'\xcc'):
            raise RuntimeError('secret internal detail')
        return StampResult(OTS_PROOF, 'calendar-managed', [{'url': 'https://pool.example.com', 'success': True}])

    def upgrade(self, ots_proof):
        if ots_proof == b'bad':
            raise ProtocolError('Invalid timestamp proof: bad magic')
        elif ots_proof == b'anchored':
            return UpgradeResult(OTS_PROOF + b'!', True, 'anchored', 800000)
        return UpgradeResult(ots_proof, False, 'pending', None)

    def health(self):
        return {'status': 'OK', 'timestamp': '2026-10-18T00:00:00+00:00'}


def body(data):
    return json.dumps(data).encode()


class Test_handlers(unittest.TestCase):
    def test_stamp(self):
        status, data = handle_stamp(body({'merkleRootHex': ROOT_HEX}), FakeProxy())
        self.assertEqual(status, 200)
        self.assertEqual(data['otsFile'], list(OTS_PROOF))
        self.assertEqual(data['server'], 'calendar-managed')
        self.assertEqual(data['servers'], [{'url': 'https://pool.example.com', 'success': True}])

    def test_stamp_invalid(self):
        for request in (b'not json', body([1]), body({}), body({'merkleRootHex': 'xyz'}),
                        body({'merkleRootHex': 42})):
            status, data = handle_stamp(request, FakeProxy())
            self.assertEqual(status, 400)
            self.assertEqual(data['code'], 'validation_error')

    def test_stamp_errors(self):
        """Error kinds map to HTTP status codes"""
        for root, expected in (('ee' * 32, 408), ('dd' * 32, 500), ('cc' * 32, 500)):
            status, data = handle_stamp(body({'merkleRootHex': root}), FakeProxy())
            self.assertEqual(status, expected)

    def test_production_hides_detail(self):
        status, data = handle_stamp(body({'merkleRootHex': 'cc' * 32}), FakeProxy(), production=True)
        self.assertEqual(status, 500)
        self.assertNotIn('secret', data['error'])
        self.assertEqual(data['code'], 'internal_error')

        status, data = handle_stamp(body({'merkleRootHex': 'dd' * 32}), FakeProxy(), production=True)
        self.assertNotIn('attestations', data['error'])

        status, data = handle_stamp(body({'merkleRootHex': 'cc' * 32}), FakeProxy(), production=False)
        self.assertIn('secret', data['error'])

    def test_upgrade(self):
        status, data = handle_upgrade(body({'otsFile': list(OTS_PROOF)}), FakeProxy())
        self.assertEqual(status, 200)
        self.assertEqual(data, {'otsFile': list(OTS_PROOF), 'upgraded': False, 'status': 'pending'})

        status, data = handle_upgrade(body({'otsFile': list(b'anchored')}), FakeProxy())
        self.assertEqual(status, 200)
        self.assertEqual(data['blockHeight'], 800000)
        self.assertTrue(data['upgraded'])

    def test_upgrade_invalid(self):
        for request in (body({}), body({'otsFile': 'AAEC'}), body({'otsFile': [1, 300]})):
            status, data = handle_upgrade(request, FakeProxy())
            self.assertEqual(status, 400)

        status, data = handle_upgrade(body({'otsFile': list(b'bad')}), FakeProxy())
        self.assertEqual(status, 400)
        self.assertEqual(data['code'], 'protocol_error')

    def test_body_too_large(self):
        status, data = handle_upgrade(b'{"otsFile": [' + b'0, ' * (1024 * 1024) + b'0]}', FakeProxy())
        self.assertEqual(status, 400)
        self.assertIn('too large', data['error'])

    def test_health(self):
        self.assertEqual(handle_health(FakeProxy())[0], 200)

    def test_error_response(self):
        self.assertEqual(error_response(InternalError('x'), False), (500, {'error': 'x', 'code': 'internal_error'}))


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class Test_RateLimiter(unittest.TestCase):
    def test_window(self):
        clock = FakeClock()
        limiter = RateLimiter(2, 60, clock=clock)

        self.assertTrue(limiter.allow('1.2.3.4'))
        self.assertTrue(limiter.allow('1.2.3.4'))
        self.assertFalse(limiter.allow('1.2.3.4'))
        self.assertTrue(limiter.allow('5.6.7.8'))

        clock.now += 60
        self.assertTrue(limiter.allow('1.2.3.4'))


class ServerTestCase(unittest.TestCase):
    environment = 'development'
    cors_origins = ()

    def setUp(self):
        cfg = Config(environment=self.environment, port=3001, cors_origins=self.cors_origins)
        self.httpd = ProxyAPIServer(('127.0.0.1', 0), FakeProxy(), cfg)
        self.url = 'http://127.0.0.1:%d' % self.httpd.server_address[1]

        thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)
        thread.start()
        self.addCleanup(thread.join, 5)
        self.addCleanup(self.httpd.server_close)
        self.addCleanup(self.httpd.shutdown)

    def request(self, path, data=None, headers=None, method=None):
        req = urllib.request.Request(self.url + path, data=data, headers=headers or {}, method=method)
        try:
            with urllib.request.urlopen(req, timeout=5) as resp:
                return resp.status, resp.headers, resp.read()
        except urllib.error.HTTPError as exp:
            return exp.code, exp.headers, exp.read()


class Test_ProxyAPIServer(ServerTestCase):
    def test_health(self):
        status, headers, data = self.request('/api/health')
        self.assertEqual(status, 200)
        self.assertEqual(json.loads(data)['status'], 'OK')
        self.assertEqual(headers['Access-Control-Allow-Origin'], '*')

    def test_stamp(self):
        status, headers, data = self.request('/api/stamp', body({'merkleRootHex': ROOT_HEX}),
                                             {'Content-Type': 'application/json'})
        self.assertEqual(status, 200)
        self.assertEqual(bytes(json.loads(data)['otsFile']), OTS_PROOF)

    def test_not_found(self):
        self.assertEqual(self.request('/api/nope')[0], 404)
        self.assertEqual(self.request('/api/nope', b'{}')[0], 404)

    def test_preflight(self):
        status, headers, data = self.request('/api/stamp', method='OPTIONS',
                                             headers={'Origin': 'https://example.com'})
        self.assertEqual(status, 204)
        self.assertIn('POST', headers['Access-Control-Allow-Methods'])

    def test_rate_limit(self):
        """Stamping is limited to 20 requests per window"""
        for _i in range(20):
            self.assertEqual(self.request('/api/stamp', body({'merkleRootHex': ROOT_HEX}))[0], 200)

        status, headers, data = self.request('/api/stamp', body({'merkleRootHex': ROOT_HEX}))
        self.assertEqual(status, 429)
        self.assertEqual(json.loads(data)['code'], 'rate_limited')

        # Other endpoints still work
        self.assertEqual(self.request('/api/health')[0], 200)


class Test_ProxyAPIServer_production(ServerTestCase):
    environment = 'production'
    cors_origins = ('https://app.example.com',)

    def test_cors_allowed(self):
        status, headers, data = self.request('/api/health', headers={'Origin': 'https://app.example.com'})
        self.assertEqual(headers['Access-Control-Allow-Origin'], 'https://app.example.com')

    def test_cors_refused(self):
        status, headers, data = self.request('/api/health', headers={'Origin': 'https://evil.example.com'})
        self.assertEqual(status, 200)
        self.assertIsNone(headers['Access-Control-Allow-Origin'])


if __name__ == '__main__':
    unittest.main()
