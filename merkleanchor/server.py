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

"""HTTP API of the timestamp proxy

    POST /api/stamp   {"merkleRootHex": hex}  -> {"otsFile": [int], "server", "servers"}
    POST /api/upgrade {"otsFile": [int]}      -> {"otsFile", "upgraded", "status", "blockHeight"?}
    GET  /api/health                          -> {"status", "timestamp"}

Handlers are plain functions of (request body, dependencies) returning
(status code, response dict); the request handler class only does HTTP.
"""

import collections
import json
import logging
import threading
import time

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from merkleanchor import config
from merkleanchor.errors import (InternalError, ProtocolError, RateLimitedError, UpstreamTimeoutError,
                                 UpstreamUnavailableError, ValidationError, sanitize_error)
from merkleanchor.proxy import TimestampProxy, validate_ots_array

# (limit, window in seconds)
API_RATE_LIMIT = (100, 15 * 60)
STAMP_RATE_LIMIT = (20, 15 * 60)
UPGRADE_RATE_LIMIT = (30, 60)

STATUS_BY_ERROR = (
    (ValidationError, 400),
    (ProtocolError, 400),
    (UpstreamTimeoutError, 408),
    (RateLimitedError, 429),
    (UpstreamUnavailableError, 500),
)


class RateLimiter:
    """Sliding-window request counter per client address"""

    def __init__(self, limit, window, clock=time.monotonic):
        self.limit = limit
        self.window = window
        self.clock = clock
        self._hits = collections.defaultdict(collections.deque)
        self._lock = threading.Lock()

    def allow(self, key):
        """Count a request from key; False if it's over the limit"""
        now = self.clock()
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= now - self.window:
                hits.popleft()

            if len(hits) >= self.limit:
                return False

            hits.append(now)
            return True


def error_response(exp, production):
    """(status, body) for an exception raised by a handler"""
    for cls, status in STATUS_BY_ERROR:
        if isinstance(exp, cls):
            break
    else:
        status = 500
        if not isinstance(exp, InternalError):
            logging.exception('Unexpected error handling request')
            exp = InternalError(str(exp))

    if status >= 500:
        logging.error('%s: %s' % (exp.__class__.__name__, exp))
    else:
        logging.info('%s: %s' % (exp.__class__.__name__, exp))

    return status, {'error': sanitize_error(exp, production), 'code': exp.code}


def parse_json_body(body):
    if len(body) > config.MAX_REQUEST_BYTES:
        raise ValidationError('Request body too large (max %d bytes)' % config.MAX_REQUEST_BYTES)
    try:
        data = json.loads(body.decode('utf8'))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError('Invalid JSON request body')
    if not isinstance(data, dict):
        raise ValidationError('Invalid request body: expected a JSON object')
    return data


def handle_stamp(body, proxy, production=False):
    """POST /api/stamp"""
    try:
        data = parse_json_body(body)
        if 'merkleRootHex' not in data:
            raise ValidationError('Missing merkleRootHex')

        result = proxy.stamp(data['merkleRootHex'])
    except Exception as exp:
        return error_response(exp, production)

    return 200, {'otsFile': list(result.ots_proof),
                 'server': result.server,
                 'servers': result.servers}


def handle_upgrade(body, proxy, production=False):
    """POST /api/upgrade"""
    try:
        data = parse_json_body(body)
        if 'otsFile' not in data:
            raise ValidationError('Missing otsFile')

        ots_proof = validate_ots_array(data['otsFile'])
        result = proxy.upgrade(ots_proof)
    except Exception as exp:
        return error_response(exp, production)

    resp = {'otsFile': list(result.ots_proof),
            'upgraded': result.upgraded,
            'status': result.status}
    if result.block_height is not None:
        resp['blockHeight'] = result.block_height
    return 200, resp


def handle_health(proxy):
    """GET /api/health"""
    return 200, proxy.health()


class ProxyAPIHandler(BaseHTTPRequestHandler):
    """HTTP request handler; dependencies hang off self.server"""

    def log_message(self, format, *args):
        logging.debug('%s - %s' % (self.address_string(), format % args))

    def _cors_origin(self):
        server = self.server
        origin = self.headers.get('Origin')

        if not server.config.production or not server.config.cors_origins:
            return '*'
        elif origin in server.config.cors_origins:
            return origin
        else:
            return None

    def _send_json(self, status, data):
        body = json.dumps(data).encode('utf8')
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        origin = self._cors_origin()
        if origin is not None:
            self.send_header('Access-Control-Allow-Origin', origin)
            if origin != '*':
                self.send_header('Vary', 'Origin')
        self.end_headers()
        self.wfile.write(body)

    def _read_body(self):
        try:
            length = int(self.headers.get('Content-Length', 0))
        except ValueError:
            length = 0

        if length > config.MAX_REQUEST_BYTES:
            # Not read; don't try to reuse the connection.
            self.close_connection = True
            return None
        if length <= 0:
            return b''
        return self.rfile.read(length)

    def _rate_limited(self, path):
        server = self.server
        client = self.client_address[0]

        limiters = [server.rate_limiters['api']]
        if path == '/api/stamp':
            limiters.append(server.rate_limiters['stamp'])
        elif path == '/api/upgrade':
            limiters.append(server.rate_limiters['upgrade'])

        for limiter in limiters:
            if not limiter.allow(client):
                logging.warning('Rate limit exceeded for %s on %s' % (client, path))
                status, data = error_response(RateLimitedError('Too many requests from this IP, please try again later.'),
                                              server.config.production)
                self._send_json(status, data)
                return True
        return False

    def do_OPTIONS(self):
        self.send_response(204)
        origin = self._cors_origin()
        if origin is not None:
            self.send_header('Access-Control-Allow-Origin', origin)
        self.send_header('Access-Control-Allow-Methods', 'GET, POST, OPTIONS')
        self.send_header('Access-Control-Allow-Headers', 'Content-Type')
        self.send_header('Content-Length', '0')
        self.end_headers()

    def do_GET(self):
        path = self.path.split('?')[0]

        if path.startswith('/api/') and self._rate_limited(path):
            return

        if path == '/api/health':
            status, data = handle_health(self.server.proxy)
            self._send_json(status, data)
            return

        self._send_json(404, {'error': 'Not found', 'code': 'not_found'})

    def do_POST(self):
        path = self.path.split('?')[0]
        server = self.server

        body = self._read_body()

        if path.startswith('/api/') and self._rate_limited(path):
            return

        if body is None:
            self._send_json(400, {'error': 'Request body too large (max %d bytes)' % config.MAX_REQUEST_BYTES,
                                  'code': ValidationError.code})
            return

        if path == '/api/stamp':
            status, data = handle_stamp(body, server.proxy, server.config.production)
        elif path == '/api/upgrade':
            status, data = handle_upgrade(body, server.proxy, server.config.production)
        else:
            status, data = 404, {'error': 'Not found', 'code': 'not_found'}

        self._send_json(status, data)


class ProxyAPIServer(ThreadingHTTPServer):
    """Threading HTTP server carrying the proxy and its settings"""

    daemon_threads = True

    def __init__(self, address, proxy, cfg, handler_class=ProxyAPIHandler):
        super().__init__(address, handler_class)
        self.proxy = proxy
        self.config = cfg
        self.rate_limiters = {
            'api': RateLimiter(*API_RATE_LIMIT),
            'stamp': RateLimiter(*STAMP_RATE_LIMIT),
            'upgrade': RateLimiter(*UPGRADE_RATE_LIMIT),
        }


def run_server(cfg, proxy=None):
    """Serve the API until interrupted"""
    if proxy is None:
        proxy = TimestampProxy.from_config(cfg)

    httpd = ProxyAPIServer((cfg.host, cfg.port), proxy, cfg)

    logging.info('merkle-anchor server listening on http://%s:%d (%s)' % (cfg.host, cfg.port, cfg.environment))
    logging.info('Pool servers: %s' % ', '.join(proxy.pool_servers))
    logging.info('Calendar servers: %s' % ', '.join(proxy.calendar_servers))

    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logging.info('Shutting down')
    finally:
        httpd.server_close()
