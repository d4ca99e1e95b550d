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

"""Settings, from the environment with command-line overrides on top"""

import logging
import os
import re

from merkleanchor.errors import ValidationError

# Pool servers aggregate many submissions together; used for stamping.
DEFAULT_POOL_SERVERS = [
    'https://a.pool.opentimestamps.org',
    'https://b.pool.opentimestamps.org',
    'https://a.pool.eternitywall.com',
    'https://ots.btc.catallaxy.com',
]

# Calendar servers answer /timestamp/<commitment>; used for upgrades.
DEFAULT_CALENDAR_SERVERS = [
    'https://alice.btc.calendar.opentimestamps.org',
    'https://bob.btc.calendar.opentimestamps.org',
    'https://finney.calendar.eternitywall.com',
    'https://ots.btc.catallaxy.com',
]

DEFAULT_QUORUM = 2

REQUEST_TIMEOUT = 30
CALENDAR_TIMEOUT = 10

MAX_OTS_BYTES = 1024 * 1024
MAX_REQUEST_BYTES = 1024 * 1024

TIP_HEIGHT_CACHE_TTL = 45
TIP_HEIGHT_SOURCE_TIMEOUT = 5

BACKEND_HEALTH_CACHE_TTL = 10
BACKEND_HEALTH_TIMEOUT = 3

REQUIRED_CONFIRMATIONS = 3

DEFAULT_HOST = '127.0.0.1'
DEFAULT_PORT = 3001
DEFAULT_BACKEND_URL = 'http://localhost:3001'

DEVELOPMENT = 'development'
PRODUCTION = 'production'

_URL_RE = re.compile(r'^https?://.+')


def parse_port(value):
    try:
        port = int(value)
    except (TypeError, ValueError):
        port = None

    if port is None or not 1 <= port <= 65535:
        raise ValidationError('Invalid PORT: %s. Must be a number between 1 and 65535.' % value)
    return port


def check_url(url):
    if not _URL_RE.match(url):
        raise ValidationError('Invalid URL %r: expected http:// or https:// URL' % url)
    return url.rstrip('/')


class Config:
    """Process configuration

    Built once at startup; components are handed the values they need rather
    than reading the environment themselves.
    """

    def __init__(self, environment=DEVELOPMENT,
                 host=DEFAULT_HOST, port=DEFAULT_PORT,
                 backend_url=DEFAULT_BACKEND_URL,
                 cors_origins=(),
                 pool_servers=None, calendar_servers=None,
                 quorum=DEFAULT_QUORUM,
                 request_timeout=REQUEST_TIMEOUT,
                 calendar_timeout=CALENDAR_TIMEOUT,
                 bitcoin_node=None):
        if environment not in (DEVELOPMENT, PRODUCTION):
            raise ValidationError('Unknown environment %r' % environment)

        self.environment = environment
        self.host = host
        self.port = parse_port(port)
        self.backend_url = check_url(backend_url)
        self.cors_origins = list(cors_origins)
        self.pool_servers = [check_url(url) for url in (pool_servers or DEFAULT_POOL_SERVERS)]
        self.calendar_servers = [check_url(url) for url in (calendar_servers or DEFAULT_CALENDAR_SERVERS)]

        if not 0 < quorum <= len(self.pool_servers):
            raise ValidationError('quorum (%d) cannot be greater than available pool server%s (%d) neither less or equal 0' %
                                  (quorum, '' if len(self.pool_servers) == 1 else 's', len(self.pool_servers)))
        self.quorum = quorum

        self.request_timeout = request_timeout
        self.calendar_timeout = calendar_timeout
        self.bitcoin_node = bitcoin_node

    @property
    def production(self):
        return self.environment == PRODUCTION

    @classmethod
    def from_env(cls, environ=None, **overrides):
        """Build from environment variables

        MERKLE_ANCHOR_ENV, HOST, PORT, CORS_ORIGIN, MERKLE_ANCHOR_BACKEND_URL
        """
        if environ is None:
            environ = os.environ

        kwargs = {
            'environment': environ.get('MERKLE_ANCHOR_ENV', DEVELOPMENT),
            'host': environ.get('HOST', DEFAULT_HOST),
            'port': environ.get('PORT', DEFAULT_PORT),
            'backend_url': environ.get('MERKLE_ANCHOR_BACKEND_URL', DEFAULT_BACKEND_URL),
            'cors_origins': [origin.strip() for origin in environ.get('CORS_ORIGIN', '').split(',') if origin.strip()],
        }
        kwargs.update({k: v for k, v in overrides.items() if v is not None})

        config = cls(**kwargs)
        if config.production and not config.cors_origins:
            logging.warning('CORS_ORIGIN not set in production; allowing all origins')
        return config
