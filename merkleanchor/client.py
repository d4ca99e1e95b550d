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

"""Client for the timestamp proxy's JSON API"""

import json
import logging
import random
import socket
import time
import urllib.error
import urllib.request

from collections import namedtuple

from merkleanchor import config
from merkleanchor.cache import TTLCache
from merkleanchor.confirmations import ConfirmationTracker
from merkleanchor.errors import (ProxyUnreachableError, UpstreamTimeoutError, UpstreamUnavailableError,
                                 error_from_code)
from merkleanchor.otsfile import validate
from merkleanchor.proxy import (STATUS_ANCHORED, STATUS_PENDING, StampResult, UpgradeResult,
                                parse_digest_hex, validate_ots_array)

STATUS_CONFIRMED = 'confirmed'

MAX_ATTEMPTS = 3
BASE_DELAY = 1.0

BlockInfo = namedtuple('BlockInfo', ['height', 'confirmations', 'confirmations_available'])
TimestampStatus = namedtuple('TimestampStatus', ['status', 'upgraded', 'ots_proof', 'block_info'])


def backoff_delay(attempt, base_delay=BASE_DELAY, jitter=random.random):
    """Exponential backoff plus up to a second of jitter"""
    return base_delay * 2 ** attempt + jitter()


class ProxyClient:
    """Talks to a merkle-anchor server over HTTP

    Errors the server reports come back as the same typed errors the server
    raised; a server that can't be reached raises ProxyUnreachableError.
    """

    def __init__(self, backend_url=config.DEFAULT_BACKEND_URL,
                 timeout=config.REQUEST_TIMEOUT + 5,
                 health_cache=None,
                 health_timeout=config.BACKEND_HEALTH_TIMEOUT,
                 max_attempts=MAX_ATTEMPTS,
                 base_delay=BASE_DELAY,
                 sleep=time.sleep):
        self.backend_url = backend_url.rstrip('/')
        self.timeout = timeout
        if health_cache is None:
            health_cache = TTLCache(config.BACKEND_HEALTH_CACHE_TTL)
        self.health_cache = health_cache
        self.health_timeout = health_timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.sleep = sleep

    def _request(self, path, payload=None, timeout=None):
        url = self.backend_url + path
        data = None
        headers = {'Accept': 'application/json'}
        if payload is not None:
            data = json.dumps(payload).encode('utf8')
            headers['Content-Type'] = 'application/json'

        req = urllib.request.Request(url, data=data, headers=headers)
        try:
            with urllib.request.urlopen(req, timeout=timeout or self.timeout) as resp:
                body = resp.read()

        except urllib.error.HTTPError as exp:
            try:
                err = json.loads(exp.read().decode('utf8'))
                message, code = err['error'], err.get('code')
            except (ValueError, KeyError, TypeError):
                raise UpstreamUnavailableError('%s: HTTP error %d' % (url, exp.code))

            if code is None:
                code = 'upstream_timeout' if exp.code == 408 else 'internal_error'
            raise error_from_code(code, message)

        except socket.timeout:
            raise UpstreamTimeoutError('%s: timed out' % url)

        except urllib.error.URLError as exp:
            if isinstance(exp.reason, socket.timeout):
                raise UpstreamTimeoutError('%s: timed out' % url)
            raise ProxyUnreachableError('Backend server unavailable at %s: %s' % (self.backend_url, exp.reason))

        try:
            return json.loads(body.decode('utf8'))
        except ValueError:
            raise UpstreamUnavailableError('%s: invalid JSON response' % url)

    def check_health(self):
        """True if the server answers its health check; cached briefly"""
        try:
            available = self.health_cache.get()
        except KeyError:
            pass
        else:
            logging.debug('Using cached backend health: %s' % available)
            return available

        try:
            resp = self._request('/api/health', timeout=self.health_timeout)
            available = resp.get('status') == 'OK'
        except (UpstreamTimeoutError, UpstreamUnavailableError, AttributeError) as exp:
            logging.warning('Backend health check failed: %s' % exp)
            available = False

        logging.debug('Backend health check result: %s' % available)
        return self.health_cache.refresh(available)

    def retry_backend_operation(self, operation):
        """Call operation(), retrying while the server can't be reached"""
        for attempt in range(self.max_attempts):
            try:
                return operation()
            except ProxyUnreachableError as exp:
                self.health_cache.clear()
                if attempt == self.max_attempts - 1:
                    raise

                delay = backoff_delay(attempt, self.base_delay)
                logging.info('%s; retrying in %.1f seconds' % (exp, delay))
                self.sleep(delay)

    def stamp(self, root_hex):
        digest = parse_digest_hex(root_hex)
        root_hex = digest.hex()
        logging.info('Calling backend to stamp %s...' % root_hex[:16])

        resp = self.retry_backend_operation(lambda: self._request('/api/stamp', {'merkleRootHex': root_hex}))
        try:
            ots_proof = validate_ots_array(resp['otsFile'])
            result = StampResult(ots_proof, resp.get('server'), resp.get('servers', []))
        except (KeyError, TypeError) as exp:
            raise UpstreamUnavailableError('Invalid stamp response: %s' % exp)

        validate(ots_proof, strict=False)

        logging.info('Backend stamp successful, OTS file: %d bytes' % len(ots_proof))
        return result

    def upgrade(self, ots_proof):
        logging.info('Calling backend to upgrade OTS file (%d bytes)' % len(ots_proof))

        payload = {'otsFile': list(ots_proof)}
        resp = self.retry_backend_operation(lambda: self._request('/api/upgrade', payload))
        try:
            upgraded_proof = validate_ots_array(resp['otsFile'])
            upgraded = bool(resp.get('upgraded'))
            status = resp.get('status') or (STATUS_ANCHORED if upgraded else STATUS_PENDING)
            result = UpgradeResult(upgraded_proof, upgraded, status, resp.get('blockHeight'))
        except (KeyError, TypeError) as exp:
            raise UpstreamUnavailableError('Invalid upgrade response: %s' % exp)

        validate(result.ots_proof, strict=False)

        logging.info('Backend upgrade successful, upgraded: %s, status: %s' % (result.upgraded, result.status))
        return result


class StatusResolver:
    """Upgrade a proof and work out how far along it is

    confirmed needs a Bitcoin attestation and at least
    required_confirmations confirmations; an attestation alone is anchored.
    """

    def __init__(self, client, tracker=None, required_confirmations=config.REQUIRED_CONFIRMATIONS):
        self.client = client
        self.tracker = tracker if tracker is not None else ConfirmationTracker()
        self.required_confirmations = required_confirmations

    def get_timestamp_status(self, ots_proof):
        result = self.client.upgrade(ots_proof)

        if not (result.upgraded and result.block_height is not None):
            logging.debug('Status: %s' % result.status)
            return TimestampStatus(result.status, result.upgraded, result.ots_proof, None)

        logging.info('Has Bitcoin attestation at block %d' % result.block_height)
        conf = self.tracker.confirmations(result.block_height)

        if conf.available and conf.confirmations >= self.required_confirmations:
            status = STATUS_CONFIRMED
        else:
            status = STATUS_ANCHORED

        block_info = BlockInfo(result.block_height, conf.confirmations, conf.available)
        return TimestampStatus(status, True, result.ots_proof, block_info)
