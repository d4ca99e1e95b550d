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

"""Bitcoin chain tip and confirmation counts

The tip height is fetched from several independent public APIs at once and
the first answer wins; it's then cached for a short while so that frequent
status checks don't hammer those APIs.
"""

import json
import logging
import socket
import urllib.error
import urllib.request

from collections import namedtuple

import bitcoin.rpc

from merkleanchor import config
from merkleanchor.cache import TTLCache
from merkleanchor.errors import ValidationError, UpstreamTimeoutError, UpstreamUnavailableError
from merkleanchor.fanout import first_success

MEMPOOL_API = 'https://mempool.space/api'
BLOCKSTREAM_API = 'https://blockstream.info/api'

ConfirmationStatus = namedtuple('ConfirmationStatus', ['confirmations', 'tip_height', 'available'])

TransactionStatus = namedtuple('TransactionStatus',
                               ['in_mempool', 'confirmed', 'block_height', 'block_hash', 'fee', 'size', 'error'])
TransactionStatus.__new__.__defaults__ = (False, None, None, None, None, None)


def http_get(url, timeout):
    """GET url, returning the body as bytes"""
    req = urllib.request.Request(url, headers={'User-Agent': 'merkle-anchor'})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except urllib.error.HTTPError:
        raise
    except socket.timeout:
        raise UpstreamTimeoutError('%s: timed out' % url)
    except urllib.error.URLError as exp:
        if isinstance(exp.reason, socket.timeout):
            raise UpstreamTimeoutError('%s: timed out' % url)
        raise UpstreamUnavailableError('%s: %s' % (url, exp.reason))


def parse_height(text):
    try:
        height = int(text.strip())
    except ValueError:
        raise UpstreamUnavailableError('Invalid tip height %r' % text[:32])
    if height < 0:
        raise UpstreamUnavailableError('Invalid tip height %d' % height)
    return height


def mempool_tip_height(timeout):
    return parse_height(http_get(MEMPOOL_API + '/blocks/tip/height', timeout).decode('utf8', 'replace'))


def blockstream_tip_height(timeout):
    return parse_height(http_get(BLOCKSTREAM_API + '/blocks/tip/height', timeout).decode('utf8', 'replace'))


def mempool_tip_block_height(timeout):
    """Tip height by way of the tip block hash"""
    block_hash = http_get(MEMPOOL_API + '/blocks/tip/hash', timeout).decode('utf8', 'replace').strip()
    try:
        block = json.loads(http_get(MEMPOOL_API + '/block/' + block_hash, timeout).decode('utf8'))
        return parse_height(str(block['height']))
    except (ValueError, KeyError, TypeError) as exp:
        raise UpstreamUnavailableError('Invalid block data for %s: %s' % (block_hash, exp))


def bitcoin_node_tip_height(service_url):
    """Tip height source backed by a local Bitcoin Core node"""
    def bitcoin_node(timeout):
        proxy = bitcoin.rpc.Proxy(service_url=service_url, timeout=timeout)
        try:
            return proxy.getblockcount()
        except (bitcoin.rpc.JSONRPCError, ConnectionError, OSError) as exp:
            raise UpstreamUnavailableError('Could not connect to Bitcoin node: %s' % exp)
        finally:
            proxy.close()
    return bitcoin_node


DEFAULT_TIP_HEIGHT_SOURCES = (mempool_tip_height, blockstream_tip_height, mempool_tip_block_height)


def count_confirmations(tip_height, block_height):
    return max(0, tip_height - block_height + 1)


class ConfirmationTracker:
    """Compute confirmation counts against a cached chain tip"""

    def __init__(self, cache=None, sources=DEFAULT_TIP_HEIGHT_SOURCES,
                 source_timeout=config.TIP_HEIGHT_SOURCE_TIMEOUT):
        if cache is None:
            cache = TTLCache(config.TIP_HEIGHT_CACHE_TTL)
        self.cache = cache
        self.sources = list(sources)
        self.source_timeout = source_timeout

    @classmethod
    def from_config(cls, cfg, **kwargs):
        sources = list(DEFAULT_TIP_HEIGHT_SOURCES)
        if cfg.bitcoin_node is not None:
            sources.insert(0, bitcoin_node_tip_height(cfg.bitcoin_node))
        return cls(sources=sources, **kwargs)

    def tip_height(self):
        """Current tip height, or None if no source answered"""
        try:
            tip_height = self.cache.get()
        except KeyError:
            pass
        else:
            logging.debug('Using cached tip height: %d (age: %ds)' % (tip_height, self.cache.age()))
            return tip_height

        # Sources run concurrently, each bounded by its own timeout, so the
        # overall bound is just a little longer than that.
        result = first_success(lambda source: source(self.source_timeout),
                               self.sources, self.source_timeout + 1)

        if not result.successes:
            for source, exp in result.failures:
                logging.warning('Tip height source %s failed: %s' % (source.__name__, exp))
            for source in result.pending:
                logging.warning('Tip height source %s timed out' % source.__name__)
            return None

        source, tip_height = result.successes[0]
        logging.debug('Got tip height %d from %s' % (tip_height, source.__name__))
        return self.cache.refresh(tip_height)

    def confirmations(self, block_height):
        """Confirmations for a block at block_height

        available is False when the tip height couldn't be determined; that
        means unknown, not zero confirmations.
        """
        if block_height.__class__ is not int or block_height < 0:
            raise ValidationError('Invalid block height: %r' % (block_height,))

        tip_height = self.tip_height()
        if tip_height is None:
            return ConfirmationStatus(None, None, False)

        return ConfirmationStatus(count_confirmations(tip_height, block_height), tip_height, True)


class MempoolClient:
    """Transaction lookups against the mempool.space API"""

    def __init__(self, api_url=MEMPOOL_API, timeout=config.TIP_HEIGHT_SOURCE_TIMEOUT):
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout

    def transaction_status(self, txid):
        """Status of a transaction; never raises for network problems"""
        try:
            body = http_get('%s/tx/%s' % (self.api_url, txid), self.timeout)
            tx = json.loads(body.decode('utf8'))
            status = tx.get('status') or {}
        except urllib.error.HTTPError as exp:
            if exp.code == 404:
                return TransactionStatus(in_mempool=False)
            return TransactionStatus(in_mempool=False, error='Mempool API error: %d' % exp.code)
        except (UpstreamTimeoutError, UpstreamUnavailableError, ValueError, AttributeError) as exp:
            return TransactionStatus(in_mempool=False, error=str(exp))

        confirmed = bool(status.get('confirmed'))
        return TransactionStatus(in_mempool=True,
                                 confirmed=confirmed,
                                 block_height=status.get('block_height'),
                                 block_hash=status.get('block_hash'),
                                 fee=tx.get('fee'),
                                 size=tx.get('size'))
