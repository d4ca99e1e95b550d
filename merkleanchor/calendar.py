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

"""Pool and calendar server wire protocol

POST {server}/digest with the raw 32-byte digest returns a timestamp for it;
GET {server}/timestamp/{commitment} returns 404 while the commitment is still
pending and 200 with an upgraded timestamp once it has been anchored. Servers
answer in binary, hex text or base64 text.
"""

import logging
import socket
import urllib.error
import urllib.request

import opentimestamps.calendar

from bitcoin.core import b2x

from opentimestamps.calendar import CommitmentNotFoundError
from opentimestamps.core.serialize import BytesDeserializationContext, DeserializationError
from opentimestamps.core.timestamp import Timestamp

import merkleanchor

from merkleanchor.errors import ProtocolError, UpstreamTimeoutError, UpstreamUnavailableError
from merkleanchor.otsfile import decode_proof_body

MAX_RESPONSE_BYTES = 100000

USER_AGENT = 'merkle-anchor/%s' % merkleanchor.__version__


def get_sanitised_resp_msg(resp):
    """First line or two of a calendar response, with anything odd replaced by '_'"""

    # No new lines: a second line could pretend to be something else.
    WHITELIST = b'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789#-.,; '

    raw_msg = bytearray(resp.read(160))
    for i in range(len(raw_msg)):
        if raw_msg[i] not in WHITELIST:
            raw_msg[i] = ord('_')

    return raw_msg.decode()


def _is_timeout(exp):
    if isinstance(exp, socket.timeout):
        return True
    return isinstance(exp, urllib.error.URLError) and isinstance(exp.reason, socket.timeout)


def deserialize_timestamp(body, content_type, msg):
    """Timestamp for msg from a calendar response body

    Raises ProtocolError if the body isn't a valid timestamp.
    """
    resp_bytes = decode_proof_body(body, content_type)
    ctx = BytesDeserializationContext(resp_bytes)
    try:
        return Timestamp.deserialize(ctx, msg)
    except (DeserializationError, ValueError) as exp:
        raise ProtocolError('Invalid timestamp from calendar: %s' % exp)


class RemoteCalendar(opentimestamps.calendar.RemoteCalendar):
    """Remote pool or calendar server

    Errors are reported as UpstreamTimeoutError, UpstreamUnavailableError or
    ProtocolError. A commitment the calendar doesn't (yet) have raises
    CommitmentNotFoundError.
    """

    def __init__(self, url, user_agent=USER_AGENT):
        super().__init__(url, user_agent=user_agent)

    def _read_response(self, resp):
        resp_bytes = resp.read(MAX_RESPONSE_BYTES + 1)
        if len(resp_bytes) > MAX_RESPONSE_BYTES:
            raise UpstreamUnavailableError('%s: calendar response exceeded size limit' % self.url)

        content_type = resp.headers.get('Content-Type', '')
        logging.debug('%s returned %d bytes (content-type: %s)' % (self.url, len(resp_bytes), content_type or 'none'))
        return resp_bytes, content_type

    def _open(self, req, timeout):
        try:
            return urllib.request.urlopen(req, timeout=timeout)
        except urllib.error.HTTPError:
            raise
        except (urllib.error.URLError, socket.timeout, OSError) as exp:
            if _is_timeout(exp):
                raise UpstreamTimeoutError('%s: timed out' % self.url)
            raise UpstreamUnavailableError('%s: %s' % (self.url, getattr(exp, 'reason', exp)))

    def submit(self, digest, timeout=None):
        """Submit a digest to the calendar

        Returns a Timestamp committing to that digest
        """
        req = urllib.request.Request(self.url + '/digest', data=digest, headers=self.request_headers)
        try:
            with self._open(req, timeout) as resp:
                if resp.status != 200:
                    raise UpstreamUnavailableError('%s: unknown response from calendar: %d' % (self.url, resp.status))
                body, content_type = self._read_response(resp)

        except urllib.error.HTTPError as exp:
            raise UpstreamUnavailableError('%s: calendar server error: %d %s' % (self.url, exp.code, get_sanitised_resp_msg(exp)))
        except socket.timeout:
            raise UpstreamTimeoutError('%s: timed out reading response' % self.url)

        return deserialize_timestamp(body, content_type, digest)

    def get_timestamp(self, commitment, timeout=None):
        """Get a timestamp for a given commitment

        Raises CommitmentNotFoundError if the calendar doesn't have that
        commitment; that is the normal answer while it is still pending.
        """
        req = urllib.request.Request(self.url + '/timestamp/' + b2x(commitment),
                                     headers=self.request_headers)
        try:
            with self._open(req, timeout) as resp:
                if resp.status != 200:
                    raise UpstreamUnavailableError('%s: unknown response from calendar: %d' % (self.url, resp.status))
                body, content_type = self._read_response(resp)

        except urllib.error.HTTPError as exp:
            if exp.code == 404:
                raise CommitmentNotFoundError(get_sanitised_resp_msg(exp))
            raise UpstreamUnavailableError('%s: calendar server error: %d' % (self.url, exp.code))
        except socket.timeout:
            raise UpstreamTimeoutError('%s: timed out reading response' % self.url)

        return deserialize_timestamp(body, content_type, commitment)
