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

"""Error taxonomy

Every failure surfaced by merkle-anchor is one of these. The classes carry a
``code`` used on the wire and a ``retryable`` flag used by the client side to
decide between backing off and giving up.
"""

GENERIC_ERROR_MESSAGE = 'An internal server error occurred. Please try again later.'


class MerkleAnchorError(Exception):
    """Base class for all merkle-anchor errors"""

    code = 'internal_error'
    retryable = False


class ValidationError(MerkleAnchorError, ValueError):
    """Malformed user input: bad hex, wrong size or shape

    Rejected at the boundary; retrying cannot help.
    """

    code = 'validation_error'


class EmptyInputError(ValidationError):
    """Attempted to build a Merkle tree from zero leaves"""

    code = 'empty_input'


class ProtocolError(MerkleAnchorError):
    """Corrupt proof data: bad magic bytes, truncated attestation stream"""

    code = 'protocol_error'


class TruncatedStreamError(ProtocolError):
    """A read went past the end of the data being parsed"""

    def __init__(self, wanted, available):
        super().__init__('Tried to read %d bytes but only %d bytes remain' % (wanted, available))
        self.wanted = wanted
        self.available = available


class UpstreamTimeoutError(MerkleAnchorError):
    """A remote call exceeded its time bound"""

    code = 'upstream_timeout'
    retryable = True


class UpstreamUnavailableError(MerkleAnchorError):
    """Every remote source failed, or too few succeeded to reach quorum"""

    code = 'upstream_unavailable'
    retryable = True


class ProxyUnreachableError(UpstreamUnavailableError):
    """The timestamp proxy itself could not be reached"""

    code = 'backend_unavailable'


class RateLimitedError(UpstreamUnavailableError):
    """Too many requests from one client address"""

    code = 'rate_limited'


class InternalError(MerkleAnchorError):
    """Unexpected failure"""


ERRORS_BY_CODE = {cls.code: cls for cls in (ValidationError,
                                            EmptyInputError,
                                            ProtocolError,
                                            UpstreamTimeoutError,
                                            UpstreamUnavailableError,
                                            ProxyUnreachableError,
                                            RateLimitedError,
                                            InternalError)}


def error_from_code(code, message):
    """Rebuild a typed error from its wire code

    Unknown codes become InternalError.
    """
    cls = ERRORS_BY_CODE.get(code, InternalError)
    return cls(message)


def sanitize_error(exp, production):
    """Message safe to show for exp

    In production only validation and protocol problems are described; those
    are about the caller's own input. Everything else, including upstream
    error text, becomes a generic message. Development returns the full text.
    """
    if not production:
        return str(exp) or exp.__class__.__name__

    if isinstance(exp, (ValidationError, ProtocolError)):
        return str(exp)
    elif isinstance(exp, RateLimitedError):
        return 'Too many requests, please try again later.'
    elif isinstance(exp, UpstreamTimeoutError):
        return 'Request timeout'
    elif isinstance(exp, UpstreamUnavailableError):
        return 'Timestamp servers are currently unavailable. Please try again later.'
    else:
        return GENERIC_ERROR_MESSAGE
