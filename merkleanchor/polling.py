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

"""Client-side timestamp polling

A TimestampSession follows one proof from submission to confirmation:

    idle -> stamping -> stamped -> batched/submitted/in_mempool/pending -> anchored -> confirmed

confirmed is terminal. error is entered when the proxy can't be reached or
returns something unusable; it's left again by a successful check.

Everything runs on one asyncio event loop. The next poll is a single timer
handle from loop.call_later(), replaced on every reschedule and cancelled on
reset() and close(). Blocking network calls run in the loop's default
executor.
"""

import asyncio
import logging
import random

from collections import namedtuple

from merkleanchor.client import STATUS_CONFIRMED, backoff_delay
from merkleanchor.errors import (InternalError, MerkleAnchorError, ProxyUnreachableError, ValidationError,
                                 sanitize_error)
from merkleanchor.proxy import STATUS_ANCHORED, STATUS_PENDING


class Status:
    IDLE = 'idle'
    STAMPING = 'stamping'
    STAMPED = 'stamped'
    BATCHED = 'batched'
    SUBMITTED = 'submitted'
    IN_MEMPOOL = 'in_mempool'
    PENDING = STATUS_PENDING
    ANCHORED = STATUS_ANCHORED
    CONFIRMED = STATUS_CONFIRMED
    ERROR = 'error'


TERMINAL_STATUSES = frozenset([Status.CONFIRMED])

# Last Bitcoin transaction known to carry the calendar's commitment
CalendarServerTip = namedtuple('CalendarServerTip', ['tx_hash', 'block_height'])

# Seconds between polls
POLL_INTERVALS = {
    Status.STAMPED: 15,
    Status.BATCHED: 15,
    Status.SUBMITTED: 10,
    Status.IN_MEMPOOL: 10,
}
DEFAULT_POLL_INTERVAL = 30

FIRST_POLL_DELAY = 5

MAX_ERROR_RETRIES = 5
ERROR_BASE_DELAY = 10

STATUS_MESSAGES = {
    Status.STAMPED: 'Submitted to calendar servers',
    Status.BATCHED: 'Waiting for the calendar to batch the commitment',
    Status.SUBMITTED: 'Bitcoin transaction submitted',
    Status.IN_MEMPOOL: 'Bitcoin transaction is in the mempool',
    Status.PENDING: 'Waiting for a Bitcoin attestation',
    Status.ANCHORED: 'Anchored in a Bitcoin block',
    Status.CONFIRMED: 'Confirmed in the Bitcoin blockchain',
}


class TimestampSession:
    """State of one timestamp being tracked

    Only the PollingStateMachine that owns a session modifies it.
    """

    def __init__(self, ots_proof=None, status=Status.IDLE):
        self.ots_proof = ots_proof
        self.status = status
        self.transaction_hash = None
        self.block_info = None
        self.submission_servers = []
        self.calendar_server_tip = None
        self.poll_handle = None
        self.status_message = None
        self.error = None

        self.error_attempts = 0
        self.paused = False

        # Status before the current error, so recovering can't regress it
        self.last_good_status = status

    def __repr__(self):
        return '<TimestampSession status=%s>' % self.status

    @property
    def scheduled(self):
        return self.poll_handle is not None


class PollingStateMachine:
    """Drive a TimestampSession through its lifecycle

    client   - ProxyClient, or anything with stamp() and check_health()
    resolver - StatusResolver, or anything with get_timestamp_status()
    mempool  - optional MempoolClient, consulted once a Bitcoin transaction
               hash is known
    """

    def __init__(self, client, resolver, mempool=None,
                 intervals=None, default_interval=DEFAULT_POLL_INTERVAL,
                 first_poll_delay=FIRST_POLL_DELAY,
                 max_error_retries=MAX_ERROR_RETRIES,
                 error_base_delay=ERROR_BASE_DELAY,
                 jitter=random.random,
                 on_change=None):
        self.client = client
        self.resolver = resolver
        self.mempool = mempool
        self.intervals = dict(POLL_INTERVALS if intervals is None else intervals)
        self.default_interval = default_interval
        self.first_poll_delay = first_poll_delay
        self.max_error_retries = max_error_retries
        self.error_base_delay = error_base_delay
        self.jitter = jitter
        self.on_change = on_change

        self.session = TimestampSession()
        self.closed = False

        self._loop = None
        self._task = None
        self._lock = None
        self._settled = None

    def poll_interval(self, status):
        """Seconds to wait before the next poll while in status"""
        return self.intervals.get(status, self.default_interval)

    def _bind_loop(self):
        loop = asyncio.get_running_loop()
        if self._loop is None:
            self._loop = loop
            self._lock = asyncio.Lock()
            self._settled = asyncio.Event()
        elif self._loop is not loop:
            raise RuntimeError('PollingStateMachine used from a different event loop')
        if self.closed:
            raise RuntimeError('PollingStateMachine is closed')
        return loop

    def _run(self, func, *args):
        return self._loop.run_in_executor(None, func, *args)

    def _set_status(self, status, message=None):
        session = self.session
        session.status = status
        session.status_message = message if message is not None else STATUS_MESSAGES.get(status)
        if status != Status.ERROR:
            session.last_good_status = status
            session.error = None

        logging.debug('Session status: %s' % status)

        if status in TERMINAL_STATUSES or status == Status.IDLE or session.paused:
            self._settled.set()
        else:
            self._settled.clear()

        if self.on_change is not None:
            self.on_change(session)

    def _cancel_timer(self):
        handle = self.session.poll_handle
        if handle is not None:
            handle.cancel()
            self.session.poll_handle = None

    def _schedule(self, delay):
        self._cancel_timer()
        logging.debug('Next check in %.1f seconds' % delay)
        self.session.poll_handle = self._loop.call_later(delay, self._on_timer)

    def _schedule_next(self):
        if self.session.status in TERMINAL_STATUSES:
            self._cancel_timer()
            logging.info('Timestamp %s; polling stopped' % self.session.status)
        else:
            self._schedule(self.poll_interval(self.session.status))

    def _on_timer(self):
        self.session.poll_handle = None
        self._task = self._loop.create_task(self._poll())

    async def _poll(self):
        session = self.session
        try:
            await self._check(session)
        except MerkleAnchorError as exp:
            if self.session is session:
                self._enter_error(exp, retry=exp.retryable)
        except Exception as exp:
            logging.exception('Unexpected error checking timestamp')
            if self.session is session:
                self._enter_error(InternalError(str(exp)), retry=False)
        else:
            if self.session is session:
                session.error_attempts = 0
                self._schedule_next()

    def _enter_error(self, exp, retry):
        session = self.session
        logging.warning('Timestamp check failed: %s' % exp)

        session.error = exp
        if retry and session.error_attempts < self.max_error_retries:
            delay = backoff_delay(session.error_attempts, self.error_base_delay, self.jitter)
            session.error_attempts += 1
            self._schedule(delay)
            message = '%s Retrying in %d seconds.' % (sanitize_error(exp, True), delay)
        else:
            self._cancel_timer()
            session.paused = True
            message = '%s Check again manually to resume.' % sanitize_error(exp, True)

        self._set_status(Status.ERROR, message)

    def _resolve_status(self, result, transaction_status):
        session = self.session
        current = session.last_good_status

        if result.status == Status.CONFIRMED:
            return Status.CONFIRMED
        elif result.status == Status.ANCHORED:
            # Unknown confirmations never take confirmed back to anchored.
            if current == Status.CONFIRMED:
                return Status.CONFIRMED
            return Status.ANCHORED
        elif current in (Status.ANCHORED, Status.CONFIRMED):
            return current
        elif session.transaction_hash is None:
            return Status.BATCHED
        elif transaction_status is None or not transaction_status.in_mempool:
            return Status.SUBMITTED
        elif transaction_status.confirmed:
            return Status.PENDING
        else:
            return Status.IN_MEMPOOL

    async def _check(self, session):
        """One status check; raises MerkleAnchorError on failure"""
        async with self._lock:
            available = await self._run(self.client.check_health)
            if self.session is not session:
                return
            if not available:
                raise ProxyUnreachableError('Backend server unavailable')

            result = await self._run(self.resolver.get_timestamp_status, session.ots_proof)
            if self.session is not session:
                return

            transaction_status = None
            if result.status == Status.PENDING and session.transaction_hash is not None and self.mempool is not None:
                transaction_status = await self._run(self.mempool.transaction_status, session.transaction_hash)
                if self.session is not session:
                    return
                session.calendar_server_tip = CalendarServerTip(session.transaction_hash,
                                                                transaction_status.block_height)

            session.ots_proof = result.ots_proof
            if result.block_info is not None:
                session.block_info = result.block_info
            session.paused = False
            self._set_status(self._resolve_status(result, transaction_status))

    async def stamp(self, root_hex):
        """Submit a Merkle root and start polling

        On failure the session goes back to idle and the error is raised.
        """
        self._bind_loop()
        self.reset()

        session = self.session
        self._set_status(Status.STAMPING, 'Submitting to calendar servers')
        try:
            result = await self._run(self.client.stamp, root_hex)
        except MerkleAnchorError as exp:
            if self.session is session:
                session.error = exp
                self._set_status(Status.IDLE, 'Timestamp failed: %s' % sanitize_error(exp, True))
            raise

        if self.session is not session:
            return session

        session.ots_proof = result.ots_proof
        session.submission_servers = [server['url'] for server in result.servers if server.get('success')]
        self._set_status(Status.STAMPED)
        self._schedule(self.first_poll_delay)
        return session

    async def resume(self, ots_proof):
        """Track an existing proof, checking it right away"""
        self._bind_loop()
        self.reset()

        self.session = TimestampSession(bytes(ots_proof), Status.STAMPED)
        self._set_status(Status.STAMPED)
        await self._poll()
        return self.session

    def track_transaction(self, txid):
        """Attach the Bitcoin transaction hash carrying the calendar's commitment"""
        self.session.transaction_hash = txid

    async def check_now(self):
        """Check immediately, outside the polling schedule

        The scheduled poll isn't moved. If polling had been paused by errors
        and this check succeeds, polling restarts.
        """
        self._bind_loop()
        session = self.session
        if session.ots_proof is None:
            raise ValidationError('No timestamp to check')

        was_paused = session.paused
        try:
            await self._check(session)
        except MerkleAnchorError as exp:
            if self.session is session:
                logging.warning('Manual check failed: %s' % exp)
                session.error = exp
                self._set_status(Status.ERROR, sanitize_error(exp, True))
            return session

        if self.session is session:
            session.error_attempts = 0
            if was_paused or not session.scheduled or session.status in TERMINAL_STATUSES:
                self._schedule_next()
        return session

    async def wait(self):
        """Wait until the session is confirmed, polling has paused, or the
        session is idle again
        """
        self._bind_loop()
        if self.session.status == Status.IDLE:
            return self.session
        await self._settled.wait()
        return self.session

    def reset(self):
        """Stop polling and return to idle"""
        self._cancel_timer()

        task = self._task
        self._task = None
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not None and not task.done() and task is not current:
            task.cancel()

        self.session = TimestampSession()
        if self._settled is not None:
            self._settled.set()

    def close(self):
        self.reset()
        self.closed = True
