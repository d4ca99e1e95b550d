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

"""Concurrent fan-out to independent remote servers

Each target is called on its own thread and results are collected from a
queue in arrival order, until enough successes have come in, every target
has answered, or the time bound runs out. Threads still running at that point
are abandoned; nothing they return afterwards is looked at.
"""

import logging
import threading
import time

from collections import namedtuple
from queue import Queue, Empty

FanOutResult = namedtuple('FanOutResult', ['successes', 'failures', 'pending'])
FanOutResult.__doc__ = """Outcome of a fan-out

successes - list of (target, result) in arrival order
failures  - list of (target, exception) in arrival order
pending   - targets that had not answered when collection stopped
"""


def _call(func, idx, target, q):
    try:
        result = func(target)
    except Exception as exp:
        q.put((idx, False, exp))
    else:
        q.put((idx, True, result))


def fan_out(func, targets, timeout, need=None, clock=time.monotonic):
    """Call func(target) for every target concurrently

    need    - stop collecting once this many successes have arrived; None
              waits for every target
    timeout - overall bound, in seconds, on collecting results
    """
    targets = list(targets)
    q = Queue()
    for idx, target in enumerate(targets):
        t = threading.Thread(target=_call, args=(func, idx, target, q), daemon=True)
        t.start()

    successes = []
    failures = []
    answered = set()

    start = clock()
    for _i in range(len(targets)):
        if need is not None and len(successes) >= need:
            break

        remaining = max(0, timeout - (clock() - start))
        try:
            idx, ok, value = q.get(block=True, timeout=remaining)
        except Empty:
            # Timeout
            break

        answered.add(idx)
        if ok:
            successes.append((targets[idx], value))
        else:
            logging.debug('%s: %s' % (targets[idx], value))
            failures.append((targets[idx], value))

    pending = [target for idx, target in enumerate(targets) if idx not in answered]

    logging.debug('Fan-out to %d target%s: %d succeeded, %d failed, %d pending after %.2f seconds' %
                  (len(targets), '' if len(targets) == 1 else 's',
                   len(successes), len(failures), len(pending), clock() - start))

    return FanOutResult(successes, failures, pending)


def first_success(func, targets, timeout, clock=time.monotonic):
    """Race targets; the first successful answer wins"""
    return fan_out(func, targets, timeout, need=1, clock=clock)
