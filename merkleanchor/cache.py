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

import time

from collections import namedtuple

CacheEntry = namedtuple('CacheEntry', ['value', 'stored_at'])


class TTLCache:
    """Single cached value with a time-to-live

    Holds process-scoped state such as the Bitcoin tip height or whether the
    timestamp proxy is up. The entry is replaced as a whole on refresh, so
    readers on other threads see either the old or the new entry, never a mix.
    """

    def __init__(self, ttl, clock=time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entry = None

    def get(self):
        """Return the cached value, or raise KeyError if missing or expired"""
        entry = self._entry
        if entry is None:
            raise KeyError('cache empty')

        age = self.clock() - entry.stored_at
        if age >= self.ttl:
            raise KeyError('cache entry expired %.1f seconds ago' % (age - self.ttl))
        return entry.value

    def age(self):
        entry = self._entry
        if entry is None:
            return None
        return self.clock() - entry.stored_at

    def refresh(self, value):
        self._entry = CacheEntry(value, self.clock())
        return value

    def clear(self):
        self._entry = None

    def is_fresh(self):
        try:
            self.get()
            return True
        except KeyError:
            return False
