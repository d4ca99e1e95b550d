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

import unittest

from merkleanchor.cache import TTLCache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class Test_TTLCache(unittest.TestCase):
    def test_empty(self):
        cache = TTLCache(10, clock=FakeClock())
        with self.assertRaises(KeyError):
            cache.get()
        self.assertIsNone(cache.age())
        self.assertFalse(cache.is_fresh())

    def test_expiry(self):
        """Entries are returned until their TTL runs out"""
        clock = FakeClock()
        cache = TTLCache(45, clock=clock)
        self.assertEqual(cache.refresh(800000), 800000)

        clock.now += 44.9
        self.assertEqual(cache.get(), 800000)
        self.assertAlmostEqual(cache.age(), 44.9)

        clock.now += 0.1
        with self.assertRaises(KeyError):
            cache.get()
        self.assertFalse(cache.is_fresh())

    def test_refresh_replaces(self):
        clock = FakeClock()
        cache = TTLCache(10, clock=clock)
        cache.refresh(True)
        clock.now += 5
        cache.refresh(False)
        self.assertIs(cache.get(), False)
        self.assertEqual(cache.age(), 0)

    def test_clear(self):
        cache = TTLCache(10, clock=FakeClock())
        cache.refresh('x')
        cache.clear()
        self.assertFalse(cache.is_fresh())


if __name__ == '__main__':
    unittest.main()
