import unittest

from mixroom.dedup import DedupCache


class DedupCacheTests(unittest.TestCase):
    def test_records_and_reports_keys(self):
        cache = DedupCache(capacity=4)
        self.assertFalse(cache.seen_before(("a", 1)))

        cache.record(("a", 1))

        self.assertTrue(cache.seen_before(("a", 1)))
        self.assertFalse(cache.seen_before(("a", 2)))
        self.assertFalse(cache.seen_before(("b", 1)))
        self.assertIn(("a", 1), cache)

    def test_evicts_oldest_insertion_first(self):
        cache = DedupCache(capacity=3)
        for seq in range(1, 5):
            cache.record(("a", seq))

        self.assertEqual(len(cache), 3)
        self.assertFalse(cache.seen_before(("a", 1)))
        for seq in range(2, 5):
            self.assertTrue(cache.seen_before(("a", seq)))

    def test_re_recording_does_not_refresh(self):
        cache = DedupCache(capacity=2)
        cache.record(("a", 1))
        cache.record(("a", 2))
        cache.record(("a", 1))
        cache.record(("a", 3))

        self.assertFalse(cache.seen_before(("a", 1)))
        self.assertTrue(cache.seen_before(("a", 2)))
        self.assertTrue(cache.seen_before(("a", 3)))

    def test_check_and_record(self):
        cache = DedupCache()
        self.assertFalse(cache.check_and_record(("x", 9)))
        self.assertTrue(cache.check_and_record(("x", 9)))
        self.assertEqual(len(cache), 1)

    def test_clear(self):
        cache = DedupCache()
        cache.record(("x", 1))
        cache.clear()
        self.assertEqual(len(cache), 0)
        self.assertFalse(cache.seen_before(("x", 1)))

    def test_rejects_non_positive_capacity(self):
        with self.assertRaises(ValueError):
            DedupCache(capacity=0)


if __name__ == "__main__":
    unittest.main()
