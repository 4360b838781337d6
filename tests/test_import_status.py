import unittest

from contentpilot.core.usecases import import_status as st


class ImportStatusTests(unittest.TestCase):
    def test_forward_moves_are_allowed(self):
        self.assertTrue(st.can_transition(st.PENDING, st.DISCOVERING))
        self.assertTrue(st.can_transition(st.SCRAPING, st.CATEGORIZING))
        self.assertTrue(st.can_transition(st.CATEGORIZING, st.REVIEW_PENDING))
        self.assertTrue(st.can_transition(st.REVIEW_PENDING, st.APPROVED))

    def test_backward_moves_are_rejected(self):
        self.assertFalse(st.can_transition(st.CATEGORIZING, st.SCRAPING))
        self.assertEqual(st.forward_status(st.CATEGORIZING, st.SCRAPING), st.CATEGORIZING)

    def test_failed_reachable_from_any_non_terminal(self):
        for status in (st.PENDING, st.DISCOVERING, st.SCRAPING, st.CATEGORIZING, st.REVIEW_PENDING):
            self.assertTrue(st.can_transition(status, st.FAILED), status)

    def test_terminal_statuses_stay_put(self):
        self.assertFalse(st.can_transition(st.APPROVED, st.FAILED))
        self.assertFalse(st.can_transition(st.FAILED, st.PENDING))

    def test_sources_for_failed_excludes_approved(self):
        sources = st.sources_for(st.FAILED)
        self.assertIn(st.PENDING, sources)
        self.assertNotIn(st.APPROVED, sources)

    def test_runnable(self):
        self.assertTrue(st.is_runnable(st.SCRAPING))
        self.assertFalse(st.is_runnable(st.REVIEW_PENDING))
        self.assertFalse(st.is_runnable(None))
