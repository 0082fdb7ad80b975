import unittest

from ocoguard_mod.session_state import CONNECTED, DISCONNECTED, SessionState


class TestSessionState(unittest.TestCase):
    def test_initial_snapshot(self):
        snap = SessionState().snapshot()
        self.assertEqual(snap["state"], DISCONNECTED)
        self.assertFalse(snap["connected"])
        self.assertEqual(snap["reconnects"], 0)
        self.assertIsNone(snap["last_cancel"])
        self.assertEqual(snap["last_cancel_at"], 0)

    def test_update_rejects_unknown_and_private_fields(self):
        st = SessionState()
        with self.assertRaises(AttributeError):
            st.update(bogus=1)
        with self.assertRaises(AttributeError):
            st.update(_lock=None)
        st.update(state=CONNECTED, connected=True)
        self.assertEqual(st.snapshot()["state"], CONNECTED)

    def test_snapshot_is_a_copy(self):
        st = SessionState()
        st.update(last_cancel={"mode": "SIDE", "errors": []})
        snap = st.snapshot()
        snap["last_cancel"]["errors"].append("x")
        self.assertEqual(st.snapshot()["last_cancel"]["errors"], [])

    def test_bump_reconnects(self):
        st = SessionState()
        self.assertEqual(st.bump_reconnects(), 1)
        self.assertEqual(st.bump_reconnects(), 2)
        self.assertEqual(st.snapshot()["reconnects"], 2)


if __name__ == "__main__":
    unittest.main()
