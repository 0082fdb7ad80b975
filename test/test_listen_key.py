import unittest
from unittest.mock import MagicMock, patch

import ocoguard_mod.listen_key as listen_key
from ocoguard_mod.binance_api import TransportError, UpstreamError


class TestListenKeyManager(unittest.TestCase):
    def setUp(self):
        self._log = patch.object(listen_key, "log_event")
        self.log_event = self._log.start()
        self.addCleanup(self._log.stop)
        self.create = MagicMock(return_value="pqia91ma19a5s61cv6a81va65sdf19v8a65a1")
        self.keepalive = MagicMock(return_value={})
        self.close = MagicMock(return_value={})
        self.mgr = listen_key.ListenKeyManager(self.create, self.keepalive, self.close)

    def _actions(self):
        return [c.args[0] for c in self.log_event.call_args_list]

    def test_acquire_stores_current_and_logs_short_key(self):
        key = self.mgr.acquire()
        self.assertEqual(key, "pqia91ma19a5s61cv6a81va65sdf19v8a65a1")
        self.assertEqual(self.mgr.current, key)
        logged = self.log_event.call_args.kwargs["listen_key"]
        self.assertEqual(logged, "pqia91...")

    def test_acquire_errors_propagate(self):
        self.create.side_effect = TransportError("timeout")
        with self.assertRaises(TransportError):
            self.mgr.acquire()
        self.assertIsNone(self.mgr.current)

    def test_renew_failure_is_logged_not_raised(self):
        self.mgr.acquire()
        self.keepalive.side_effect = UpstreamError("PUT", "/fapi/v1/listenKey", 400, '{"code":-1125}')
        self.assertFalse(self.mgr.renew())
        self.assertIn("LISTEN_KEY_KEEPALIVE_FAIL", self._actions())

    def test_renew_uses_current_key(self):
        key = self.mgr.acquire()
        self.assertTrue(self.mgr.renew())
        self.keepalive.assert_called_once_with(key)

    def test_renew_without_key_is_noop(self):
        self.assertFalse(self.mgr.renew())
        self.keepalive.assert_not_called()

    def test_release_swallows_errors_and_clears_current(self):
        key = self.mgr.acquire()
        self.close.side_effect = TransportError("connection reset")
        self.mgr.release()
        self.close.assert_called_once_with(key)
        self.assertIsNone(self.mgr.current)
        self.assertIn("LISTEN_KEY_RELEASE_IGNORED", self._actions())

    def test_release_old_key_keeps_current(self):
        self.mgr.current = "NEW"
        self.mgr.release("OLD")
        self.close.assert_called_once_with("OLD")
        self.assertEqual(self.mgr.current, "NEW")

    def test_release_without_key_is_noop(self):
        self.mgr.release()
        self.close.assert_not_called()

    def test_defaults_to_binance_api(self):
        with patch.object(listen_key.binance_api, "listen_key_create", return_value="K"):
            mgr = listen_key.ListenKeyManager()
            self.assertEqual(mgr.acquire(), "K")


if __name__ == "__main__":
    unittest.main()
