import threading
import unittest
from http.server import ThreadingHTTPServer
from unittest.mock import patch

import requests

import ocoguard_mod.health as health
from ocoguard_mod.session_state import CONNECTED, SessionState


class TestHealthEndpoint(unittest.TestCase):
    def setUp(self):
        self.state = SessionState()
        self.state.update(
            state=CONNECTED,
            connected=True,
            listen_key="SECRETLISTENKEY",
            last_event_at=1700000000000,
            last_error="ws closed",
        )
        self.state.bump_reconnects()
        self.server = ThreadingHTTPServer(("127.0.0.1", 0), health._make_handler(self.state.snapshot))
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        self.base = f"http://127.0.0.1:{self.server.server_address[1]}"
        self.http = requests.Session()
        self.http.trust_env = False

    def tearDown(self):
        self.http.close()
        health.stop_health_server((self.server, self.thread))

    def test_health_returns_session_snapshot(self):
        r = self.http.get(self.base + "/health", timeout=5)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.headers["Content-Type"], "application/json")
        doc = r.json()
        self.assertTrue(doc["ok"])
        self.assertTrue(doc["connected"])
        self.assertEqual(doc["state"], CONNECTED)
        self.assertEqual(doc["reconnects"], 1)
        self.assertEqual(doc["last_event_at"], 1700000000000)
        self.assertEqual(doc["last_fill_at"], 0)
        self.assertEqual(doc["last_error"], "ws closed")
        self.assertIsNone(doc["last_cancel"])
        self.assertEqual(doc["last_cancel_at"], 0)
        self.assertIn("now", doc)

    def test_listen_key_never_exposed(self):
        r = self.http.get(self.base + "/health", timeout=5)
        self.assertNotIn("listen_key", r.json())
        self.assertNotIn("SECRETLISTENKEY", r.text)

    def test_query_string_is_ignored(self):
        r = self.http.get(self.base + "/health?x=1", timeout=5)
        self.assertEqual(r.status_code, 200)

    def test_other_paths_and_methods_404(self):
        r = self.http.get(self.base + "/", timeout=5)
        self.assertEqual(r.status_code, 404)
        self.assertEqual(r.json(), {"ok": False, "error": "not found"})
        r = self.http.post(self.base + "/health", timeout=5)
        self.assertEqual(r.status_code, 404)


class TestStartHealthServer(unittest.TestCase):
    def test_port_zero_disables(self):
        self.assertIsNone(health.start_health_server(SessionState(), 0))

    def test_stop_none_is_noop(self):
        health.stop_health_server(None)

    def test_start_and_stop(self):
        with patch.object(health, "log_event") as log_event, \
             patch.object(health, "ThreadingHTTPServer") as server_cls:
            server = server_cls.return_value
            server.server_address = ("0.0.0.0", 18080)
            handle = health.start_health_server(SessionState(), 18080)
            self.assertIsNotNone(handle)
            server_cls.assert_called_once()
            self.assertEqual(server_cls.call_args[0][0], ("0.0.0.0", 18080))
            health.stop_health_server(handle)
            server.shutdown.assert_called_once()
            server.server_close.assert_called_once()
        self.assertEqual(log_event.call_args[0][0], "HEALTH_SERVER_STARTED")


if __name__ == "__main__":
    unittest.main()
