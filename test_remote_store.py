import json
import unittest
from unittest import mock

import requests

from backends import RemoteRejected, RemoteUnavailable, StaleWriteError
from remote_store import HttpProbe, RestBackend, build_remote


def _response(status=200, body=None):
    resp = requests.Response()
    resp.status_code = status
    resp._content = b"" if body is None else json.dumps(body).encode("utf-8")
    return resp


class RestBackendTest(unittest.TestCase):
    def setUp(self):
        self.session = mock.Mock(spec=requests.Session)
        self.backend = RestBackend("https://db.example.local/", api_key="k-123",
                                   timeout=4, session=self.session)

    def _calls(self):
        return self.session.request.call_args_list

    def test_insert_is_idempotent_on_id(self):
        self.session.request.return_value = _response(201, [{"id": "s-1"}])
        self.assertTrue(self.backend.insert_if_absent("sales_records", {"id": "s-1", "quantity": 2}))
        args, kwargs = self._calls()[0]
        self.assertEqual(args, ("POST", "https://db.example.local/rest/v1/sales_records"))
        self.assertEqual(kwargs["params"], {"on_conflict": "id"})
        self.assertIn("resolution=ignore-duplicates", kwargs["headers"]["Prefer"])
        self.assertEqual(kwargs["headers"]["apikey"], "k-123")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer k-123")
        self.assertEqual(kwargs["timeout"], 4)

        self.session.request.return_value = _response(201, [])
        self.assertFalse(self.backend.insert_if_absent("sales_records", {"id": "s-1", "quantity": 2}))

    def test_insert_needs_client_id(self):
        with self.assertRaises(ValueError):
            self.backend.insert_if_absent("sales_records", {"quantity": 2})
        self.session.request.assert_not_called()

    def test_unknown_collection_rejected(self):
        with self.assertRaises(ValueError):
            self.backend.query("users")

    def test_update_applies_match_guards(self):
        self.session.request.return_value = _response(200, [{"id": "s-1"}])
        self.assertTrue(self.backend.update("sales_records", "s-1", {"is_voided": True},
                                            match={"is_voided": False}))
        _, kwargs = self._calls()[0]
        self.assertEqual(kwargs["params"], {"id": "eq.s-1", "is_voided": "eq.false"})
        self.assertEqual(kwargs["json"], {"is_voided": True})

    def test_adjust_uses_rpc(self):
        self.session.request.return_value = _response(200, True)
        self.assertTrue(self.backend.adjust("inventory_items", "i-1", "current_stock", -2, clamp_at_zero=True))
        args, kwargs = self._calls()[0]
        self.assertEqual(args[1], "https://db.example.local/rest/v1/rpc/adjust_field")
        self.assertEqual(kwargs["json"], {"p_table": "inventory_items", "p_id": "i-1",
                                          "p_field": "current_stock", "p_delta": -2, "p_clamp": True})

    def test_adjust_falls_back_to_compare_and_set(self):
        self.session.request.side_effect = [
            _response(404, {"message": "function not found"}),
            _response(200, [{"id": "i-1", "current_stock": 5}]),
            _response(200, [{"id": "i-1", "current_stock": 3}]),
            _response(200, [{"id": "i-1", "current_stock": 3}]),
            _response(200, [{"id": "i-1", "current_stock": 1}]),
        ]
        self.assertTrue(self.backend.adjust("inventory_items", "i-1", "current_stock", -2))
        _, patch = self._calls()[2]
        self.assertEqual(patch["params"], {"id": "eq.i-1", "current_stock": "eq.5"})
        self.assertEqual(patch["json"], {"current_stock": 3.0})
        # the missing RPC is remembered
        self.assertTrue(self.backend.adjust("inventory_items", "i-1", "current_stock", -2))
        self.assertEqual(len(self._calls()), 5)

    def test_strict_adjust_refuses_negative(self):
        self.backend._rpc_missing = True
        self.session.request.return_value = _response(200, [{"id": "b-1", "current_stock": 1}])
        self.assertFalse(self.backend.adjust("inventory_batches", "b-1", "current_stock", -2))
        self.assertEqual(len(self._calls()), 1)

    def test_compare_and_set_gives_up_after_retries(self):
        self.backend._rpc_missing = True
        read = _response(200, [{"id": "i-1", "current_stock": 5}])
        lost = _response(200, [])
        self.session.request.side_effect = [read, lost] * 3
        with self.assertRaises(StaleWriteError):
            self.backend.adjust("inventory_items", "i-1", "current_stock", 1)

    def test_network_errors_are_unavailable(self):
        self.session.request.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(RemoteUnavailable):
            self.backend.get("inventory_items", "i-1")

    def test_server_errors_are_unavailable(self):
        self.session.request.return_value = _response(503, {"message": "maintenance"})
        with self.assertRaises(RemoteUnavailable):
            self.backend.query("inventory_items")

    def test_client_errors_are_rejections(self):
        self.session.request.return_value = _response(409, {"message": "duplicate key"})
        with self.assertRaises(RemoteRejected) as ctx:
            self.backend.update("customers", "c-1", {"name": "X"})
        self.assertEqual(ctx.exception.status, 409)
        self.assertIn("duplicate key", str(ctx.exception))

    def test_query_filters_and_order(self):
        self.session.request.return_value = _response(200, [])
        self.backend.query("sales_records",
                           {"store_id": "s1", "payment_status": ["PENDING", "PARTIAL"], "batch_id": None},
                           order=[("created_at", "desc")], limit=10)
        _, kwargs = self._calls()[0]
        self.assertEqual(kwargs["params"], {
            "select": "*",
            "store_id": "eq.s1",
            "payment_status": "in.(PENDING,PARTIAL)",
            "batch_id": "is.null",
            "order": "created_at.desc",
            "limit": 10,
        })

    def test_prune_ledger_deletes_by_age(self):
        self.session.request.return_value = _response(200, [{"id": "m-1"}, {"id": "m-2"}])
        self.assertEqual(self.backend.prune_ledger("2026-01-01T00:00:00Z"), 2)
        args, kwargs = self._calls()[0]
        self.assertEqual(args, ("DELETE", "https://db.example.local/rest/v1/applied_mutations"))
        self.assertEqual(kwargs["params"], {"applied_at": "lt.2026-01-01T00:00:00Z", "select": "id"})

    def test_probe(self):
        self.session.get.return_value = _response(200, {})
        self.assertTrue(HttpProbe(self.backend, timeout=1)())
        self.session.get.side_effect = requests.Timeout("slow")
        self.assertFalse(HttpProbe(self.backend, timeout=1)())

    def test_build_remote_without_url(self):
        with mock.patch("settings.REMOTE_BASE_URL", None):
            self.assertIsNone(build_remote())


if __name__ == "__main__":
    unittest.main()
