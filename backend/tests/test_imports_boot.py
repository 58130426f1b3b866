from __future__ import annotations

import importlib
import unittest


class ImportsBootTestCase(unittest.TestCase):
    def test_import_create_app(self):
        module = importlib.import_module("bata")
        create_app = getattr(module, "create_app", None)
        self.assertTrue(callable(create_app))

    def test_import_segments(self):
        for name in ("segment_orders", "segment_disputes", "segment_wallet", "segment_admin"):
            module = importlib.import_module(f"bata.segments.{name}")
            self.assertIsNotNone(module)

    def test_import_worker_modules(self):
        self.assertIsNotNone(importlib.import_module("bata.celery_app"))
        self.assertIsNotNone(importlib.import_module("bata.tasks.settlement_tasks"))
        self.assertIsNotNone(importlib.import_module("bata.jobs.escrow_runner"))


if __name__ == "__main__":
    unittest.main()
