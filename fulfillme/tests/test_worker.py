import time
import unittest
from unittest.mock import patch

from fulfillme.db import InMemoryDbClient, NeedRecord
from fulfillme.types import NeedStatus
from fulfillme.worker import sweep_expired_needs


class WorkerTests(unittest.TestCase):
    def _need(self, need_id: str, expires_at: float, status=NeedStatus.ACTIVE):
        return NeedRecord(
            need_id=need_id,
            user_id="asker",
            title="t",
            description="d",
            budget=10,
            category="other",
            location="Thika",
            status=status,
            expires_at=expires_at,
        )

    def test_sweep_removes_expired_regardless_of_status(self):
        db = InMemoryDbClient()
        now = time.time()
        db.create_need(self._need("old-active", now - 10))
        db.create_need(self._need("old-fulfilled", now - 10, NeedStatus.FULFILLED))
        db.create_need(self._need("fresh", now + 3600))

        removed = sweep_expired_needs(db)

        self.assertEqual(removed, 2)
        self.assertEqual(list(db.needs), ["fresh"])

    def test_sweep_nothing_expired(self):
        db = InMemoryDbClient()
        db.create_need(self._need("fresh", time.time() + 3600))
        self.assertEqual(sweep_expired_needs(db), 0)

    @patch("fulfillme.worker.get_db_client")
    def test_sweep_uses_default_client(self, mock_get_db):
        db = InMemoryDbClient()
        mock_get_db.return_value = db
        db.create_need(self._need("old", 1.0))
        self.assertEqual(sweep_expired_needs(), 1)
        mock_get_db.assert_called_once()


if __name__ == "__main__":
    unittest.main()
