import os
import tempfile
import unittest

from shop_inventory import create_app
from shop_inventory.config import Config
from shop_inventory.db import TRANSFER_QUEUE_TABLE, close_db
from tests.helpers.temp_db import TempDbSandbox, assert_safe_temp_db_path, open_sqlite_temp_connection


class TempDbHelperTest(unittest.TestCase):
    def test_sandbox_holds_queue_schema_and_is_removed(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_sanity")
        temp_dir = sandbox.temp_dir
        self.assertTrue(os.path.realpath(sandbox.db_path).startswith(os.path.realpath(tempfile.gettempdir())))

        app = create_app(sandbox.make_config(Config, TESTING=True))
        with app.app_context():
            close_db()

        conn = open_sqlite_temp_connection(sandbox.db_path)
        try:
            row = conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
                (TRANSFER_QUEUE_TABLE,),
            ).fetchone()
            self.assertIsNotNone(row)
        finally:
            conn.close()

        sandbox.cleanup()
        self.assertFalse(os.path.exists(temp_dir))

    def test_make_config_keeps_posting_loop_off(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_config")
        self.addCleanup(sandbox.cleanup)

        config = sandbox.make_config(Config, TRANSFER_POSTING_BATCH_SIZE=2)
        self.assertTrue(issubclass(config, Config))
        self.assertFalse(config.TRANSFER_POSTING_ENABLED)
        self.assertFalse(config.LOG_JSON)
        self.assertEqual(config.DB_PATH, sandbox.db_path)
        self.assertEqual(config.TRANSFER_POSTING_BATCH_SIZE, 2)

    def test_disallow_workspace_paths(self) -> None:
        workspace_db = os.path.join(os.path.dirname(os.path.dirname(__file__)), "shop_inventory_test.db")
        with self.assertRaises(ValueError):
            assert_safe_temp_db_path(workspace_db)


if __name__ == "__main__":
    unittest.main()
