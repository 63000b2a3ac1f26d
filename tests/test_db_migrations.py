import os
import unittest
from unittest import mock

from shop_inventory import create_app
from shop_inventory.config import Config
from shop_inventory.db import TRANSFER_QUEUE_INDEXES, TRANSFER_QUEUE_TABLE, close_db
from shop_inventory.db_migrations import queue_schema_status, to_sqlalchemy_url
from tests.helpers.temp_db import TempDbSandbox, open_sqlite_temp_connection


HEAD_REVISION = "20261018_000001"


class DbMigrationsTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="shop_inventory_migrations")
        env_patch = mock.patch.dict(os.environ, {"FLASK_ENV": "development"})
        env_patch.start()
        self.addCleanup(env_patch.stop)

    def tearDown(self) -> None:
        self._temp_db.cleanup()

    def _build_app(self, *, db_auto_init: bool):
        app = create_app(self._temp_db.make_config(Config, TESTING=False, DB_AUTO_INIT=db_auto_init))
        with app.app_context():
            close_db()
        return app

    def _queue_objects(self) -> set[str]:
        conn = open_sqlite_temp_connection(self._temp_db.db_path)
        try:
            rows = conn.execute(
                "SELECT name FROM sqlite_master WHERE type IN ('table', 'index') AND tbl_name = ? "
                "AND name NOT LIKE 'sqlite_autoindex%'",
                (TRANSFER_QUEUE_TABLE,),
            ).fetchall()
        finally:
            conn.close()
        return {row["name"] for row in rows}

    def test_schema_not_created_by_default(self) -> None:
        self._build_app(db_auto_init=False)
        self.assertEqual(self._queue_objects(), set())

    def test_schema_created_with_explicit_dev_flag(self) -> None:
        self._build_app(db_auto_init=True)
        self.assertEqual(self._queue_objects(), {TRANSFER_QUEUE_TABLE, *TRANSFER_QUEUE_INDEXES})

    def test_flask_db_upgrade_and_downgrade(self) -> None:
        runner = self._build_app(db_auto_init=False).test_cli_runner()

        upgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(upgrade_result.exit_code, 0, msg=upgrade_result.output)
        self.assertIn(f"Upgraded {TRANSFER_QUEUE_TABLE} to {HEAD_REVISION}", upgrade_result.output)
        self.assertEqual(self._queue_objects(), {TRANSFER_QUEUE_TABLE, *TRANSFER_QUEUE_INDEXES})

        downgrade_result = runner.invoke(args=["db", "downgrade", "base"])
        self.assertEqual(downgrade_result.exit_code, 0, msg=downgrade_result.output)
        self.assertEqual(self._queue_objects(), set())

        reupgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(reupgrade_result.exit_code, 0, msg=reupgrade_result.output)
        self.assertIn(TRANSFER_QUEUE_TABLE, self._queue_objects())

    def test_current_reports_queue_revision_and_check_fails_before_upgrade(self) -> None:
        app = self._build_app(db_auto_init=False)
        runner = app.test_cli_runner()

        before = runner.invoke(args=["db", "current", "--check"])
        self.assertNotEqual(before.exit_code, 0)
        self.assertIn(f"{TRANSFER_QUEUE_TABLE}: revision none (head {HEAD_REVISION})", before.output)
        self.assertIn("table: missing", before.output)

        runner.invoke(args=["db", "upgrade"])
        after = runner.invoke(args=["db", "current", "--check"])
        self.assertEqual(after.exit_code, 0, msg=after.output)
        self.assertIn(f"revision {HEAD_REVISION}", after.output)
        self.assertIn("table: present", after.output)

        status = queue_schema_status(app)
        self.assertTrue(status["up_to_date"])
        self.assertEqual(status["missing_indexes"], [])

    def test_dev_initialized_schema_needs_stamp(self) -> None:
        app = self._build_app(db_auto_init=True)
        status = queue_schema_status(app)
        self.assertTrue(status["table_present"])
        self.assertIsNone(status["current_revision"])
        self.assertFalse(status["up_to_date"])

        runner = app.test_cli_runner()
        stamp_result = runner.invoke(args=["db", "stamp"])
        self.assertEqual(stamp_result.exit_code, 0, msg=stamp_result.output)
        self.assertTrue(queue_schema_status(app)["up_to_date"])

    def test_stamp_refuses_database_without_queue_table(self) -> None:
        runner = self._build_app(db_auto_init=False).test_cli_runner()
        result = runner.invoke(args=["db", "stamp"])
        self.assertNotEqual(result.exit_code, 0)
        self.assertIn("run 'flask db upgrade' instead", result.output)

    def test_current_lists_missing_indexes(self) -> None:
        app = self._build_app(db_auto_init=True)
        conn = open_sqlite_temp_connection(self._temp_db.db_path)
        try:
            conn.execute("DROP INDEX idx_transfer_queue_retry")
        finally:
            conn.close()

        status = queue_schema_status(app)
        self.assertEqual(status["missing_indexes"], ["idx_transfer_queue_retry"])
        result = app.test_cli_runner().invoke(args=["db", "current"])
        self.assertEqual(result.exit_code, 0, msg=result.output)
        self.assertIn("missing indexes: idx_transfer_queue_retry", result.output)

    def test_sqlalchemy_url_normalization(self) -> None:
        self.assertEqual(to_sqlalchemy_url("postgres://u:p@db/shop"), "postgresql://u:p@db/shop")
        self.assertEqual(to_sqlalchemy_url("sqlite:///already.db"), "sqlite:///already.db")
        self.assertTrue(to_sqlalchemy_url(self._temp_db.db_path).startswith("sqlite:///"))
        with self.assertRaises(RuntimeError):
            to_sqlalchemy_url("  ")


if __name__ == "__main__":
    unittest.main()
