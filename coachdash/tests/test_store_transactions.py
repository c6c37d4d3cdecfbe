import unittest

from coachdash.db.store import open_store
from coachdash.errors import DatabaseError


class StoreTransactionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = await open_store(":memory:")

    async def asyncTearDown(self) -> None:
        await self.store.close()

    async def test_nested_blocks_commit_once_at_the_outermost_level(self) -> None:
        async with self.store.transaction("outer"):
            await self.store.projects.ensure("P-1", "alpha", "2026-01-01T00:00:00.000000Z")
            async with self.store.transaction("inner"):
                await self.store.projects.ensure("P-2", "beta", "2026-01-01T00:00:00.000000Z")
            self.assertTrue(self.store.db.in_transaction)
        self.assertFalse(self.store.db.in_transaction)
        self.assertIsNotNone(await self.store.projects.get_by_name("beta"))

    async def test_failure_in_inner_block_rolls_back_everything(self) -> None:
        with self.assertRaises(RuntimeError):
            async with self.store.transaction("outer"):
                await self.store.projects.ensure("P-1", "alpha", "2026-01-01T00:00:00.000000Z")
                async with self.store.transaction("inner"):
                    raise RuntimeError("boom")
        self.assertIsNone(await self.store.projects.get_by_name("alpha"))
        self.assertEqual(self.store._depth, 0)

    async def test_sqlite_errors_are_wrapped_with_the_operation_name(self) -> None:
        with self.assertRaises(DatabaseError) as ctx:
            async with self.store.transaction("broken_write"):
                await self.store.db.execute("INSERT INTO no_such_table VALUES (1)")
        self.assertEqual(ctx.exception.operation, "broken_write")
        self.assertIn("schema", ctx.exception.suggestion)

    async def test_ping_reports_a_live_connection(self) -> None:
        self.assertTrue(await self.store.ping())


if __name__ == "__main__":
    unittest.main()
