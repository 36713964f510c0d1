import os
import sqlite3
import tempfile
import unittest

from alumni_gateway.messages import InvalidMessage
from alumni_gateway.sqlite_backend import SQLiteBackend
from alumni_gateway.sqlite_messages import SQLiteMessageStore


class FakeClock:
    def __init__(self, start_ms: int = 1_000) -> None:
        self.now_ms = start_ms

    def now(self) -> int:
        return self.now_ms


class SQLiteMessageStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "gateway.db")
        self.backend = SQLiteBackend(self.db_path)
        self.clock = FakeClock()
        self.store = SQLiteMessageStore(self.backend, now_func=self.clock.now)

    def tearDown(self):
        self.backend.close()
        self.tmpdir.cleanup()

    def test_schema_version_is_recorded(self):
        version = self.backend.connection.execute("PRAGMA user_version").fetchone()[0]
        self.assertEqual(version, 1)

    def test_append_and_list_between(self):
        first = self.store.append("alice", "bob", "one")
        self.clock.now_ms += 5
        second = self.store.append("bob", "alice", "two")
        self.store.append("alice", "carol", "elsewhere")

        history = self.store.list_between("alice", "bob")

        self.assertEqual(history, [first, second])
        self.assertEqual(self.store.list_between("bob", "alice"), [first, second])
        self.assertEqual(self.store.count(), 3)

    def test_equal_timestamps_keep_insert_order(self):
        ids = [self.store.append("alice", "bob", f"m{i}").id for i in range(5)]

        self.assertEqual([m.id for m in self.store.list_between("alice", "bob")], ids)

    def test_messages_survive_reopen(self):
        message = self.store.append("alice", "bob", "durable")
        self.backend.close()

        self.backend = SQLiteBackend(self.db_path)
        reopened = SQLiteMessageStore(self.backend)

        self.assertEqual(reopened.list_between("alice", "bob"), [message])

    def test_invalid_message_is_not_written(self):
        with self.assertRaises(InvalidMessage):
            self.store.append("alice", "bob", "")
        self.assertEqual(self.store.count(), 0)

    def test_unknown_schema_version_is_refused(self):
        self.backend.connection.execute("PRAGMA user_version = 7")
        self.backend.close()

        with self.assertRaises(ValueError):
            self.backend = SQLiteBackend(self.db_path)
        self.backend = SQLiteBackend(":memory:")

    def test_duplicate_message_id_is_rejected(self):
        message = self.store.append("alice", "bob", "once")
        with self.assertRaises(sqlite3.IntegrityError):
            self.backend.connection.execute(
                "INSERT INTO messages (msg_id, sender_id, receiver_id, content, created_at_ms) VALUES (?, ?, ?, ?, ?)",
                (message.id, "alice", "bob", "twice", 1),
            )


if __name__ == "__main__":
    unittest.main()
