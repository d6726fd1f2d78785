import unittest
from contextlib import contextmanager
from unittest.mock import patch

from grantledger.db.integrity import check_db_integrity
from grantledger.db.schema import init_db
from grantledger.utils.invariants import check_known_grant_types, run_all_checks


class ScriptedCursor:
    def __init__(self, rows):
        self._rows = rows

    def fetchall(self):
        return self._rows


class ScriptedConnection:
    """Returns canned rows for the first query fragment that matches."""

    def __init__(self, responses):
        self.responses = responses
        self.statements = []
        self.committed = False

    def execute(self, query, params=None):
        self.statements.append((query, params))
        for fragment, rows in self.responses.items():
            if fragment in query:
                return ScriptedCursor(rows)
        return ScriptedCursor([])

    def commit(self):
        self.committed = True


ALL_TABLES = [{"table_name": t} for t in ("credit_ledger", "usage_records", "metering_customers")]


def _connect_to(conn):
    @contextmanager
    def connect():
        yield conn

    return connect


class InvariantTests(unittest.TestCase):
    def test_clean_ledger_passes(self):
        results = run_all_checks(ScriptedConnection({}))

        self.assertEqual(len(results), 5)
        self.assertTrue(all(r.passed for r in results))

    def test_balance_above_principal_reported(self):
        conn = ScriptedConnection(
            {"balance > principal": [{"operation_id": "g1", "principal": 10, "balance": 15}]}
        )

        failed = [r for r in run_all_checks(conn) if not r.passed]

        self.assertEqual([r.name for r in failed], ["balance_within_principal"])
        self.assertIn("g1: balance=15 > principal=10", failed[0].detail)

    def test_known_types_bound_as_parameters(self):
        conn = ScriptedConnection({})

        check_known_grant_types(conn)

        query, params = conn.statements[0]
        self.assertIn("NOT IN (?, ?, ?, ?, ?, ?)", query)
        self.assertIn("purchase", params)


class IntegrityTests(unittest.TestCase):
    def test_missing_tables_short_circuit(self):
        conn = ScriptedConnection({"information_schema.tables": ALL_TABLES[:1]})

        with self.assertLogs("grantledger.db.integrity", level="ERROR"):
            results = check_db_integrity(_connect_to(conn))

        self.assertEqual(len(results), 1)
        self.assertFalse(results[0].passed)
        self.assertIn("usage_records", results[0].detail)

    def test_full_run_includes_schema_check(self):
        conn = ScriptedConnection({"information_schema.tables": ALL_TABLES})

        results = check_db_integrity(_connect_to(conn))

        self.assertEqual(results[0].name, "schema_present")
        self.assertEqual(len(results), 6)
        self.assertTrue(all(r.passed for r in results))


class SchemaTests(unittest.TestCase):
    def test_init_db_creates_all_tables_and_commits(self):
        conn = ScriptedConnection({})

        with patch("grantledger.db.schema.get_db_connection", _connect_to(conn)), patch(
            "grantledger.db.schema.redacted_dsn", return_value="postgresql://***@db/ledger"
        ):
            init_db()

        created = " ".join(query for query, _ in conn.statements)
        for table in ("credit_ledger", "usage_records", "metering_customers"):
            self.assertIn(f"CREATE TABLE IF NOT EXISTS {table}", created)
        self.assertTrue(conn.committed)


if __name__ == "__main__":
    unittest.main()
