"""
Tests for SQL script helpers.

Tests cover:
- Literal and identifier rendering
- Statement splitting around quotes, comments and triggers
- Replay plan preparation (drops before creates)
- Replay error classification
"""

import sqlite3
import unittest

from sitevault.backup.sql import (
    ReplayErrorPolicy,
    created_table,
    escape_value,
    find_created_tables,
    normalize_drop,
    prepare_script,
    quote_identifier,
    render_insert,
    split_statements,
    unquote_identifier,
)


class TestEscapeValue(unittest.TestCase):
    """Tests for rendering SQL literals."""

    def test_null_is_bare_keyword(self):
        """Test None renders as unquoted NULL."""
        self.assertEqual(escape_value(None), "NULL")

    def test_numbers(self):
        """Test integers, floats and booleans."""
        self.assertEqual(escape_value(42), "42")
        self.assertEqual(escape_value(-1.5), "-1.5")
        self.assertEqual(escape_value(True), "1")
        self.assertEqual(escape_value(False), "0")

    def test_non_finite_float(self):
        """Test NaN and infinity have no literal."""
        self.assertEqual(escape_value(float("nan")), "NULL")
        self.assertEqual(escape_value(float("inf")), "NULL")

    def test_text_quotes_doubled(self):
        """Test single quotes are escaped by doubling."""
        self.assertEqual(escape_value("O'Brien"), "'O''Brien'")
        self.assertEqual(escape_value("a;b -- c"), "'a;b -- c'")

    def test_blob(self):
        """Test bytes render as hex blobs."""
        self.assertEqual(escape_value(b"\x00\xff"), "X'00FF'")

    def test_text_with_nul(self):
        """Test text holding NUL is cast from a hex blob and reads back intact."""
        literal = escape_value("a\x00b")
        self.assertEqual(literal, "CAST(X'610062' AS TEXT)")

        conn = sqlite3.connect(":memory:")
        try:
            value = conn.execute(f"SELECT {literal}").fetchone()[0]
        finally:
            conn.close()
        self.assertEqual(value, "a\x00b")

    def test_render_insert(self):
        """Test a full INSERT statement."""
        statement = render_insert("users", ["id", "name", "note"], (1, "Ann", None))
        self.assertEqual(
            statement,
            'INSERT INTO "users" ("id", "name", "note") VALUES (1, \'Ann\', NULL);',
        )


class TestIdentifiers(unittest.TestCase):
    """Tests for identifier quoting."""

    def test_quote_identifier(self):
        """Test embedded double quotes are doubled."""
        self.assertEqual(quote_identifier("users"), '"users"')
        self.assertEqual(quote_identifier('we"ird'), '"we""ird"')

    def test_unquote_identifier(self):
        """Test the quoting styles SQLite accepts."""
        self.assertEqual(unquote_identifier('"users"'), "users")
        self.assertEqual(unquote_identifier("`users`"), "users")
        self.assertEqual(unquote_identifier("[users]"), "users")
        self.assertEqual(unquote_identifier('main."users"'), "users")
        self.assertEqual(unquote_identifier('"we""ird"'), 'we"ird')


class TestSplitStatements(unittest.TestCase):
    """Tests for split_statements."""

    def test_simple_split(self):
        """Test splitting on semicolons."""
        statements = split_statements("CREATE TABLE a (x);\nINSERT INTO a VALUES (1);\n")
        self.assertEqual(statements, ["CREATE TABLE a (x)", "INSERT INTO a VALUES (1)"])

    def test_semicolon_inside_string(self):
        """Test semicolons inside literals do not split."""
        statements = split_statements("INSERT INTO a VALUES ('x;y');INSERT INTO a VALUES ('it''s');")
        self.assertEqual(len(statements), 2)
        self.assertEqual(statements[0], "INSERT INTO a VALUES ('x;y')")
        self.assertEqual(statements[1], "INSERT INTO a VALUES ('it''s')")

    def test_comments_dropped(self):
        """Test line and block comments are removed."""
        script = "-- header; with semicolon\nSELECT 1; /* block; */ SELECT 2;"
        statements = split_statements(script)
        self.assertEqual(statements, ["SELECT 1", "SELECT 2"])

    def test_trigger_body_kept_together(self):
        """Test a trigger body stays one statement."""
        script = (
            "CREATE TRIGGER t AFTER INSERT ON a BEGIN "
            "UPDATE a SET x = 1; UPDATE a SET x = 2; END;\n"
            "SELECT 1;"
        )
        statements = split_statements(script)
        self.assertEqual(len(statements), 2)
        self.assertTrue(statements[0].startswith("CREATE TRIGGER"))
        self.assertTrue(statements[0].endswith("END"))

    def test_trigger_with_case_expression(self):
        """Test a CASE ... END inside a trigger body does not close the trigger."""
        trigger = (
            "CREATE TRIGGER trg AFTER INSERT ON t BEGIN "
            "UPDATE t SET tag = CASE WHEN NEW.a > 1 THEN 'big' ELSE 'small' END; END"
        )
        statements = split_statements(trigger + ";\nSELECT 1;")
        self.assertEqual(statements, [trigger, "SELECT 1"])

    def test_stray_semicolons(self):
        """Test empty statements between semicolons are dropped."""
        self.assertEqual(split_statements(";;SELECT 1;;"), ["SELECT 1"])

    def test_trailing_statement_without_semicolon(self):
        """Test a final statement without terminator is kept."""
        self.assertEqual(split_statements("SELECT 1;\nSELECT 2"), ["SELECT 1", "SELECT 2"])

    def test_empty_script(self):
        """Test blank input yields nothing."""
        self.assertEqual(split_statements("  \n-- only a comment\n"), [])


class TestPrepareScript(unittest.TestCase):
    """Tests for replay plan preparation."""

    def test_created_table(self):
        """Test CREATE TABLE targets are recognized."""
        self.assertEqual(created_table("CREATE TABLE users (id INTEGER)"), "users")
        self.assertEqual(created_table('CREATE TABLE IF NOT EXISTS "logs" (id)'), "logs")
        self.assertIsNone(created_table("CREATE INDEX idx ON users (id)"))

    def test_find_created_tables_deduplicates(self):
        """Test each table is listed once, in order."""
        statements = ["CREATE TABLE b (x)", "CREATE TABLE a (x)", "CREATE TABLE b (x)"]
        self.assertEqual(find_created_tables(statements), ["b", "a"])

    def test_normalize_drop(self):
        """Test bare drops become IF EXISTS drops."""
        self.assertEqual(normalize_drop("DROP TABLE users"), "DROP TABLE IF EXISTS users")
        self.assertEqual(normalize_drop("DROP TABLE IF EXISTS users"), "DROP TABLE IF EXISTS users")

    def test_drops_precede_script(self):
        """Test every created table is dropped before the script runs."""
        plan = prepare_script("CREATE TABLE users (id);\nINSERT INTO users VALUES (1);")
        self.assertEqual(
            plan,
            [
                'DROP TABLE IF EXISTS "users"',
                "CREATE TABLE users (id)",
                "INSERT INTO users VALUES (1)",
            ],
        )

    def test_tables_absent_from_script_not_dropped(self):
        """Test tables the script never creates are left alone."""
        plan = prepare_script("CREATE TABLE users (id);")
        self.assertFalse(any("sessions" in statement for statement in plan))


class TestReplayErrorPolicy(unittest.TestCase):
    """Tests for replay error classification."""

    def test_default_ignorable(self):
        """Test the default ignorable messages."""
        policy = ReplayErrorPolicy()
        self.assertTrue(policy.is_ignorable("table users already exists"))
        self.assertTrue(policy.is_ignorable("UNIQUE constraint failed: users.id"))
        self.assertFalse(policy.is_ignorable("no such table: missing"))

    def test_case_insensitive(self):
        """Test matching ignores case."""
        policy = ReplayErrorPolicy(("Already Exists",))
        self.assertTrue(policy.is_ignorable(Exception("INDEX idx ALREADY EXISTS")))

    def test_classify(self):
        """Test classification labels."""
        policy = ReplayErrorPolicy()
        self.assertEqual(policy.classify("duplicate column name"), "ignorable")
        self.assertEqual(policy.classify("syntax error"), "failed")

    def test_empty_patterns_ignored(self):
        """Test empty patterns never match everything."""
        policy = ReplayErrorPolicy(("",))
        self.assertFalse(policy.is_ignorable("anything"))


if __name__ == "__main__":
    unittest.main()
