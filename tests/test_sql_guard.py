import pytest

from querypilot.core import sql_guard


@pytest.mark.parametrize(
    "sql",
    [
        "DELETE FROM users",
        "drop table users",
        'UPDATE "users" SET email = NULL',
        "INSERT INTO users (id) VALUES (1)",
        "TRUNCATE users",
        "WITH x AS (SELECT 1) DELETE FROM users",
        "GRANT ALL ON users TO public",
    ],
)
def test_mutations_are_detected(sql):
    assert sql_guard.is_mutation_query(sql) is True


def test_select_is_not_a_mutation():
    assert sql_guard.is_mutation_query('SELECT "updated_at" FROM "orders"') is False
    # Mentions inside comments do not count
    assert sql_guard.is_mutation_query("SELECT 1 -- then DELETE FROM users") is False


def test_is_select_query_accepts_ctes_and_comments():
    assert sql_guard.is_select_query("  select * from users")
    assert sql_guard.is_select_query("WITH t AS (SELECT 1) SELECT * FROM t")
    assert sql_guard.is_select_query("/* top */ SELECT 1")
    assert not sql_guard.is_select_query("EXPLAIN SELECT 1")


def test_limit_in_subquery_does_not_count():
    sql = "SELECT * FROM (SELECT * FROM users LIMIT 5) u"

    assert sql_guard.has_limit_clause(sql) is False
    assert sql_guard.has_limit_clause(sql + " LIMIT 10") is True


def test_limit_inside_string_literal_does_not_count():
    assert sql_guard.has_limit_clause("SELECT 'LIMIT 5' AS label FROM users") is False


def test_add_default_limit_appends_once():
    sql, added = sql_guard.add_default_limit("SELECT * FROM users;", 1000)
    assert (sql, added) == ("SELECT * FROM users LIMIT 1000", True)

    sql, added = sql_guard.add_default_limit("SELECT * FROM users LIMIT 3")
    assert (sql, added) == ("SELECT * FROM users LIMIT 3", False)


def test_add_default_limit_leaves_other_statements_alone():
    sql, added = sql_guard.add_default_limit("SHOW search_path")

    assert added is False
    assert sql == "SHOW search_path"


def test_validate_sql_rejects_empty():
    result = sql_guard.validate_sql("   ")

    assert result.valid is False
    assert result.error == "SQL query cannot be empty"


def test_validate_sql_warns_on_dangerous_keyword():
    result = sql_guard.validate_sql("DELETE FROM sessions WHERE expired")

    assert result.valid is True
    assert "DELETE" in result.warning


def test_validate_sql_keyword_check_runs_first():
    # Still a warning, even though it also looks like an injection
    result = sql_guard.validate_sql("SELECT 1; DROP TABLE users")

    assert result.valid is True
    assert "DROP" in result.warning


def test_validate_sql_rejects_union_injection_shape():
    result = sql_guard.validate_sql("SELECT name FROM users WHERE id = 1 UNION SELECT password FROM secrets")

    assert result.valid is False
    assert result.error == "Potentially dangerous SQL pattern detected"


def test_validate_sql_matches_whole_words_only():
    result = sql_guard.validate_sql("SELECT delete_count, created_at FROM audit")

    assert result.valid is True
    assert result.warning is None
