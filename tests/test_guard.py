import pytest

from app.core.schemas import SchemaDescriptor
from app.ai_feature.guard import SqlGuard, tokenize


SCHEMA = SchemaDescriptor(
    tables={
        "customers": [("id", "INTEGER"), ("name", "TEXT"), ("group_id", "INTEGER")],
        "customer_groups": [("id", "INTEGER"), ("name", "TEXT")],
        "transactions": [("id", "INTEGER"), ("customer_id", "INTEGER"), ("amount", "NUMERIC")],
        "users": [("id", "INTEGER"), ("name", "VARCHAR"), ("email", "VARCHAR")],
    },
    schema_name="public",
    dialect="postgresql",
    hidden_columns={"customers": ["tc_no"], "users": ["password"]},
)


@pytest.fixture
def guard():
    return SqlGuard(max_rows=100)


def test_simple_count_is_approved_and_bounded(guard):
    verdict = guard.check("SELECT COUNT(*) FROM customers", SCHEMA)

    assert verdict.approved
    assert verdict.normalized_sql == "SELECT COUNT(*) FROM customers LIMIT 101"
    assert verdict.referenced_tables == ["customers"]


def test_normalized_sql_drops_comments_and_extra_spaces(guard):
    verdict = guard.check(
        "SELECT   name\n  FROM customers /* all of them */ -- trailing\n", SCHEMA
    )

    assert verdict.normalized_sql == "SELECT name FROM customers LIMIT 101"


def test_trailing_semicolon_is_tolerated(guard):
    verdict = guard.check("select * from customer_groups;", SCHEMA)

    assert verdict.approved
    assert verdict.normalized_sql == "select * from customer_groups LIMIT 101"


@pytest.mark.parametrize(
    "sql",
    [
        "DROP TABLE customers; SELECT 1",
        "SELECT 1; DROP TABLE customers",
        "SELECT 1;;",
        "SELECT name FROM customers; /* hidden */ DeLeTe FROM customers",
    ],
)
def test_stacked_statements_are_rejected(guard, sql):
    verdict = guard.check(sql, SCHEMA)

    assert not verdict.approved
    assert verdict.rejection_reason == "Multiple statements are not allowed"


@pytest.mark.parametrize(
    "sql",
    [
        "DELETE FROM customers",
        "update customers set name = 'x'",
        "  InSeRt INTO customers (name) VALUES ('x')",
        "VALUES (1)",
    ],
)
def test_non_select_statements_are_rejected(guard, sql):
    verdict = guard.check(sql, SCHEMA)

    assert not verdict.approved
    assert verdict.rejection_reason == "Only SELECT statements are allowed"


@pytest.mark.parametrize(
    "sql, keyword",
    [
        ("WITH gone AS (DELETE FROM customers RETURNING id) SELECT id FROM gone", "DELETE"),
        ("SELECT name INTO backup FROM customers", "INTO"),
        ("select id from customers where id in (select 1) and 1 = 1 or drop", "DROP"),
    ],
)
def test_mutating_keywords_are_rejected_anywhere(guard, sql, keyword):
    verdict = guard.check(sql, SCHEMA)

    assert not verdict.approved
    assert verdict.rejection_reason == f"Forbidden keyword: {keyword}"


@pytest.mark.parametrize("clause", ["FOR UPDATE", "FOR SHARE", "for no key update"])
def test_row_locking_is_rejected(guard, clause):
    verdict = guard.check(f"SELECT id FROM customers {clause}", SCHEMA)

    assert verdict.rejection_reason == "Row-locking clauses are not allowed"


def test_keywords_inside_literals_are_allowed(guard):
    verdict = guard.check(
        "SELECT id FROM customers WHERE name = 'DROP TABLE customers; --'", SCHEMA
    )

    assert verdict.approved
    assert "'DROP TABLE customers; --'" in verdict.normalized_sql


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT pg_sleep(10)",
        'SELECT "pg_sleep"(10)',
        "SELECT * FROM pg_catalog.pg_user",
        "SELECT set_config('role', 'admin', false)",
        "SELECT current_setting('is_superuser')",
        "SELECT name FROM customers WHERE id = nextval('customers_id_seq')",
    ],
)
def test_dangerous_functions_are_rejected(guard, sql):
    verdict = guard.check(sql, SCHEMA)

    assert not verdict.approved
    assert verdict.rejection_reason.startswith("Access to")


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * FROM customer_credentials",
        "SELECT name FROM customers WHERE id IN (SELECT customer_id FROM customer_credentials)",
        "SELECT c.name FROM customers c JOIN customer_credentials cc ON cc.customer_id = c.id",
        "SELECT c.name FROM customers c JOIN transactions t ON t.customer_id = c.id, customer_credentials",
        "SELECT 1 FROM customers, (SELECT 1 FROM customer_credentials) x",
        "SELECT 1 FROM (customers JOIN customer_credentials ON true)",
        "SELECT EXISTS (SELECT 1 FROM customer_credentials)",
        "SELECT table_name FROM information_schema.tables",
        "SELECT id FROM other_schema.customers",
    ],
)
def test_tables_outside_the_allow_list_are_rejected(guard, sql):
    verdict = guard.check(sql, SCHEMA)

    assert not verdict.approved
    assert "is not allowed" in verdict.rejection_reason


def test_join_and_subquery_over_allowed_tables(guard):
    sql = (
        "SELECT c.name, SUM(t.amount) AS total FROM customers c "
        "LEFT JOIN transactions t ON t.customer_id = c.id "
        "WHERE c.group_id IN (SELECT id FROM customer_groups WHERE name = 'Retail') "
        "GROUP BY c.name ORDER BY total DESC"
    )
    verdict = guard.check(sql, SCHEMA)

    assert verdict.approved
    assert verdict.referenced_tables == ["customer_groups", "customers", "transactions"]


def test_schema_qualified_table_is_allowed(guard):
    verdict = guard.check("SELECT id FROM public.customers", SCHEMA)

    assert verdict.approved


def test_cte_names_are_not_tables(guard):
    sql = (
        "WITH recent AS (SELECT id, name FROM customers WHERE id > 1) "
        "SELECT name FROM recent"
    )
    verdict = guard.check(sql, SCHEMA)

    assert verdict.approved
    assert verdict.referenced_tables == ["customers"]


def test_cte_names_only_cover_their_own_subquery(guard):
    sql = (
        "SELECT 1 FROM (WITH customer_credentials AS (SELECT 1 AS x) "
        "SELECT x FROM customer_credentials) inner_q, customer_credentials"
    )
    verdict = guard.check(sql, SCHEMA)

    assert verdict.rejection_reason == "Table customer_credentials is not allowed"


@pytest.mark.parametrize(
    "sql, reason",
    [
        (
            "WITH customer_credentials AS (SELECT * FROM customer_credentials) "
            "SELECT * FROM customer_credentials",
            "Table customer_credentials is not allowed",
        ),
        (
            "WITH a AS (SELECT * FROM customer_credentials), "
            "customer_credentials AS (SELECT 1 AS x) SELECT * FROM a",
            "Table customer_credentials is not allowed",
        ),
        (
            "WITH users AS (SELECT email, password FROM users) SELECT * FROM users",
            "Whole-row reference to users is not allowed",
        ),
    ],
)
def test_cte_name_is_not_visible_in_its_own_or_earlier_bodies(guard, sql, reason):
    verdict = guard.check(sql, SCHEMA)

    assert not verdict.approved
    assert verdict.rejection_reason == reason


def test_recursive_cte_sees_its_own_name(guard):
    sql = (
        "WITH RECURSIVE seq(n) AS (SELECT 1 UNION ALL SELECT n + 1 FROM seq WHERE n < 5) "
        "SELECT n FROM seq"
    )
    verdict = guard.check(sql, SCHEMA)

    assert verdict.approved
    assert verdict.referenced_tables == []


def test_cte_bodies_are_still_checked(guard):
    sql = "WITH x AS (SELECT password FROM customer_credentials) SELECT * FROM x"
    verdict = guard.check(sql, SCHEMA)

    assert not verdict.approved


def test_from_inside_function_calls_is_not_a_table(guard):
    sql = (
        "SELECT EXTRACT(YEAR FROM t.id) AS y, SUBSTRING(c.name FROM 1 FOR 3) "
        "FROM transactions t JOIN customers c ON c.id = t.customer_id "
        "WHERE c.group_id IS DISTINCT FROM 2"
    )
    verdict = guard.check(sql, SCHEMA)

    assert verdict.approved


def test_allowed_table_functions(guard):
    assert guard.check("SELECT n FROM generate_series(1, 10) AS n", SCHEMA).approved

    verdict = guard.check("SELECT * FROM read_csv('/etc/passwd')", SCHEMA)
    assert verdict.rejection_reason == "Function read_csv is not allowed in FROM"


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT email, password FROM users",
        'SELECT "password" FROM users',
        "SELECT name FROM customers WHERE tc_no = '12345678901'",
    ],
)
def test_hidden_columns_are_rejected(guard, sql):
    verdict = guard.check(sql, SCHEMA)

    assert not verdict.approved
    assert "is not available" in verdict.rejection_reason


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * FROM users",
        "SELECT u.* FROM users u",
        "SELECT id, * FROM customers",
    ],
)
def test_wildcards_on_tables_with_hidden_columns_are_rejected(guard, sql):
    verdict = guard.check(sql, SCHEMA)

    assert not verdict.approved
    assert verdict.rejection_reason.startswith("Wildcard selection")


def test_whole_row_reference_is_rejected(guard):
    verdict = guard.check("SELECT row_to_json(u) FROM users u", SCHEMA)

    assert verdict.rejection_reason == "Whole-row reference to u is not allowed"


def test_count_star_and_multiplication_are_not_wildcards(guard):
    verdict = guard.check("SELECT COUNT(*), MAX(id) * 2 FROM users", SCHEMA)

    assert verdict.approved


def test_small_limit_is_kept(guard):
    verdict = guard.check("SELECT id FROM customers ORDER BY id LIMIT 5", SCHEMA)

    assert verdict.normalized_sql == "SELECT id FROM customers ORDER BY id LIMIT 5"


def test_large_limit_is_clamped(guard):
    verdict = guard.check("SELECT id FROM customers LIMIT 100000 OFFSET 10", SCHEMA)

    assert verdict.normalized_sql == "SELECT id FROM customers LIMIT 101 OFFSET 10"


def test_limit_in_subquery_does_not_bound_the_outer_query(guard):
    verdict = guard.check(
        "SELECT id FROM customers WHERE id IN (SELECT customer_id FROM transactions LIMIT 5)",
        SCHEMA,
    )

    assert verdict.normalized_sql.endswith("LIMIT 5) LIMIT 101")


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT id FROM customers LIMIT ALL",
        "SELECT id FROM customers LIMIT 10, 20",
        "SELECT id FROM customers LIMIT (SELECT 5)",
    ],
)
def test_unusable_limits_are_rejected(guard, sql):
    assert not guard.check(sql, SCHEMA).approved


@pytest.mark.parametrize(
    "sql, reason",
    [
        ("", "Empty statement"),
        ("   ", "Empty statement"),
        (";", "Empty statement"),
        ("SELECT 'abc FROM customers", "Unterminated quoted literal"),
        ("SELECT 1 /* never closed", "Unterminated comment"),
        ("SELECT $$x$$", "Dollar-quoted literals are not allowed"),
        ("SELECT 'a\\' FROM customers", "Backslashes in string literals are not allowed"),
        ("SELECT (1", "Unbalanced parentheses"),
        ("SELECT 1)", "Unbalanced parentheses"),
    ],
)
def test_malformed_input_is_rejected(guard, sql, reason):
    verdict = guard.check(sql, SCHEMA)

    assert not verdict.approved
    assert verdict.rejection_reason == reason


def test_overlong_statement_is_rejected():
    guard = SqlGuard(max_rows=100, max_length=50)
    verdict = guard.check("SELECT id FROM customers WHERE name = '" + "x" * 60 + "'", SCHEMA)

    assert verdict.rejection_reason == "Statement is too long"


def test_tokenizer_keeps_escaped_literals_whole():
    tokens = tokenize("SELECT E'it\\'s', 'it''s', \"odd \"\"name\"\"\"")

    assert [t.kind for t in tokens] == ["word", "string", "punct", "string", "punct", "quoted"]
    assert tokens[-1].name == 'odd "name"'
