"""
SQL GUARD - cheap, text-level checks applied before a statement reaches the database.

Purpose:
    1. Refuse mutation statements coming from the agent (read-only tools)
    2. Flag risky statements submitted by hand (warnings, not refusals)
    3. Add a LIMIT to unbounded SELECT queries
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

DEFAULT_LIMIT = 1000

# Statements the agent tools must never run
MUTATION_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bDELETE\s+FROM\b",
        r"\bDROP\s+(TABLE|DATABASE|SCHEMA|INDEX|VIEW|FUNCTION|TRIGGER)\b",
        r"\bTRUNCATE\s+(TABLE)?\b",
        r"\bALTER\s+(TABLE|DATABASE|SCHEMA)\b",
        r"\bCREATE\s+(TABLE|DATABASE|SCHEMA|INDEX)\b",
        r"\bINSERT\s+INTO\b",
        r"\bUPDATE\s+\S+\s+SET\b",
        r"\bGRANT\b",
        r"\bREVOKE\b",
        r"\bEXEC(UTE)?\s*\(",
        r"\bCALL\s+\w+",
    )
]

DANGEROUS_KEYWORDS = [
    "DROP",
    "DELETE",
    "UPDATE",
    "INSERT",
    "TRUNCATE",
    "ALTER",
    "CREATE",
    "GRANT",
    "REVOKE",
]

SUSPICIOUS_PATTERNS = [
    re.compile(r";\s*DROP", re.IGNORECASE),
    re.compile(r";\s*DELETE", re.IGNORECASE),
    re.compile(r"UNION\s+SELECT", re.IGNORECASE),
]

_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_STRING_LITERAL = re.compile(r"'[^']*'")
_QUOTED_IDENTIFIER = re.compile(r'"[^"]*"')
_LIMIT_CLAUSE = re.compile(r"\bLIMIT\s+(\d+|ALL|\$\d+|\?)", re.IGNORECASE)
_LIMIT_TOKENS = re.compile(r"(\(|\)|\bLIMIT\b)", re.IGNORECASE)


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    warning: Optional[str] = None


def strip_comments(sql: str) -> str:
    return _BLOCK_COMMENT.sub("", _LINE_COMMENT.sub("", sql))


def is_mutation_query(sql: str) -> bool:
    normalized = strip_comments(sql)
    return any(pattern.search(normalized) for pattern in MUTATION_PATTERNS)


def is_select_query(sql: str) -> bool:
    """True for SELECT statements and CTEs (WITH ...)."""
    cleaned = strip_comments(sql).strip()
    return re.match(r"^(WITH\s+|SELECT\s+)", cleaned, re.IGNORECASE) is not None


def strip_trailing_semicolon(sql: str) -> str:
    return re.sub(r";\s*$", "", sql.strip())


def has_limit_clause(sql: str) -> bool:
    """
    Check for a LIMIT on the outermost query.

    LIMITs inside subqueries do not count: only a LIMIT found at
    parenthesis depth 0 bounds the result set.
    """
    cleaned = _QUOTED_IDENTIFIER.sub('""', _STRING_LITERAL.sub("''", strip_comments(sql)))

    if not _LIMIT_CLAUSE.search(cleaned):
        return False

    depth = 0
    for token in _LIMIT_TOKENS.split(cleaned):
        if token == "(":
            depth += 1
        elif token == ")":
            depth -= 1
        elif token.upper() == "LIMIT" and depth == 0:
            return True
    return False


def add_default_limit(sql: str, limit: int = DEFAULT_LIMIT) -> Tuple[str, bool]:
    """
    Append `LIMIT n` to a SELECT without one.

    Returns:
        (sql to run, whether a limit was added)
    """
    trimmed = sql.strip()

    if not is_select_query(trimmed) or has_limit_clause(trimmed):
        return trimmed, False

    return f"{strip_trailing_semicolon(trimmed)} LIMIT {limit}", True


def validate_sql(sql: str) -> ValidationResult:
    """
    Validate a hand-written statement before running it.

    Risky keywords produce a warning (the user may know what they are doing)
    and win over the injection-shape check; UNION-based injection shapes
    without such a keyword are refused.
    """
    if not sql or not sql.strip():
        return ValidationResult(valid=False, error="SQL query cannot be empty")

    for keyword in DANGEROUS_KEYWORDS:
        if re.search(rf"\b{keyword}\b", sql, re.IGNORECASE):
            return ValidationResult(
                valid=True,
                warning=(
                    f"Warning: Query contains {keyword} operation. Ensure you have "
                    "proper permissions and understand the impact."
                ),
            )

    for pattern in SUSPICIOUS_PATTERNS:
        if pattern.search(sql):
            return ValidationResult(
                valid=False, error="Potentially dangerous SQL pattern detected"
            )

    return ValidationResult(valid=True)
