"""
Static checks applied to planner-supplied SQL before it reaches a connector.

Connections are already read-only; these checks additionally make sure a
statement is a single query whose values are all bound parameters.
"""

import re
from typing import Any, Dict, Set, Tuple

from ..errors import UnsafeQueryError

_LEADING_KEYWORD = re.compile(r"^\s*\(*\s*(SELECT|WITH)\b", re.IGNORECASE)

_FORBIDDEN_KEYWORDS = re.compile(
    r"\b(INSERT|UPDATE|DELETE|MERGE|UPSERT|DROP|CREATE|ALTER|TRUNCATE|GRANT|REVOKE|"
    r"ATTACH|DETACH|PRAGMA|VACUUM|REINDEX|COPY|CALL|EXEC|EXECUTE|LOCK|BEGIN|COMMIT|"
    r"ROLLBACK|SAVEPOINT|RELEASE|INTO|REPLACE(?!\s*\())\b",
    re.IGNORECASE,
)

# ":name" but not "::type" casts or "a:b" inside identifiers
_PLACEHOLDER = re.compile(r"(?<![:\w]):([A-Za-z_]\w*)")

RESERVED_PREFIX = "__"
LIMIT_PARAM = "__limit"
OFFSET_PARAM = "__offset"


def placeholders(sql: str) -> Set[str]:
    return set(_PLACEHOLDER.findall(sql))


def validate_select(sql: str, params: Dict[str, Any]) -> str:
    """
    Validate a planner-supplied query.

    Args:
        sql: Candidate statement
        params: Values supplied for its ``:name`` placeholders

    Returns:
        The statement with surrounding whitespace and one trailing
        semicolon removed.

    Raises:
        UnsafeQueryError: If the statement is not a single parameterised
            read-only query.
    """
    statement = sql.strip()
    if statement.endswith(";"):
        statement = statement[:-1].rstrip()

    if not statement:
        raise UnsafeQueryError("Empty SQL statement")
    if ";" in statement:
        raise UnsafeQueryError("Only a single SQL statement is allowed")
    if "--" in statement or "/*" in statement or "*/" in statement:
        raise UnsafeQueryError("SQL comments are not allowed")
    if "'" in statement:
        raise UnsafeQueryError(
            "Quoted string literals are not allowed; bind values as :name parameters"
        )
    if '"' in statement or "$" in statement:
        # SQLite and MySQL read unknown "tokens" as strings; $$ quotes strings in PostgreSQL
        raise UnsafeQueryError(
            "Double-quoted and dollar-quoted tokens are not allowed; use bare identifiers and :name parameters"
        )
    if not _LEADING_KEYWORD.match(statement):
        raise UnsafeQueryError("Only SELECT or WITH queries are allowed")

    forbidden = _FORBIDDEN_KEYWORDS.search(statement)
    if forbidden:
        raise UnsafeQueryError(
            f"Keyword not allowed in a read-only query: {forbidden.group(1).upper()}",
            keyword=forbidden.group(1).upper(),
        )

    used = placeholders(statement)
    reserved = sorted(name for name in set(params) | used if name.startswith(RESERVED_PREFIX))
    if reserved:
        raise UnsafeQueryError(f"Reserved parameter names: {reserved}")

    missing = sorted(used - set(params))
    if missing:
        raise UnsafeQueryError(f"Missing values for parameters: {missing}", missing=missing)

    unused = sorted(set(params) - used)
    if unused:
        raise UnsafeQueryError(f"Parameters not used by the query: {unused}", unused=unused)

    return statement


def paginate(sql: str, params: Dict[str, Any], limit: int, offset: int) -> Tuple[str, Dict[str, Any]]:
    """
    Wrap a validated query in a page window.

    One row more than ``limit`` is requested so the caller can tell whether
    another page exists.
    """
    paged_sql = f"SELECT * FROM ({sql}) AS page LIMIT :{LIMIT_PARAM} OFFSET :{OFFSET_PARAM}"
    paged_params = dict(params)
    paged_params[LIMIT_PARAM] = int(limit) + 1
    paged_params[OFFSET_PARAM] = int(offset)
    return paged_sql, paged_params
