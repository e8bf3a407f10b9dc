"""QUERY MONITOR SERVICE"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import operator
import re
import threading
import time
from typing import Any, Iterable, Optional
import unicodedata

from flask import g, has_request_context
from sqlalchemy import event

from guardapi.errors import ValidationError
from guardapi.services.security_config import QueryMonitorConfig
from guardapi.utils.request_context import RequestContext
from guardapi.utils.security_events import EventType, Severity

logger = logging.getLogger(__name__)

SQL_LOG_MAX_LENGTH = 2000

SUSPICIOUS_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"union\s+(all\s+)?select",
        r";\s*(drop|delete|insert|update|shutdown|exec)\b",
        r"--",
        r"/\*",
        r"\*/",
        r"information_schema",
        r"pg_catalog",
        r"sqlite_master",
        r"mysql\.user",
        r"\bsys\.",
        r"\bsleep\s*\(",
        r"\bbenchmark\s*\(",
        r"waitfor\s+delay",
        r"\bpg_sleep\s*\(",
        r"\bload_file\s*\(",
        r"into\s+outfile",
        r"into\s+dumpfile",
        r"\bxp_cmdshell\b",
        r"\bsp_executesql\b",
        r"\bexec\s*\(",
        r"\bexecute\s*\(",
    )
)

UNPARAMETERIZED_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"'\s*\+\s*'",
        r'"\s*\+\s*"',
        r"'\s*\|\|\s*'",
        r'"\s*\|\|\s*"',
        r"'\s*concat\s*\(",
        r'"\s*concat\s*\(',
    )
)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

FILTER_OPERATORS = {
    "=": operator.eq,
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "like": lambda column, value: column.like(value),
    "in": lambda column, value: column.in_(value),
}


@dataclass(frozen=True)
class QueryAnalysis:
    suspicious: bool = False
    unparameterized: bool = False
    slow: bool = False
    matched_patterns: tuple[str, ...] = ()

    @property
    def flagged(self) -> bool:
        return self.suspicious or self.unparameterized or self.slow


def _flatten(values) -> Iterable[Any]:
    if values is None:
        return
    if isinstance(values, dict):
        for value in values.values():
            yield from _flatten(value)
    elif isinstance(values, (list, tuple, set, frozenset)):
        for value in values:
            yield from _flatten(value)
    else:
        yield values


class QueryMonitorService:
    """
    Classifies executed SQL statements and reports anomalies.

    Detection happens after execution and never blocks a statement;
    :meth:`validate_query_parameters` is the pre-execution check for call
    sites that can still refuse input.
    """

    def __init__(self, monitor, config: QueryMonitorConfig):
        self.monitor = monitor
        self.config = config
        self._local = threading.local()

    def matched_patterns(self, statement: str) -> tuple[str, ...]:
        return tuple(
            pattern.pattern
            for pattern in SUSPICIOUS_PATTERNS
            if pattern.search(statement)
        )

    @staticmethod
    def has_unparameterized_input(statement: str) -> bool:
        return any(pattern.search(statement) for pattern in UNPARAMETERIZED_PATTERNS)

    def analyze_query(
        self,
        statement: str,
        parameters=None,
        execution_time_ms: Optional[float] = None,
        context: Optional[RequestContext] = None,
    ) -> QueryAnalysis:
        """Classify ``statement`` and log an event for each finding."""
        if not isinstance(statement, str):
            raise ValidationError("SQL statement must be a string", field="statement")
        context = context or RequestContext.system()

        matched = self.matched_patterns(statement)
        analysis = QueryAnalysis(
            suspicious=bool(matched),
            unparameterized=self.has_unparameterized_input(statement),
            slow=execution_time_ms is not None
            and execution_time_ms > self.config.slow_query_threshold_ms,
            matched_patterns=matched,
        )
        if not analysis.flagged:
            return analysis

        metadata = {
            "sql": statement[:SQL_LOG_MAX_LENGTH],
            "bindings": [repr(value)[:200] for value in _flatten(parameters)],
            "execution_time_ms": execution_time_ms,
            "ip": context.ip_address,
            "user": context.user_id,
        }

        # Persisting the event runs SQL through the same engine listeners
        self._local.reporting = True
        try:
            if analysis.suspicious:
                self.monitor.log_security_event(
                    EventType.SUSPICIOUS_QUERY,
                    Severity.HIGH,
                    "Suspicious database query detected",
                    metadata={**metadata, "patterns": list(matched)},
                    context=context,
                )
            if analysis.unparameterized:
                self.monitor.log_security_event(
                    EventType.UNPARAMETERIZED_QUERY,
                    Severity.MEDIUM,
                    "Potentially unparameterized query detected",
                    metadata=metadata,
                    context=context,
                )
            if analysis.slow:
                self.monitor.log_security_event(
                    EventType.SLOW_QUERY,
                    Severity.LOW,
                    f"Slow query detected ({execution_time_ms:.0f} ms)",
                    metadata=metadata,
                    context=context,
                )
        finally:
            self._local.reporting = False
        return analysis

    def validate_query_parameters(self, values) -> bool:
        """False if any string value contains a suspicious SQL pattern."""
        for value in _flatten(values):
            if isinstance(value, str) and self.matched_patterns(value):
                logger.warning(f"Rejected suspicious query parameter: {value[:100]!r}")
                return False
        return True

    @staticmethod
    def sanitize_input(text: str) -> str:
        """Strip null bytes, SQL comment markers and statement separators."""
        if not isinstance(text, str):
            raise ValidationError("Input must be a string", field="input")
        text = text.replace("\x00", "")
        for token in ("--", "/*", "*/", ";"):
            text = text.replace(token, "")
        return unicodedata.normalize("NFC", text).strip()

    @staticmethod
    def secure_filter(model, column: str, op: str, value):
        """Build ``model.column <op> value`` after validating column and operator."""
        if not isinstance(column, str) or not IDENTIFIER_PATTERN.match(column):
            raise ValidationError(f"Invalid column name: {column!r}", field="column")
        table_column = model.__table__.columns.get(column)
        if table_column is None:
            raise ValidationError(f"Unknown column: {column}", field="column")
        comparator = FILTER_OPERATORS.get(str(op).lower())
        if comparator is None:
            raise ValidationError(f"Unsupported operator: {op}", field="operator")
        if str(op).lower() == "in" and not isinstance(value, (list, tuple, set)):
            raise ValidationError("'in' requires a list of values", field="value")
        return comparator(table_column, value)

    # SQLAlchemy engine hooks

    def install(self, engine) -> None:
        event.listen(engine, "before_cursor_execute", self._before_cursor_execute)
        event.listen(engine, "after_cursor_execute", self._after_cursor_execute)
        event.listen(engine, "handle_error", self._handle_error)
        logger.info("Query monitor installed")

    def uninstall(self, engine) -> None:
        event.remove(engine, "before_cursor_execute", self._before_cursor_execute)
        event.remove(engine, "after_cursor_execute", self._after_cursor_execute)
        event.remove(engine, "handle_error", self._handle_error)

    def _handle_error(self, exception_context):
        # A failed statement never reaches after_cursor_execute
        conn = exception_context.connection
        if conn is None:
            return
        starts = conn.info.get("guardapi_query_start")
        if starts:
            starts.pop()

    def _before_cursor_execute(
        self, conn, cursor, statement, parameters, context, executemany
    ):
        conn.info.setdefault("guardapi_query_start", []).append(time.perf_counter())

    def _after_cursor_execute(
        self, conn, cursor, statement, parameters, context, executemany
    ):
        starts = conn.info.get("guardapi_query_start")
        if not starts:
            return
        elapsed_ms = (time.perf_counter() - starts.pop()) * 1000
        # Only statements issued while serving a request carry client input
        if getattr(self._local, "reporting", False) or not has_request_context():
            return
        try:
            self.analyze_query(
                statement,
                parameters,
                execution_time_ms=elapsed_ms,
                context=RequestContext.from_request(user_id=g.get("user_id")),
            )
        except Exception as e:
            logger.error(f"Query analysis failed: {e}")
