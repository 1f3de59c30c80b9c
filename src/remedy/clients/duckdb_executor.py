"""Sandbox executor and snapshot store backed by the DuckDB data database.

Generated code is DuckDB SQL. It names the table it operates on through the
``{{ target }}`` placeholder (and ``{{ column }}`` for the target column), so
the same code can run against a sample copy during iteration and against the
real asset once approved.
"""

import asyncio
import logging
import threading
import uuid
from collections.abc import Callable
from typing import Any, TypeVar

from remedy.clients.base import (
    Checkpoint,
    ExecutionResult,
    ExecutionScope,
    SandboxExecutor,
    SnapshotStore,
)
from remedy.database.base import Database, DatabaseError
from remedy.database.manager import DatabaseManager
from remedy.templating import LayeredContext, TemplateResolver
from remedy.utils.validation import quote_sql_identifier, validate_asset_name

logger = logging.getLogger(__name__)

T = TypeVar("T")

PREVIEW_ROWS = 5


def split_statements(sql: str) -> list[str]:
    """Split a SQL script on semicolons outside quotes and comments."""
    statements: list[str] = []
    current: list[str] = []
    quote: str | None = None
    i = 0
    while i < len(sql):
        char = sql[i]
        if quote:
            current.append(char)
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
            current.append(char)
        elif sql.startswith("--", i):
            end = sql.find("\n", i)
            i = len(sql) if end == -1 else end
            continue
        elif char == ";":
            statements.append("".join(current))
            current = []
        else:
            current.append(char)
        i += 1
    statements.append("".join(current))
    return [statement.strip() for statement in statements if statement.strip()]


class _Session:
    """A user database session worked from a thread and stopped from the loop."""

    def __init__(self, db: Database):
        self.db = db
        self.stopped = threading.Event()

    def check(self) -> None:
        """Raise if the session was stopped between two statements."""
        if self.stopped.is_set():
            raise DatabaseError("Interrupted")

    def stop(self) -> None:
        self.stopped.set()
        self.db.interrupt()


async def run_in_session(
    db_manager: DatabaseManager, work: Callable[..., T], *args: Any
) -> T:
    """Run blocking database work in a worker thread on its own session.

    Cancelling the caller, a ``wait_for`` timeout included, interrupts the
    running statement and waits for the worker to unwind before re-raising,
    so no statement keeps running behind a caller that gave up.
    """
    session = _Session(db_manager.user_session())
    task = asyncio.ensure_future(asyncio.to_thread(work, session, *args))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        session.stop()
        await asyncio.wait({task})
        if task.exception() is not None:
            logger.info(f"Stopped database work after cancel: {task.exception()}")
        raise
    finally:
        if task.done():
            session.db.close()


class DuckDBSandboxExecutor(SandboxExecutor):
    """Runs generated SQL against the user database.

    Sample runs copy the first ``size`` rows of the target into a temporary
    table and run there; the real asset is never touched. Full runs execute
    inside a transaction that is rolled back on any SQL error, so an errored
    run applies no rows.

    A row succeeds when it satisfies the scope's validation rule after the
    code ran. Without a rule every remaining row counts as succeeded.

    Each run happens in a worker thread on its own session, so the event loop
    stays free and a caller's timeout interrupts the running statement.
    """

    def __init__(self, db_manager: DatabaseManager, resolver: TemplateResolver | None = None):
        self.db_manager = db_manager
        self.resolver = resolver or TemplateResolver()

    async def run(self, code: str, scope: ExecutionScope) -> ExecutionResult:
        validate_asset_name(scope.target_asset)
        work = self._run_sample if scope.is_sample else self._run_full
        return await run_in_session(self.db_manager, work, code, scope)

    def _run_sample(
        self, session: _Session, code: str, scope: ExecutionScope
    ) -> ExecutionResult:
        sample_table = f"remedy_sample_{uuid.uuid4().hex[:12]}"
        source = quote_sql_identifier(scope.target_asset)
        target = quote_sql_identifier(sample_table)

        try:
            session.db.execute(
                f"CREATE TEMP TABLE {target} AS "
                f"SELECT * FROM {source} LIMIT {int(scope.size)}"
            )
        except DatabaseError as e:
            return ExecutionResult.failed(f"Could not sample {scope.target_asset}: {e}")

        try:
            before = self._preview(session, target)
            try:
                affected = self._execute_script(session, code, target, scope)
                result = self._validate(session, target, scope)
            except DatabaseError as e:
                return ExecutionResult.failed(str(e))

            result.rows_affected = affected
            result.sample_before = before
            result.sample_after = self._preview(session, target)
            return result
        finally:
            if not session.stopped.is_set():
                session.db.execute(f"DROP TABLE IF EXISTS {target}")

    def _run_full(
        self, session: _Session, code: str, scope: ExecutionScope
    ) -> ExecutionResult:
        target = quote_sql_identifier(scope.target_asset)

        try:
            before = self._preview(session, target)
            with session.db.transaction():
                affected = self._execute_script(session, code, target, scope)
                result = self._validate(session, target, scope)
                session.check()
        except DatabaseError as e:
            logger.warning(f"Full run on {scope.target_asset} failed: {e}")
            return ExecutionResult.failed(str(e))

        result.rows_affected = affected
        result.sample_before = before
        result.sample_after = self._preview(session, target)
        return result

    def _render(self, text: str, target: str, scope: ExecutionScope) -> str:
        variables: dict[str, Any] = dict(scope.variables)
        variables["target"] = target
        if scope.target_column:
            variables["column"] = quote_sql_identifier(scope.target_column)
        return self.resolver.resolve(text, LayeredContext(params=variables))

    def _execute_script(
        self, session: _Session, code: str, target: str, scope: ExecutionScope
    ) -> int:
        statements = split_statements(self._render(code, target, scope))
        if not statements:
            raise DatabaseError("Generated code contains no SQL statements")

        affected = 0
        for statement in statements:
            session.check()
            result = session.db.query(statement)
            # DML statements report a single "Count" column
            if result.count() == 1 and list(result.first()) == ["Count"]:
                affected += int(result.first()["Count"] or 0)
        return affected

    def _validate(
        self, session: _Session, target: str, scope: ExecutionScope
    ) -> ExecutionResult:
        if not scope.validation_rule:
            total = session.db.query(f"SELECT COUNT(*) AS n FROM {target}")
            return ExecutionResult(rows_succeeded=int(total.first()["n"]))

        rule = self._render(scope.validation_rule, target, scope)
        counts = session.db.query(
            f"""
            SELECT COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE COALESCE(({rule}), FALSE)) AS passed
            FROM {target}
            """
        ).first()
        failures = session.db.query(
            f"SELECT * FROM {target} WHERE NOT COALESCE(({rule}), FALSE) LIMIT ?",
            [PREVIEW_ROWS],
        )

        passed = int(counts["passed"])
        return ExecutionResult(
            rows_succeeded=passed,
            rows_failed=int(counts["total"]) - passed,
            failures=failures.rows,
        )

    def _preview(self, session: _Session, table: str) -> list[dict[str, Any]]:
        return session.db.query(f"SELECT * FROM {table} LIMIT ?", [PREVIEW_ROWS]).rows


class DuckDBSnapshotStore(SnapshotStore):
    """Copies the target asset into a backup table in the same database."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def capture(self, target_asset: str, label: str) -> Checkpoint:
        validate_asset_name(target_asset)
        backup = f"remedy_snapshot_{uuid.uuid4().hex[:8]}_{_safe_label(label)}"

        count = await run_in_session(self.db_manager, _copy_table, target_asset, backup)

        logger.info(f"Captured {count} rows of {target_asset} into {backup}")
        return Checkpoint(reference=backup, row_count=count)

    async def restore(self, target_asset: str, reference: str) -> None:
        validate_asset_name(target_asset)
        validate_asset_name(reference)

        await run_in_session(self.db_manager, _replace_rows, target_asset, reference)
        logger.info(f"Restored {target_asset} from {reference}")


def _copy_table(session: _Session, source: str, backup: str) -> int:
    quoted_backup = quote_sql_identifier(backup)
    session.db.execute(
        f"CREATE TABLE {quoted_backup} AS SELECT * FROM {quote_sql_identifier(source)}"
    )
    return int(session.db.query(f"SELECT COUNT(*) AS n FROM {quoted_backup}").first()["n"])


def _replace_rows(session: _Session, target_asset: str, reference: str) -> None:
    target = quote_sql_identifier(target_asset)
    with session.db.transaction():
        session.db.execute(f"DELETE FROM {target}")
        session.db.execute(
            f"INSERT INTO {target} SELECT * FROM {quote_sql_identifier(reference)}"
        )
        session.check()


def _safe_label(label: str) -> str:
    cleaned = "".join(char if char.isalnum() else "_" for char in label)
    return cleaned[:32] or "plan"
