"""
Load SQL dump files into their target databases (SQLAlchemy).

Each target is replaced wholesale: existing tables are reflected and
dropped, then the dump is applied statement by statement inside a single
transaction. Targets are processed in configured order and the first
failing target aborts the stage.
"""
import logging
import math
import re
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

from sqlalchemy import MetaData, create_engine, event, func, inspect, select, table
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import SQLAlchemyError

from dumpsync.core.config import TargetDatabase
from dumpsync.core.errors import DatabaseImportError
from dumpsync.db.db_url import resolve_db_url, sqlite_path

logger = logging.getLogger(__name__)

# VM instructions between deadline checks while a statement runs
SQLITE_PROGRESS_STEPS = 10_000

# Session and client statements a dump may carry; the target is chosen by URL
SKIPPED_STATEMENT = re.compile(
    r"^(SET\b|LOCK\s+TABLES\b|UNLOCK\s+TABLES\b|START\s+TRANSACTION\b|BEGIN\b|COMMIT\b"
    r"|USE\b|CREATE\s+DATABASE\b|DROP\s+DATABASE\b)",
    re.IGNORECASE,
)


def split_statements(lines: Iterable[str]) -> Iterator[str]:
    """
    Yield SQL statements from a dump, one at a time.

    Statements end at a ';' outside quotes. '--' and '#' line comments and
    /* */ block comments are dropped. Backslash escapes inside quoted
    strings are honoured.
    """
    buf: list[str] = []
    quote: Optional[str] = None
    in_block = False

    for line in lines:
        i, n = 0, len(line)
        while i < n:
            if in_block:
                end = line.find("*/", i)
                if end < 0:
                    i = n
                else:
                    in_block = False
                    i = end + 2
                continue

            ch = line[i]
            if quote:
                buf.append(ch)
                if ch == "\\" and quote != "`" and i + 1 < n:
                    buf.append(line[i + 1])
                    i += 2
                    continue
                if ch == quote:
                    quote = None
                i += 1
                continue

            if ch in "'\"`":
                quote = ch
                buf.append(ch)
            elif ch == "#" or (line.startswith("--", i) and (i + 2 >= n or line[i + 2].isspace())):
                buf.append("\n")
                break
            elif line.startswith("/*", i):
                in_block = True
                i += 2
                continue
            elif ch == ";":
                stmt = "".join(buf).strip()
                buf = []
                if stmt:
                    yield stmt
            else:
                buf.append(ch)
            i += 1

    tail = "".join(buf).strip()
    if tail:
        yield tail


def is_skipped_statement(statement: str) -> bool:
    return bool(SKIPPED_STATEMENT.match(statement.lstrip()))


def driver_timeouts(db_url: str, timeout: float) -> dict[str, Any]:
    """connect_args bounding connect and per-statement time for the URL's driver.

    SQLite gets its lock-wait timeout here; the statement deadline is
    enforced separately through a progress handler.
    """
    if not timeout:
        return {}
    url = make_url(db_url)
    backend, driver = url.get_backend_name(), url.get_driver_name()
    seconds = max(1, math.ceil(timeout))
    if backend == "sqlite":
        return {"timeout": timeout}
    if backend == "postgresql" and driver in ("psycopg", "psycopg2"):
        return {"connect_timeout": seconds, "options": f"-c statement_timeout={seconds * 1000}"}
    if backend in ("mysql", "mariadb") and driver in ("pymysql", "mysqldb"):
        return {"connect_timeout": seconds, "read_timeout": seconds, "write_timeout": seconds}
    logger.warning("No driver timeouts known for %s+%s; only the load deadline applies", backend, driver)
    return {}


def _transactional_sqlite(engine: Engine) -> None:
    """Let pysqlite run DDL inside the transaction so a failed load rolls back the drop."""

    @event.listens_for(engine, "connect")
    def _no_implicit_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")


class DatabaseImporter:
    """Applies dumps to the configured target databases."""

    def __init__(
        self,
        targets: list[TargetDatabase],
        timeout: float = 600,
        max_error_ratio: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.targets = list(targets)
        self.timeout = timeout
        self.max_error_ratio = max_error_ratio
        self._clock = clock
        self._by_name = {t.name: t for t in self.targets}

    # ── Stage entry point ────────────────────────────────────────────

    def import_databases(
        self,
        dumps: dict[str, Path],
        on_imported: Optional[Callable[[str, Path], None]] = None,
    ) -> list[str]:
        """
        Load every target that has a dump, in configured order.

        Args:
            dumps: Target name -> dump path.
            on_imported: Called after each target loads successfully.

        Returns:
            Names of the targets loaded.

        Raises:
            DatabaseImportError: first failing target; later targets are not touched.
        """
        imported: list[str] = []
        for target in self.targets:
            dump = dumps.get(target.name)
            if dump is None:
                logger.info("No dump for target %s, skipping", target.name)
                continue
            self.import_database(target.name, dump)
            imported.append(target.name)
            if on_imported:
                on_imported(target.name, dump)
        return imported

    def import_database(self, target_name: str, dump_path: str | Path) -> int:
        """Replace one target database with the contents of dump_path. Returns statements applied."""
        target = self._target(target_name)
        dump = Path(dump_path)
        self.validate_dump(target_name, dump)

        started = self._clock()
        deadline = started + self.timeout if self.timeout else None
        engine = self._engine(target)
        try:
            applied = self._apply(target_name, engine, dump, deadline)
            tables = inspect(engine).get_table_names()
            if not tables:
                raise DatabaseImportError(target_name, "no tables found after import")
        except SQLAlchemyError as e:
            if self._expired(deadline):
                raise self._timed_out(target_name) from e
            raise DatabaseImportError(target_name, "database error", engine_error=str(e)) from e
        finally:
            engine.dispose()

        logger.info(
            "Imported %s into %s: %d statements, %d tables in %.1fs",
            dump.name, target_name, applied, len(tables), self._clock() - started,
        )
        return applied

    # ── Steps ────────────────────────────────────────────────────────

    def validate_dump(self, target_name: str, dump: Path) -> None:
        """Exists, non-empty, .sql, and holds at least one statement."""
        if not dump.is_file():
            raise DatabaseImportError(target_name, f"dump file not found: {dump}")
        if dump.suffix.lower() != ".sql":
            raise DatabaseImportError(target_name, f"not an SQL dump: {dump.name}")
        if dump.stat().st_size == 0:
            raise DatabaseImportError(target_name, f"dump file is empty: {dump.name}")
        with open(dump, encoding="utf-8", errors="replace") as fh:
            if next(split_statements(fh), None) is None:
                raise DatabaseImportError(target_name, f"dump contains no SQL statements: {dump.name}")

    def _engine(self, target: TargetDatabase) -> Engine:
        if not target.url:
            raise DatabaseImportError(target.name, "no database URL configured")
        url = resolve_db_url(target.url)
        path = sqlite_path(url)
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(url, pool_pre_ping=True, connect_args=driver_timeouts(url, self.timeout))
        if engine.dialect.name == "sqlite":
            _transactional_sqlite(engine)
        return engine

    def _expired(self, deadline: Optional[float]) -> bool:
        return deadline is not None and self._clock() > deadline

    def _timed_out(self, target_name: str) -> DatabaseImportError:
        return DatabaseImportError(target_name, f"import timed out after {self.timeout:g}s")

    def _apply(self, target_name: str, engine: Engine, dump: Path, deadline: Optional[float]) -> int:
        with engine.begin() as conn:
            dbapi = conn.connection.dbapi_connection if engine.dialect.name == "sqlite" else None
            if dbapi is not None and deadline is not None:
                # interrupts the running statement, reflection and drops included
                dbapi.set_progress_handler(lambda: 1 if self._expired(deadline) else 0, SQLITE_PROGRESS_STEPS)
            try:
                total, failed, first_error = self._replace(target_name, conn, dump, deadline, savepoints=dbapi is None)
            finally:
                if dbapi is not None:
                    dbapi.set_progress_handler(None, 0)

            if total == 0:
                raise DatabaseImportError(target_name, "dump contains only session statements")
            if failed and failed / total > self.max_error_ratio:
                raise DatabaseImportError(
                    target_name,
                    f"{failed} of {total} statements failed",
                    engine_error=first_error,
                )

        if failed:
            logger.warning(
                "%s: %d of %d statements failed (within tolerance). First error: %s",
                target_name, failed, total, first_error,
            )
        return total - failed

    def _replace(
        self,
        target_name: str,
        conn: Connection,
        dump: Path,
        deadline: Optional[float],
        savepoints: bool,
    ) -> tuple[int, int, Optional[str]]:
        """Drop existing tables, then apply the dump. Returns (total, failed, first_error)."""
        total = failed = 0
        first_error: Optional[str] = None

        existing = MetaData()
        existing.reflect(bind=conn)
        if existing.tables:
            logger.info("Dropping %d existing table(s) in %s", len(existing.tables), target_name)
            existing.drop_all(bind=conn)

        with open(dump, encoding="utf-8", errors="replace") as fh:
            for statement in split_statements(fh):
                if is_skipped_statement(statement):
                    continue
                if self._expired(deadline):
                    raise self._timed_out(target_name)
                total += 1
                try:
                    if savepoints:
                        with conn.begin_nested():
                            conn.exec_driver_sql(statement)
                    else:
                        conn.exec_driver_sql(statement)
                except SQLAlchemyError as e:
                    if self._expired(deadline):
                        raise self._timed_out(target_name) from e
                    failed += 1
                    if first_error is None:
                        first_error = str(getattr(e, "orig", None) or e)
                    logger.debug("Statement %d failed in %s: %s", total, target_name, e)
        return total, failed, first_error

    # ── Diagnostics ──────────────────────────────────────────────────

    def get_import_stats(self, target_name: str) -> dict:
        """Table and row counts of a target database."""
        target = self._target(target_name)
        engine = self._engine(target)
        try:
            names = inspect(engine).get_table_names()
            rows: dict[str, int] = {}
            with engine.connect() as conn:
                for name in names:
                    rows[name] = conn.execute(select(func.count()).select_from(table(name))).scalar_one()
        except SQLAlchemyError as e:
            raise DatabaseImportError(target_name, "cannot read statistics", engine_error=str(e)) from e
        finally:
            engine.dispose()
        return {
            "database": target_name,
            "table_count": len(names),
            "total_rows": sum(rows.values()),
            "tables": rows,
        }

    def _target(self, name: str) -> TargetDatabase:
        try:
            return self._by_name[name]
        except KeyError:
            raise DatabaseImportError(name, "unknown target database") from None
