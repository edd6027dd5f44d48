"""
Access to the FusionPBX PostgreSQL database.

Two interchangeable backends share one small query interface
(`scalar`, `row`, `rows`, `execute`), so admin provisioning and diagnostics
run the same SQL whether they execute inside the container (psycopg2 straight
to PostgreSQL) or on the Docker host (psql through `docker exec`).

SQL is written with psycopg2 `%(name)s` placeholders. For psql the
placeholders are rewritten to `:'name'` and the values bound with `-v`, so
psql does the quoting.
"""

import re
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

import psycopg2
import psycopg2.extras

from .config import DatabaseSettings
from .errors import DatabaseError
from .logging_config import get_logger
from .shell import Runner, run

logger = get_logger(__name__)

INSTALL_TABLES = ("v_domains", "v_users", "v_groups")

INSTALLED_TABLES_SQL = (
    "SELECT count(*) FROM information_schema.tables "
    "WHERE table_schema = 'public' "
    "AND table_name IN ('v_domains', 'v_users', 'v_groups')"
)


class Database(Protocol):
    def scalar(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> Any: ...

    def row(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]: ...

    def rows(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]: ...

    def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> int: ...


class PostgresDatabase:
    """psycopg2 connection; each call runs in its own transaction."""

    def __init__(self, conn):
        self.conn = conn

    def _cursor_call(self, sql: str, params, fetch: Callable):
        try:
            with self.conn:
                with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                    cur.execute(sql, params or None)
                    return fetch(cur)
        except psycopg2.Error as exc:
            raise DatabaseError(f"Query failed: {str(exc).strip()}") from exc

    def scalar(self, sql, params=None):
        row = self.row(sql, params)
        if not row:
            return None
        return next(iter(row.values()))

    def row(self, sql, params=None):
        result = self._cursor_call(sql, params, lambda cur: cur.fetchone())
        return dict(result) if result is not None else None

    def rows(self, sql, params=None):
        return [dict(r) for r in self._cursor_call(sql, params, lambda cur: cur.fetchall())]

    def execute(self, sql, params=None) -> int:
        return self._cursor_call(sql, params, lambda cur: cur.rowcount)

    def close(self) -> None:
        self.conn.close()


def connect_with_retry(
    settings: DatabaseSettings,
    attempts: int = 10,
    delay: float = 3,
    sleep: Callable[[float], None] = time.sleep,
    connect: Callable[..., Any] = psycopg2.connect,
) -> PostgresDatabase:
    """Connect to PostgreSQL, retrying a fixed number of times."""
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            conn = connect(**settings.connect_kwargs())
            logger.info("Connected to database", host=settings.host, database=settings.name)
            return PostgresDatabase(conn)
        except psycopg2.OperationalError as exc:
            last_error = exc
            logger.warning(
                "Database connection failed",
                attempt=attempt,
                attempts=attempts,
                error=str(exc).strip(),
            )
            if attempt < attempts:
                sleep(delay)
    raise DatabaseError(
        f"Could not connect to database after {attempts} attempts: {str(last_error).strip()}"
    )


_PLACEHOLDER = re.compile(r"%\((\w+)\)s")
_COMMAND_TAG = re.compile(r"^(INSERT \d+|UPDATE|DELETE|SELECT|COPY|MERGE) (\d+)$")


class ContainerPsql:
    """Runs SQL through `psql` inside the FusionPBX container.

    Output is parsed from unaligned, tab-separated psql output with a header row.
    """

    def __init__(
        self,
        container_name: str,
        settings: DatabaseSettings,
        runner: Runner = run,
        host: str = "localhost",
    ):
        self.container_name = container_name
        self.settings = settings
        self.runner = runner
        self.host = host

    def _argv(self, params: Mapping[str, Any]) -> List[str]:
        argv = [
            "docker", "exec", "-i",
            "-e", f"PGPASSWORD={self.settings.password}",
            self.container_name,
            "psql",
            "-h", self.host,
            "-U", self.settings.user,
            "-d", self.settings.name,
            "-X",
            "-v", "ON_ERROR_STOP=1",
            "-A",
            "-F", "\t",
            "-P", "footer=off",
        ]
        for key, value in params.items():
            argv += ["-v", f"p_{key}={'' if value is None else value}"]
        argv += ["-f", "-"]
        return argv

    @staticmethod
    def to_psql(sql: str) -> str:
        """Rewrite %(name)s placeholders to psql :'p_name' interpolation."""
        return _PLACEHOLDER.sub(lambda m: f":'p_{m.group(1)}'", sql).rstrip().rstrip(";") + ";\n"

    def _run(self, sql: str, params: Optional[Mapping[str, Any]]) -> str:
        params = dict(params or {})
        result = self.runner(self._argv(params), input_text=self.to_psql(sql))
        if not result.ok:
            message = (result.stderr or result.stdout).strip() or f"psql exited with {result.returncode}"
            raise DatabaseError(f"Query failed in {self.container_name}: {message}")
        return result.stdout

    def rows(self, sql, params=None):
        lines = [line for line in self._run(sql, params).splitlines() if line != ""]
        if not lines:
            return []
        header = lines[0].split("\t")
        out = []
        for line in lines[1:]:
            values = line.split("\t")
            out.append({col: (values[i] if i < len(values) and values[i] != "" else None) for i, col in enumerate(header)})
        return out

    def row(self, sql, params=None):
        found = self.rows(sql, params)
        return found[0] if found else None

    def scalar(self, sql, params=None):
        row = self.row(sql, params)
        if not row:
            return None
        return next(iter(row.values()))

    def execute(self, sql, params=None) -> int:
        output = self._run(sql, params).strip().splitlines()
        for line in reversed(output):
            match = _COMMAND_TAG.match(line.strip())
            if match:
                return int(match.group(2))
        return 0


def is_installed(db: Database) -> bool:
    """FusionPBX counts as installed once its core tables exist."""
    try:
        count = db.scalar(INSTALLED_TABLES_SQL)
    except DatabaseError as exc:
        logger.debug("Install check query failed", error=str(exc))
        return False
    return as_int(count) == len(INSTALL_TABLES)


def as_int(value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0
