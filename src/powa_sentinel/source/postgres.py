import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import psycopg2
from psycopg2.extras import RealDictCursor

from powa_sentinel.config import InstanceConfig
from powa_sentinel.domain import DegradedSource, QualifierStat, QueryStat, Snapshot
from powa_sentinel.exceptions import (
    DataUnavailable,
    PermissionDenied,
    SchemaIncompatible,
    SourceError,
)

logger = logging.getLogger(__name__)

UNDEFINED_TABLE = "42P01"
UNDEFINED_COLUMN = "42703"
UNDEFINED_FUNCTION = "42883"
INSUFFICIENT_PRIVILEGE = "42501"

_SCHEMA_CODES = (UNDEFINED_TABLE, UNDEFINED_COLUMN, UNDEFINED_FUNCTION)

# Approximate cost of one block read or written, in milliseconds.
BLOCK_IO_MS = 0.01


@dataclass(slots=True)
class ServerCapabilities:
    """Extension layout detected once per monitored instance."""

    pg_version: int
    powa_version: str
    has_kcache: bool = False
    has_qualstats: bool = False
    kcache_table: str | None = None
    notes: list[DegradedSource] = field(default_factory=list)

    @property
    def is_powa4(self) -> bool:
        return bool(self.powa_version) and self.powa_version[0] >= "4"

    @property
    def exec_time_column(self) -> str:
        return "total_exec_time" if self.pg_version >= 130000 else "total_time"


class PowaSnapshotSource:
    """Read-only snapshot source backed by a PoWA repository database.

    Reads the latest cumulative counters per query from
    ``powa_statements_history_current``, enriches them with pg_stat_kcache
    CPU/IO data when available and attaches pg_qualstats index suggestions.

    psycopg2 is blocking, so every fetch runs in a worker thread. The session
    is read-only and carries a ``statement_timeout`` matching the instance
    timeout so an abandoned fetch terminates server side as well.
    """

    MAX_ROWS = 10_000

    STATEMENTS_SQL_POWA4 = """
        WITH latest AS (
            SELECT DISTINCT ON (h.queryid, h.dbid, h.userid)
                h.queryid, h.dbid, h.userid,
                (h.record).calls AS calls,
                (h.record).{time_col} AS total_time,
                (h.record).rows AS rows
            FROM powa_statements_history_current h
            WHERE h.srvid = %(srvid)s
            ORDER BY h.queryid, h.dbid, h.userid, (h.record).ts DESC
        )
        SELECT
            l.queryid,
            d.datname,
            min(s.query) AS query,
            sum(l.calls)::bigint AS calls,
            sum(l.total_time)::float8 AS total_time,
            sum(l.rows)::bigint AS rows
        FROM latest l
        JOIN powa_databases d ON d.srvid = %(srvid)s AND d.oid = l.dbid
        JOIN powa_statements s
            ON s.srvid = %(srvid)s AND s.queryid = l.queryid
            AND s.dbid = l.dbid AND s.userid = l.userid
        GROUP BY l.queryid, d.datname
        ORDER BY total_time DESC
        LIMIT %(limit)s
    """

    STATEMENTS_SQL_POWA3 = """
        WITH latest AS (
            SELECT DISTINCT ON (h.queryid, h.dbid, h.userid)
                h.queryid, h.dbid, h.userid,
                (h.record).calls AS calls,
                (h.record).{time_col} AS total_time,
                (h.record).rows AS rows
            FROM powa_statements_history_current h
            ORDER BY h.queryid, h.dbid, h.userid, (h.record).ts DESC
        )
        SELECT
            l.queryid,
            d.datname,
            min(s.query) AS query,
            sum(l.calls)::bigint AS calls,
            sum(l.total_time)::float8 AS total_time,
            sum(l.rows)::bigint AS rows
        FROM latest l
        JOIN powa_databases d ON d.oid = l.dbid
        JOIN powa_statements s
            ON s.queryid = l.queryid AND s.dbid = l.dbid AND s.userid = l.userid
        GROUP BY l.queryid, d.datname
        ORDER BY total_time DESC
        LIMIT %(limit)s
    """

    KCACHE_SQL = """
        WITH latest AS (
            SELECT DISTINCT ON (k.queryid, k.dbid, k.userid)
                k.queryid, k.dbid,
                (k.metrics).exec_user_time + (k.metrics).exec_system_time AS cpu_time,
                (k.metrics).exec_reads + (k.metrics).exec_writes AS blocks
            FROM {table} k
            {where}
            ORDER BY k.queryid, k.dbid, k.userid, (k.metrics).ts DESC
        )
        SELECT l.queryid, d.datname, sum(l.cpu_time)::float8 AS cpu_time, sum(l.blocks)::bigint AS blocks
        FROM latest l
        JOIN powa_databases d ON d.oid = l.dbid {db_join}
        GROUP BY l.queryid, d.datname
    """

    QUALSTATS_SQL = """
        SELECT
            relname AS table_name,
            nspname AS schema_name,
            array_agg(DISTINCT attname) AS columns,
            qualtype,
            avg_filter AS estimated_improvement,
            count(*) AS affected_queries
        FROM powa_qualstats_indexes
        WHERE suggestion IS NOT NULL
        GROUP BY relname, nspname, qualtype, avg_filter
        ORDER BY estimated_improvement DESC
        LIMIT 100
    """

    def __init__(self, connect_timeout: int = 10) -> None:
        self._connect_timeout = connect_timeout
        self._capabilities: dict[str, ServerCapabilities] = {}

    async def fetch(self, instance: InstanceConfig) -> Snapshot:
        return await asyncio.to_thread(self._fetch_blocking, instance)

    def _connect(self, instance: InstanceConfig) -> Any:
        timeout_ms = int(instance.timeout.total_seconds() * 1000)
        try:
            conn = psycopg2.connect(
                instance.database.dsn(),
                connect_timeout=self._connect_timeout,
                options=f"-c statement_timeout={timeout_ms}",
            )
        except psycopg2.OperationalError as exc:
            raise DataUnavailable(f"cannot connect to {instance.id}: {exc}", cause="connect") from exc
        conn.set_session(readonly=True, autocommit=True)
        return conn

    def _fetch_blocking(self, instance: InstanceConfig) -> Snapshot:
        conn = self._connect(instance)
        try:
            caps = self._detect(conn, instance)
            stats = self._read_statements(conn, instance, caps)
            degraded = list(caps.notes)

            if caps.has_kcache:
                try:
                    stats = self._enrich_with_kcache(conn, instance, caps, stats)
                except SourceError as exc:
                    degraded.append(DegradedSource("kcache", exc.cause))
            else:
                degraded.append(DegradedSource("kcache", "pg_stat_kcache not installed"))

            qualifiers: tuple[QualifierStat, ...] | None = None
            if caps.has_qualstats:
                try:
                    qualifiers = self._read_qualifiers(conn)
                except SourceError as exc:
                    degraded.append(DegradedSource("qualstats", exc.cause))
            else:
                degraded.append(DegradedSource("qualstats", "pg_qualstats not installed"))
        except psycopg2.Error as exc:
            raise self._translate(exc, "reading snapshot") from exc
        finally:
            conn.close()

        return Snapshot(
            instance_id=instance.id,
            captured_at=datetime.now(UTC),
            stats=tuple(stats),
            qualifiers=qualifiers,
            degraded=tuple(degraded),
        )

    def _detect(self, conn: Any, instance: InstanceConfig) -> ServerCapabilities:
        cached = self._capabilities.get(instance.id)
        if cached is not None:
            return cached

        with conn.cursor() as cur:
            cur.execute("SHOW server_version_num")
            pg_version = int(cur.fetchone()[0])

            cur.execute("SELECT extversion FROM pg_extension WHERE extname = 'powa'")
            row = cur.fetchone()
            if row is None:
                raise SchemaIncompatible("powa extension is not installed", cause="powa extension missing")
            caps = ServerCapabilities(pg_version=pg_version, powa_version=str(row[0]))

            cur.execute(
                "SELECT extname FROM pg_extension WHERE extname IN ('pg_stat_kcache', 'pg_qualstats')"
            )
            installed = {r[0] for r in cur.fetchall()}
            caps.has_kcache = "pg_stat_kcache" in installed
            caps.has_qualstats = "pg_qualstats" in installed

            if caps.has_kcache:
                cur.execute(
                    """
                    SELECT tablename FROM pg_tables
                    WHERE schemaname = 'public' AND tablename LIKE 'powa_%%kcache%%current'
                    ORDER BY length(tablename) ASC
                    LIMIT 1
                    """
                )
                table = cur.fetchone()
                if table is None:
                    caps.has_kcache = False
                    caps.notes.append(DegradedSource("kcache", "no kcache table in PoWA repository"))
                else:
                    caps.kcache_table = str(table[0])

        logger.info(
            f"Detected {instance.id}: pg={caps.pg_version} powa={caps.powa_version} "
            f"kcache={caps.has_kcache} ({caps.kcache_table}) qualstats={caps.has_qualstats}"
        )
        self._capabilities[instance.id] = caps
        return caps

    def _read_statements(
        self, conn: Any, instance: InstanceConfig, caps: ServerCapabilities
    ) -> list[QueryStat]:
        template = self.STATEMENTS_SQL_POWA4 if caps.is_powa4 else self.STATEMENTS_SQL_POWA3
        sql = template.format(time_col=caps.exec_time_column)
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(sql, {"srvid": instance.server_id, "limit": self.MAX_ROWS})
            rows = cur.fetchall()

        return [
            QueryStat(
                fingerprint=f"{row['datname']}:{row['queryid']}",
                calls=int(row["calls"] or 0),
                total_time=float(row["total_time"] or 0.0),
                rows=int(row["rows"] or 0),
                query=row["query"] or "",
                database=row["datname"],
            )
            for row in rows
        ]

    def _enrich_with_kcache(
        self,
        conn: Any,
        instance: InstanceConfig,
        caps: ServerCapabilities,
        stats: list[QueryStat],
    ) -> list[QueryStat]:
        if caps.is_powa4:
            sql = self.KCACHE_SQL.format(
                table=caps.kcache_table,
                where="WHERE k.srvid = %(srvid)s",
                db_join="AND d.srvid = %(srvid)s",
            )
        else:
            sql = self.KCACHE_SQL.format(table=caps.kcache_table, where="", db_join="")

        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, {"srvid": instance.server_id})
                rows = cur.fetchall()
        except psycopg2.Error as exc:
            raise self._translate(exc, "reading kcache metrics") from exc

        kcache = {
            f"{row['datname']}:{row['queryid']}": (float(row["cpu_time"] or 0.0), int(row["blocks"] or 0))
            for row in rows
        }
        enriched: list[QueryStat] = []
        for stat in stats:
            data = kcache.get(stat.fingerprint)
            if data is None:
                enriched.append(stat)
                continue
            cpu_time, blocks = data
            enriched.append(
                QueryStat(
                    fingerprint=stat.fingerprint,
                    calls=stat.calls,
                    total_time=stat.total_time,
                    rows=stat.rows,
                    query=stat.query,
                    database=stat.database,
                    cpu_time=cpu_time,
                    io_time=blocks * BLOCK_IO_MS,
                )
            )
        return enriched

    def _read_qualifiers(self, conn: Any) -> tuple[QualifierStat, ...]:
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(self.QUALSTATS_SQL)
                rows = cur.fetchall()
        except psycopg2.Error as exc:
            raise self._translate(exc, "reading powa_qualstats_indexes") from exc

        qualifiers: list[QualifierStat] = []
        for row in rows:
            columns = tuple(sorted(row["columns"] or ()))
            if not columns:
                continue
            qualifiers.append(
                QualifierStat(
                    schema=row["schema_name"] or "public",
                    table=row["table_name"],
                    columns=columns,
                    calls=int(row["affected_queries"] or 0),
                    qual_type=row["qualtype"] or "",
                    estimated_improvement=float(row["estimated_improvement"] or 0.0),
                )
            )
        return tuple(qualifiers)

    @staticmethod
    def _translate(exc: psycopg2.Error, action: str) -> SourceError:
        code = getattr(exc, "pgcode", None)
        message = f"{action}: {str(exc).strip()}"
        if code in _SCHEMA_CODES:
            return SchemaIncompatible(message, cause=f"{action}: {code}")
        if code == INSUFFICIENT_PRIVILEGE:
            return PermissionDenied(message, cause=f"{action}: permission denied")
        return DataUnavailable(message, cause=action)
