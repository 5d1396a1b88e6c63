"""The catalogue of statistics queries scraped from the target.

Each group is one fixed query against a ``pg_statsinfo`` function or a
``pg_stat_*`` view. Declared columns are checked against the descriptors at
import time and against the query result at scrape time.
"""
from typing import Dict, Iterable, Optional, Tuple

from pg_stats_exporter.descriptors import (
    DescriptorGroup, MILLISECONDS, counter, gauge, histogram, validate_groups,
)

# statsinfo.cpustats() returns cumulative CPU time per cpu_id, see
# https://github.com/ossc-db/pg_statsinfo/blob/15.1/agent/lib/pg_statsinfo.sql.in
CPUSTATS = DescriptorGroup(
    id="cpustats",
    description="CPU time reported by pg_statsinfo",
    query="""
        SELECT
            stats.cpu_id,
            stats.cpu_user,
            stats.cpu_system,
            stats.cpu_idle,
            stats.cpu_iowait
        FROM
            statsinfo.cpustats() AS stats
    """,
    columns=("cpu_id", "cpu_user", "cpu_system", "cpu_idle", "cpu_iowait"),
    descriptors=(
        counter(
            "pg_statsinfo_cpu_user_total",
            "The amount of time CPUs spent running user processes",
            "cpu_user", ["cpu_id"],
        ),
        counter(
            "pg_statsinfo_cpu_system_total",
            "The amount of time CPUs spent in running the operating system functions",
            "cpu_system", ["cpu_id"],
        ),
        counter(
            "pg_statsinfo_cpu_idle_total",
            "The amount of time CPUs weren't busy",
            "cpu_idle", ["cpu_id"],
        ),
        counter(
            "pg_statsinfo_cpu_iowait_total",
            "The amount of time CPUs were idle while the system had pending I/O requests",
            "cpu_iowait", ["cpu_id"],
        ),
    ),
)

# avail and total are exported as statsinfo.tablespaces() returns them (byte
# counts derived from statvfs); rows where they are NULL produce no sample.
TABLESPACES = DescriptorGroup(
    id="tablespaces",
    description="Tablespace capacity reported by pg_statsinfo",
    query="""
        SELECT
            stats.name,
            stats.location,
            stats.avail,
            stats.total
        FROM
            statsinfo.tablespaces() AS stats
    """,
    columns=("name", "location", "avail", "total"),
    descriptors=(
        gauge(
            "pg_statsinfo_tablespace_avail_bytes",
            "Available space on the device holding the tablespace",
            "avail", ["name", "location"],
        ),
        gauge(
            "pg_statsinfo_tablespace_total_bytes",
            "Total space on the device holding the tablespace",
            "total", ["name", "location"],
        ),
    ),
)

DATABASE = DescriptorGroup(
    id="database",
    description="Per-database activity from pg_stat_database",
    query="""
        SELECT
            datname,
            numbackends,
            xact_commit,
            xact_rollback,
            blks_read,
            blks_hit,
            tup_returned,
            tup_fetched,
            tup_inserted,
            tup_updated,
            tup_deleted,
            deadlocks,
            temp_bytes,
            blk_read_time,
            blk_write_time
        FROM
            pg_stat_database
        WHERE
            datname IS NOT NULL
    """,
    columns=(
        "datname", "numbackends", "xact_commit", "xact_rollback", "blks_read", "blks_hit",
        "tup_returned", "tup_fetched", "tup_inserted", "tup_updated", "tup_deleted",
        "deadlocks", "temp_bytes", "blk_read_time", "blk_write_time",
    ),
    descriptors=(
        gauge("pg_stat_database_numbackends", "Number of backends connected to the database",
              "numbackends", ["datname"]),
        counter("pg_stat_database_xact_commit_total", "Transactions committed",
                "xact_commit", ["datname"]),
        counter("pg_stat_database_xact_rollback_total", "Transactions rolled back",
                "xact_rollback", ["datname"]),
        counter("pg_stat_database_blks_read_total", "Disk blocks read",
                "blks_read", ["datname"]),
        counter("pg_stat_database_blks_hit_total", "Disk blocks found in the buffer cache",
                "blks_hit", ["datname"]),
        counter("pg_stat_database_tup_returned_total", "Live rows fetched by sequential scans",
                "tup_returned", ["datname"]),
        counter("pg_stat_database_tup_fetched_total", "Live rows fetched by index scans",
                "tup_fetched", ["datname"]),
        counter("pg_stat_database_tup_inserted_total", "Rows inserted",
                "tup_inserted", ["datname"]),
        counter("pg_stat_database_tup_updated_total", "Rows updated",
                "tup_updated", ["datname"]),
        counter("pg_stat_database_tup_deleted_total", "Rows deleted",
                "tup_deleted", ["datname"]),
        counter("pg_stat_database_deadlocks_total", "Deadlocks detected",
                "deadlocks", ["datname"]),
        counter("pg_stat_database_temp_bytes_total", "Data written to temporary files",
                "temp_bytes", ["datname"]),
        counter("pg_stat_database_blk_read_time_seconds_total", "Time spent reading data file blocks",
                "blk_read_time", ["datname"], scale=MILLISECONDS),
        counter("pg_stat_database_blk_write_time_seconds_total", "Time spent writing data file blocks",
                "blk_write_time", ["datname"], scale=MILLISECONDS),
    ),
)

USER_TABLES = DescriptorGroup(
    id="user_tables",
    description="Per-table access statistics from pg_stat_user_tables",
    query="""
        SELECT
            schemaname,
            relname,
            seq_scan,
            idx_scan,
            n_live_tup,
            n_dead_tup
        FROM
            pg_stat_user_tables
    """,
    columns=("schemaname", "relname", "seq_scan", "idx_scan", "n_live_tup", "n_dead_tup"),
    descriptors=(
        counter("pg_stat_user_tables_seq_scan_total", "Sequential scans initiated on the table",
                "seq_scan", ["schemaname", "relname"]),
        # idx_scan is NULL for tables without indexes
        counter("pg_stat_user_tables_idx_scan_total", "Index scans initiated on the table",
                "idx_scan", ["schemaname", "relname"]),
        gauge("pg_stat_user_tables_n_live_tup", "Estimated number of live rows",
              "n_live_tup", ["schemaname", "relname"]),
        gauge("pg_stat_user_tables_n_dead_tup", "Estimated number of dead rows",
              "n_dead_tup", ["schemaname", "relname"]),
    ),
)

ACTIVITY = DescriptorGroup(
    id="activity",
    description="Connections grouped by state from pg_stat_activity",
    query="""
        SELECT
            coalesce(state, 'unknown') AS state,
            count(*) AS connections
        FROM
            pg_stat_activity
        GROUP BY 1
    """,
    columns=("state", "connections"),
    descriptors=(
        gauge("pg_stat_activity_connections", "Connections in each backend state",
              "connections", ["state"]),
    ),
)

# Cumulative buckets of open transaction age, one row per upper bound
XACT_AGE = DescriptorGroup(
    id="xact_age",
    description="Histogram of open transaction age",
    query="""
        WITH ages AS (
            SELECT extract(epoch FROM clock_timestamp() - xact_start)::float8 AS age
            FROM pg_stat_activity
            WHERE xact_start IS NOT NULL
        ),
        bounds(le) AS (
            VALUES (0.1::float8), (1), (10), (60), (300), (1800), ('Infinity'::float8)
        )
        SELECT
            b.le,
            count(a.age) FILTER (WHERE a.age <= b.le) AS bucket_count,
            (SELECT coalesce(sum(age), 0) FROM ages) AS age_sum
        FROM
            bounds b LEFT JOIN ages a ON true
        GROUP BY b.le
        ORDER BY b.le
    """,
    columns=("le", "bucket_count", "age_sum"),
    descriptors=(
        histogram(
            "pg_stat_activity_xact_age_seconds",
            "Age of open transactions",
            bucket_column="le", count_column="bucket_count", sum_column="age_sum",
        ),
    ),
)

GROUPS: Tuple[DescriptorGroup, ...] = validate_groups(
    (CPUSTATS, TABLESPACES, DATABASE, USER_TABLES, ACTIVITY, XACT_AGE)
)

GROUPS_BY_ID: Dict[str, DescriptorGroup] = {group.id: group for group in GROUPS}


def select_groups(ids: Optional[Iterable[str]] = None) -> Tuple[DescriptorGroup, ...]:
    """Return the enabled groups in catalogue order."""
    if ids is None:
        return GROUPS
    wanted = set(ids)
    unknown = wanted - set(GROUPS_BY_ID)
    if unknown:
        raise KeyError(f"Unknown statistics groups: {sorted(unknown)}")
    return tuple(group for group in GROUPS if group.id in wanted)
