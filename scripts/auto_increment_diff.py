#!/usr/bin/env python3
"""
Compare AUTO_INCREMENT counters with real row counts for a MySQL schema.

Usage:
    python auto_increment_diff.py <database> [--dsn DSN] [--cpuprofile PATH]

The script reads information_schema.TABLES for every table of <database> whose
AUTO_INCREMENT has advanced past 1, runs an exact COUNT(*) against each of them
and prints a table with the last issued key value, the row count and the
relative difference between the two. Tables are listed by AUTO_INCREMENT,
highest first.

A drift of 0.00% means every key ever handed out still has its row. Positive
values point at deleted rows or rolled back inserts; 200.00% means the table
was emptied without resetting its counter.
"""

from __future__ import annotations

import argparse
import cProfile
import logging
import os
import re
import sys
from contextlib import closing, contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Sequence, TextIO
from urllib.parse import parse_qsl

import mysql.connector

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

DSN_ENV_VAR = "MYSQL_DSN"
DEFAULT_DSN = "root:@tcp(localhost:3306)/?charset=utf8mb4"

# [user[:password]@][tcp(host[:port])|unix(/path)]/[dbname][?params]
DSN_PATTERN = re.compile(
    r"^(?:(?P<user>[^:@/]*)(?::(?P<password>.*))?@)?"
    r"(?:(?P<net>[a-z]+)(?:\((?P<address>[^)]*)\))?)?"
    r"/(?P<database>[^?/]*)"
    r"(?:\?(?P<params>.*))?$"
)

CATALOG_QUERY = (
    "SELECT TABLE_NAME, AUTO_INCREMENT "
    "FROM information_schema.TABLES "
    "WHERE TABLE_SCHEMA = %s AND AUTO_INCREMENT > 1 "
    "ORDER BY AUTO_INCREMENT DESC, TABLE_NAME"
)
STATS_EXPIRY_STATEMENT = "SET SESSION information_schema_stats_expiry = 0"

REPORT_HEADER = ("table", "AUTO", "count", "Δ")
MIN_CELL_WIDTH = 10
CELL_PADDING = 1


class AutoIncrementDiffError(RuntimeError):
    """Base class for failures that abort the report."""


class UsageError(AutoIncrementDiffError):
    pass


class DatabaseConnectionError(AutoIncrementDiffError):
    pass


class CatalogQueryError(AutoIncrementDiffError):
    pass


class CountQueryError(AutoIncrementDiffError):
    def __init__(self, table: str, cause: BaseException) -> None:
        super().__init__(f"COUNT(*) failed for table {table!r}: {cause}")
        self.table = table
        self.cause = cause


class OutputError(AutoIncrementDiffError):
    pass


@dataclass
class TableReport:
    name: str
    last_issued: int
    count: Optional[int] = None

    @property
    def drift_percent(self) -> float:
        if self.count is None:
            raise ValueError(f"Table {self.name!r} has not been counted yet.")
        return drift_percent(self.last_issued, self.count)

    def __str__(self) -> str:
        return (
            f"{self.name}, AUTO_INCREMENT: {self.last_issued}, "
            f"COUNT(*): {self.count}"
        )


def drift_percent(last_issued: int, count: int) -> float:
    """Symmetric relative difference between two counters, in percent.

    Bounded to [-200, 200]. Returns 0.0 when both values are zero.
    """
    a, b = float(last_issued), float(count)
    if a + b == 0:
        return 0.0
    return (a - b) / ((a + b) / 2) * 100


def quote_identifier(identifier: str) -> str:
    """Return identifier quoted with backticks for MySQL usage."""
    return "`" + identifier.replace("`", "``") + "`"


def parse_dsn(dsn: str) -> Dict[str, object]:
    """Translate a Go-driver style DSN into mysql.connector.connect() kwargs."""
    match = DSN_PATTERN.match(dsn.strip())
    if not match:
        raise UsageError(f"Unsupported DSN format: {dsn!r}")

    params: Dict[str, object] = {}
    if match.group("user"):
        params["user"] = match.group("user")
    if match.group("password"):
        params["password"] = match.group("password")

    net = match.group("net") or "tcp"
    address = match.group("address") or ""
    if net == "unix":
        if not address:
            raise UsageError(f"DSN {dsn!r} names no unix socket path.")
        params["unix_socket"] = address
    elif net == "tcp":
        host, port = address, ""
        if address.rfind(":") > address.rfind("]"):
            host, _, port = address.rpartition(":")
        params["host"] = host.strip("[]") or "localhost"
        if port:
            try:
                params["port"] = int(port)
            except ValueError:
                raise UsageError(f"Invalid port {port!r} in DSN.") from None
    else:
        raise UsageError(f"Unsupported DSN protocol {net!r}.")

    if match.group("database"):
        params["database"] = match.group("database")

    for key, value in parse_qsl(match.group("params") or ""):
        if key == "charset":
            params["charset"] = value.split(",")[0]
        elif key == "timeout":
            try:
                params["connection_timeout"] = int(value.rstrip("s"))
            except ValueError:
                raise UsageError(f"Invalid timeout {value!r} in DSN.") from None
        else:
            logger.debug("Ignoring DSN parameter %s=%s", key, value)
    return params


def connect(dsn: str):
    params = parse_dsn(dsn)
    target = params.get("unix_socket") or f"{params['host']}:{params.get('port', 3306)}"
    logger.debug("Connecting to MySQL at %s", target)
    try:
        return mysql.connector.connect(autocommit=True, **params)
    except mysql.connector.Error as err:
        raise DatabaseConnectionError(
            f"Cannot connect to MySQL at {target}: {err}"
        ) from err


def refresh_table_stats(conn) -> None:
    """Make information_schema report live AUTO_INCREMENT values (MySQL 8+)."""
    try:
        with closing(conn.cursor()) as cursor:
            cursor.execute(STATS_EXPIRY_STATEMENT)
    except mysql.connector.Error as err:
        raise CatalogQueryError(
            f"Cannot disable information_schema stats caching: {err}"
        ) from err


def _as_counter(value: object) -> int:
    if isinstance(value, bool):
        raise TypeError(value)
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return int(value)
    raise TypeError(value)


def _decode_catalog_row(row: Sequence[object]) -> TableReport:
    try:
        name, next_value = row
    except (TypeError, ValueError):
        raise CatalogQueryError(f"Unexpected catalog row: {row!r}") from None

    if isinstance(name, (bytes, bytearray)):
        try:
            name = bytes(name).decode("utf-8")
        except UnicodeDecodeError as err:
            raise CatalogQueryError(f"Undecodable table name {name!r}") from err
    if not isinstance(name, str) or not name:
        raise CatalogQueryError(f"Unexpected table name in catalog row: {row!r}")

    try:
        next_auto_increment = _as_counter(next_value)
    except TypeError:
        raise CatalogQueryError(
            f"Non-integer AUTO_INCREMENT {next_value!r} for table {name!r}"
        ) from None
    # The catalog stores the next value to assign, not the last one issued.
    last_issued = next_auto_increment - 1
    if last_issued < 0:
        raise CatalogQueryError(
            f"Negative AUTO_INCREMENT {next_auto_increment} for table {name!r}"
        )
    return TableReport(name=name, last_issued=last_issued)


def scan_auto_increment_tables(conn, database: str) -> List[TableReport]:
    """Return tables of database with an advanced counter, highest first."""
    if not database:
        raise UsageError("A target schema name is required.")
    try:
        with closing(conn.cursor()) as cursor:
            cursor.execute(CATALOG_QUERY, (database,))
            rows = cursor.fetchall()
    except mysql.connector.Error as err:
        raise CatalogQueryError(
            f"Cannot list tables of schema {database!r}: {err}"
        ) from err
    return [_decode_catalog_row(row) for row in rows]


def count_rows(conn, database: str, reports: List[TableReport]) -> List[TableReport]:
    """Fill in the exact row count of every report, in order."""
    schema = quote_identifier(database)
    for report in reports:
        query = f"SELECT COUNT(*) FROM {schema}.{quote_identifier(report.name)}"
        logger.debug(query)
        try:
            with closing(conn.cursor()) as cursor:
                cursor.execute(query)
                rows = cursor.fetchall()
        except mysql.connector.Error as err:
            raise CountQueryError(report.name, err) from err
        try:
            report.count = _as_counter(rows[0][0])
        except (IndexError, TypeError) as err:
            raise CountQueryError(
                report.name, ValueError(f"unexpected COUNT(*) result {rows!r}")
            ) from err
    return reports


def render_report(reports: Sequence[TableReport]) -> str:
    rows = [REPORT_HEADER] + [
        (
            report.name,
            str(report.last_issued),
            str(report.count),
            f"{report.drift_percent:.2f}%",
        )
        for report in reports
    ]

    # Every column but the last is left-justified to its widest cell.
    widths = [
        max(MIN_CELL_WIDTH, max(len(row[i]) for row in rows) + CELL_PADDING)
        for i in range(len(REPORT_HEADER) - 1)
    ]
    lines = [
        "".join(cell.ljust(width) for cell, width in zip(row, widths)) + row[-1]
        for row in rows
    ]
    lines.append("")
    return "\n".join(lines) + "\n"


def write_report(reports: Sequence[TableReport], stream: TextIO) -> None:
    text = render_report(reports)
    try:
        stream.write(text)
        stream.flush()
    except (OSError, ValueError) as err:
        raise OutputError(f"Cannot write report: {err}") from err


@contextmanager
def cpu_profile(path: Optional[str]) -> Iterator[None]:
    if not path:
        yield
        return

    try:
        with open(path, "wb"):
            pass
    except OSError as err:
        raise OutputError(f"Cannot create CPU profile {path}: {err}") from err

    profiler = cProfile.Profile()
    profiler.enable()
    try:
        yield
    finally:
        profiler.disable()
        try:
            profiler.dump_stats(path)
        except OSError as err:
            raise OutputError(f"Cannot write CPU profile {path}: {err}") from err
        logger.info("CPU profile written to %s", path)


def run(
    database: str, dsn: str, stream: TextIO, refresh_stats: bool = False
) -> List[TableReport]:
    with closing(connect(dsn)) as conn:
        if refresh_stats:
            refresh_table_stats(conn)
        reports = scan_auto_increment_tables(conn, database)
        logger.info("Found %d AUTO_INCREMENT tables in %s", len(reports), database)
        count_rows(conn, database, reports)
    write_report(reports, stream)
    return reports


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        usage="%(prog)s <database> [OPTIONS]",
        description="Finds diff between real COUNT(*) and AUTO_INCREMENT.",
        add_help=False,
    )
    parser.add_argument(
        "database", nargs="?", help="Name of the schema to inspect."
    )
    parser.add_argument(
        "-h", "--help", action="store_true", help="Show help text and exit."
    )
    parser.add_argument(
        "--dsn",
        "--sqlDSN",
        dest="dsn",
        help=(
            f"MySQL data source name (default: ${DSN_ENV_VAR} or {DEFAULT_DSN!r})."
        ),
    )
    parser.add_argument(
        "--cpuprofile",
        "--debug.cpuprofile",
        dest="cpuprofile",
        help="Write a cProfile dump of the run to this file.",
    )
    parser.add_argument(
        "--refresh-stats",
        action="store_true",
        help="Disable information_schema stats caching for the session (MySQL 8+).",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log every query."
    )
    return parser


def main(argv: Optional[Sequence[str]] = None, stdout: Optional[TextIO] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    logger.info("Begin counting…")

    if args.help:
        parser.print_help(sys.stderr)
        return 0
    if not args.database:
        parser.print_help(sys.stderr)
        return 1

    dsn = args.dsn or os.environ.get(DSN_ENV_VAR) or DEFAULT_DSN
    try:
        with cpu_profile(args.cpuprofile):
            run(args.database, dsn, stdout or sys.stdout, args.refresh_stats)
    except UsageError as err:
        logger.error("%s", err)
        parser.print_usage(sys.stderr)
        return 1
    except CountQueryError as err:
        logger.error("count err: %s", err)
        return 1
    except AutoIncrementDiffError as err:
        logger.error("%s", err)
        return 1
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
