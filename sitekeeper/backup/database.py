"""
Database dump to a portable SQL text file.

Reflects every table of the site database with SQLAlchemy and streams the
schema and rows to disk. Rows are fetched in fixed-size batches so memory
stays bounded regardless of table size.
"""

import logging
import os
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy import MetaData, create_engine, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateTable

from .types import BackupError, ErrorKind

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500

# MySQL string escapes (mysql_real_escape_string)
_ESCAPES = {
    '\\': '\\\\',
    "'": "\\'",
    '\0': '\\0',
    '\n': '\\n',
    '\r': '\\r',
    '\x1a': '\\Z',
}


class DumpError(BackupError):
    """Raised when the database dump fails."""

    kind = ErrorKind.DUMP_FAILED


def quote_identifier(name: str) -> str:
    return '`' + name.replace('`', '``') + '`'


def escape_string(value: str) -> str:
    return ''.join(_ESCAPES.get(char, char) for char in value)


def sql_literal(value) -> str:
    """
    Render a Python value as a SQL literal.

    Args:
        value: Column value as returned by the driver

    Returns:
        SQL text for the value (``NULL`` for None)
    """
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        data = bytes(value)
        return f"X'{data.hex()}'" if data else "''"
    if isinstance(value, datetime):
        return f"'{value.strftime('%Y-%m-%d %H:%M:%S')}'"
    if isinstance(value, (date, time)):
        return f"'{value.isoformat()}'"
    if isinstance(value, timedelta):
        # MySQL TIME columns come back as timedelta
        seconds = int(value.total_seconds())
        sign = '-' if seconds < 0 else ''
        hours, remainder = divmod(abs(seconds), 3600)
        minutes, seconds = divmod(remainder, 60)
        return f"'{sign}{hours:02d}:{minutes:02d}:{seconds:02d}'"
    return f"'{escape_string(str(value))}'"


def _create_statement(connection, table) -> str:
    if connection.dialect.name == 'mysql':
        row = connection.execute(text(f"SHOW CREATE TABLE {quote_identifier(table.name)}")).fetchone()
        return row[1]
    return str(CreateTable(table).compile(dialect=connection.dialect)).strip()


def dump_database(
    source: Union[str, Engine],
    output_path: str,
    batch_size: int = DEFAULT_BATCH_SIZE,
    site_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Write a full SQL dump of a database.

    Args:
        source: SQLAlchemy URL or Engine of the site database
        output_path: Destination file (usually ``init.sql``)
        batch_size: Rows fetched per round trip
        site_url: Written to the header for reference
        now: Generation time for the header

    Returns:
        Number of tables dumped

    Raises:
        DumpError: If no tables exist, the database is unreachable,
            or the output file ends up empty
    """
    engine = create_engine(source) if isinstance(source, str) else source
    now = now or datetime.utcnow()

    try:
        metadata = MetaData()
        metadata.reflect(bind=engine)
        tables = metadata.sorted_tables

        if not tables:
            raise DumpError("No tables found in database")

        logger.info(f"Dumping {len(tables)} tables")

        with engine.connect() as connection, open(output_path, 'w', encoding='utf-8') as out:
            out.write("-- Site Backup SQL Dump\n")
            out.write(f"-- Site URL: {site_url or 'unknown'}\n")
            out.write(f"-- Generated: {now.strftime('%Y-%m-%d %H:%M:%S')}\n\n")
            out.write('SET SQL_MODE = "NO_AUTO_VALUE_ON_ZERO";\n')
            out.write('SET time_zone = "+00:00";\n\n')

            for table in tables:
                rows = _dump_table(connection, table, out, batch_size)
                logger.debug(f"Dumped table {table.name} ({rows} rows)")

    except DumpError:
        raise
    except (SQLAlchemyError, OSError) as e:
        raise DumpError(f"Database dump failed: {e}")
    finally:
        if isinstance(source, str):
            engine.dispose()

    if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
        raise DumpError("Database dump is empty")

    return len(tables)


def _dump_table(connection, table, out, batch_size: int) -> int:
    name = quote_identifier(table.name)

    out.write("\n-- --------------------------------------------------------\n\n")
    out.write(f"DROP TABLE IF EXISTS {name};\n")
    out.write(_create_statement(connection, table) + ";\n\n")

    statement = select(table)
    primary_key = list(table.primary_key.columns)
    if primary_key:
        statement = statement.order_by(*primary_key)

    result = connection.execution_options(stream_results=True).execute(statement)
    count = 0
    for batch in result.partitions(batch_size):
        for row in batch:
            values = ', '.join(sql_literal(value) for value in row)
            out.write(f"INSERT INTO {name} VALUES\n(" if count == 0 else ",\n(")
            out.write(values + ')')
            count += 1

    if count:
        out.write(";\n")
    return count
