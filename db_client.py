# =================================================================
#   SchoolDesk - Store Client
#   Thin table client over the relational store, shaped like a
#   hosted backend SDK: chained filters, a hard per-request row cap,
#   and range() paging. Every feature module talks to the store
#   through this wrapper.
# =================================================================

import logging
import re
import sqlite3
from contextlib import contextmanager

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class BackendError(Exception):
    """Any failure reported by the store. `code` is a short machine-readable reason."""

    def __init__(self, message, code='backend_error'):
        super().__init__(message)
        self.code = code


def _ident(name):
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise BackendError(f"Invalid identifier: {name!r}", code='invalid_identifier')
    return name


def _translate(error):
    """Map a sqlite3 error onto a BackendError."""
    message = str(error)
    if isinstance(error, sqlite3.IntegrityError):
        if 'UNIQUE' in message or 'PRIMARY KEY' in message:
            return BackendError(message, code='unique_violation')
        return BackendError(message, code='constraint_violation')
    return BackendError(message)


class BackendClient:
    """
    Entry point to the store.

    Usage:
        client = BackendClient('school.db')
        rows = client.table('students').select('studentid', 'name').eq('class_id', 3).execute()
    """

    def __init__(self, db_path, max_rows=1000):
        self.db_path = db_path
        self.max_rows = max_rows
        self._tx_conn = None

    def connect(self):
        # check_same_thread=False is needed because Flask and the scheduler use different threads.
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def table(self, name):
        return TableQuery(self, _ident(name))

    def ping(self):
        conn = self.connect()
        try:
            conn.execute("SELECT 1").fetchone()
        finally:
            conn.close()

    @property
    def in_transaction(self):
        return self._tx_conn is not None

    @contextmanager
    def transaction(self):
        """
        Run every query issued through this client inside one transaction.

        Usage:
            with client.transaction():
                client.table('attendance').eq('date', day).delete()
                client.table('attendance').insert(rows)

        Commits when the block exits cleanly and rolls back on any exception.
        A nested block joins the outer transaction.
        """
        if self._tx_conn is not None:
            yield self
            return

        conn = self.connect()
        self._tx_conn = conn
        try:
            yield self
            conn.commit()
        except Exception:
            conn.rollback()
            logger.warning("[DB] Transaction rolled back")
            raise
        finally:
            self._tx_conn = None
            conn.close()

    @contextmanager
    def session(self, write=False):
        """Connection for one statement group; commits writes unless a transaction is open."""
        if self._tx_conn is not None:
            yield self._tx_conn
            return

        conn = self.connect()
        try:
            yield conn
            if write:
                conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def run(self, sql, params=(), write=False):
        """Run one statement; returns (rows, rowcount, lastrowid)."""
        try:
            with self.session(write) as conn:
                cursor = conn.execute(sql, params)
                rows = [dict(row) for row in cursor.fetchall()]
                return rows, cursor.rowcount, cursor.lastrowid
        except sqlite3.Error as e:
            logger.error(f"[DB] Statement failed: {e} - SQL: {sql}")
            raise _translate(e) from e


class TableQuery:
    """Chained query against one table. Filters apply to select, count, update and delete."""

    def __init__(self, client, table):
        self.client = client
        self.table_name = table
        self._columns = '*'
        self._filters = []
        self._order = []
        self._offset = 0
        self._limit = None

    # --- Building ---

    def select(self, *columns):
        if columns and columns != ('*',):
            self._columns = ', '.join(_ident(c) for c in columns)
        return self

    def _add(self, column, op, value):
        self._filters.append((f"{_ident(column)} {op} ?", [value]))
        return self

    def eq(self, column, value):
        return self._add(column, '=', value)

    def neq(self, column, value):
        return self._add(column, '!=', value)

    def gt(self, column, value):
        return self._add(column, '>', value)

    def gte(self, column, value):
        return self._add(column, '>=', value)

    def lt(self, column, value):
        return self._add(column, '<', value)

    def lte(self, column, value):
        return self._add(column, '<=', value)

    def in_(self, column, values):
        values = list(values)
        if not values:
            # An empty IN list matches nothing
            self._filters.append(("0", []))
            return self
        placeholders = ','.join('?' for _ in values)
        self._filters.append((f"{_ident(column)} IN ({placeholders})", values))
        return self

    def in_query(self, column, subquery):
        """
        Filter on `column IN (subquery)`, like an embedded-resource filter in the
        hosted SDK. The subquery must select exactly one column; its filters
        travel with it so no id list is sent.
        """
        if subquery._columns == '*' or ',' in subquery._columns:
            raise BackendError("in_query needs a subquery selecting one column", code='invalid_subquery')
        where, params = subquery._where()
        self._filters.append(
            (f"{_ident(column)} IN (SELECT {subquery._columns} FROM {subquery.table_name}{where})", params)
        )
        return self

    def ilike(self, column, pattern):
        self._filters.append((f"LOWER({_ident(column)}) LIKE LOWER(?)", [pattern]))
        return self

    def is_null(self, column, null=True):
        op = 'IS NULL' if null else 'IS NOT NULL'
        self._filters.append((f"{_ident(column)} {op}", []))
        return self

    def order(self, column, desc=False):
        self._order.append((_ident(column), desc))
        return self

    def range(self, start, end):
        """Inclusive row range, like the hosted SDK's .range(from, to)."""
        self._offset = max(0, int(start))
        self._limit = max(0, int(end) - int(start) + 1)
        return self

    def limit(self, n):
        self._limit = max(0, int(n))
        return self

    def ordered_by(self, column):
        return any(col == column for col, _ in self._order)

    def _where(self):
        if not self._filters:
            return '', []
        clauses = [clause for clause, _ in self._filters]
        params = [p for _, values in self._filters for p in values]
        return ' WHERE ' + ' AND '.join(clauses), params

    # --- Reading ---

    def execute(self):
        where, params = self._where()
        sql = f"SELECT {self._columns} FROM {self.table_name}{where}"
        if self._order:
            sql += ' ORDER BY ' + ', '.join(f"{col} {'DESC' if desc else 'ASC'}" for col, desc in self._order)
        # The row cap applies whether or not the caller asked for a range
        limit = self.client.max_rows if self._limit is None else min(self._limit, self.client.max_rows)
        sql += ' LIMIT ? OFFSET ?'
        rows, _, _ = self.client.run(sql, params + [limit, self._offset])
        return rows

    def count(self):
        where, params = self._where()
        rows, _, _ = self.client.run(f"SELECT COUNT(*) AS n FROM {self.table_name}{where}", params)
        return rows[0]['n']

    def single(self):
        rows = self.limit(2).execute()
        if not rows:
            raise BackendError(f"No row found in {self.table_name}", code='not_found')
        if len(rows) > 1:
            raise BackendError(f"Multiple rows found in {self.table_name}", code='multiple_rows')
        return rows[0]

    def maybe_single(self):
        rows = self.limit(2).execute()
        if len(rows) > 1:
            raise BackendError(f"Multiple rows found in {self.table_name}", code='multiple_rows')
        return rows[0] if rows else None

    # --- Writing ---

    def insert(self, rows):
        """Insert one dict or a list of dicts; returns the stored rows."""
        if isinstance(rows, dict):
            rows = [rows]
        if not rows:
            return []

        inserted = []
        try:
            with self.client.session(write=True) as conn:
                for row in rows:
                    columns = [_ident(c) for c in row]
                    placeholders = ','.join('?' for _ in columns)
                    cursor = conn.execute(
                        f"INSERT INTO {self.table_name} ({', '.join(columns)}) VALUES ({placeholders})",
                        list(row.values())
                    )
                    stored = conn.execute(
                        f"SELECT * FROM {self.table_name} WHERE rowid = ?", (cursor.lastrowid,)
                    ).fetchone()
                    inserted.append(dict(stored))
        except sqlite3.Error as e:
            logger.error(f"[DB] Insert into {self.table_name} failed: {e}")
            raise _translate(e) from e
        return inserted

    def _require_filter(self, action):
        if not self._filters:
            raise BackendError(f"{action} on {self.table_name} requires a filter", code='missing_filter')

    def update(self, values):
        self._require_filter('update')
        if not values:
            return 0
        assignments = ', '.join(f"{_ident(c)} = ?" for c in values)
        where, params = self._where()
        _, rowcount, _ = self.client.run(
            f"UPDATE {self.table_name} SET {assignments}{where}",
            list(values.values()) + params,
            write=True
        )
        return rowcount

    def delete(self):
        self._require_filter('delete')
        where, params = self._where()
        _, rowcount, _ = self.client.run(f"DELETE FROM {self.table_name}{where}", params, write=True)
        return rowcount

    def upsert(self, rows, on_conflict):
        """Insert rows, updating in place when the on_conflict columns already exist."""
        if isinstance(rows, dict):
            rows = [rows]
        if not rows:
            return 0
        conflict_cols = [_ident(c.strip()) for c in on_conflict.split(',')]
        columns = [_ident(c) for c in rows[0]]
        updates = [c for c in columns if c not in conflict_cols]
        sql = (
            f"INSERT INTO {self.table_name} ({', '.join(columns)}) "
            f"VALUES ({','.join('?' for _ in columns)}) "
            f"ON CONFLICT ({', '.join(conflict_cols)}) "
        )
        if updates:
            sql += "DO UPDATE SET " + ', '.join(f"{c} = excluded.{c}" for c in updates)
        else:
            sql += "DO NOTHING"

        try:
            with self.client.session(write=True) as conn:
                conn.executemany(sql, [[row.get(c) for c in columns] for row in rows])
        except sqlite3.Error as e:
            logger.error(f"[DB] Upsert into {self.table_name} failed: {e}")
            raise _translate(e) from e
        return len(rows)


# =================================================================
#   Chunked helpers
# =================================================================

def fetch_all(query, page_size=1000, order_key='id'):
    """
    Fetch every row matching `query`, one page at a time.

    Pages are requested with range(offset, offset + size - 1) and appended
    until a page comes back shorter than the page size. `order_key` is added
    as the last ordering term so consecutive pages never overlap. The first
    store error propagates.
    """
    page_size = min(page_size, query.client.max_rows)
    if order_key and not query.ordered_by(order_key):
        query.order(order_key)

    results = []
    offset = 0
    while True:
        page = query.range(offset, offset + page_size - 1).execute()
        results.extend(page)
        if len(page) < page_size:
            break
        offset += page_size
    return results


def fetch_in_chunks(client, table, column, values, chunk_size=150, columns=('*',),
                    apply=None, page_size=1000, order_key='id'):
    """
    Run fetch_all for `column IN values`, splitting `values` into chunks so
    the filter never grows past `chunk_size` entries. `apply` may add more
    filters to each chunk's query.
    """
    values = list(values)
    results = []
    for i in range(0, len(values), chunk_size):
        query = client.table(table).select(*columns).in_(column, values[i:i + chunk_size])
        if apply:
            query = apply(query)
        results.extend(fetch_all(query, page_size=page_size, order_key=order_key))
    return results


def insert_chunked(client, table, rows, chunk_size=500):
    """Insert rows in batches; returns the number of rows written."""
    written = 0
    for i in range(0, len(rows), chunk_size):
        written += len(client.table(table).insert(rows[i:i + chunk_size]))
    return written
