"""Storage collaborators for the generators.

Two stores expose the same interface:

- ``FrameStore`` keeps one pandas DataFrame per table in process and enforces
  the schema's primary key, unique, foreign-key and check constraints itself,
  including cascade deletes.
- ``PostgresStore`` bulk-loads through ``COPY FROM STDIN`` and leaves every
  constraint to PostgreSQL (see ``schema.sql``).

Both assign identifiers through ``reserve_ids`` so the generators can embed
them in unique fields before the rows are written.
"""

import io
from decimal import Decimal
from pathlib import Path

import numpy as np
import pandas as pd
import psycopg2

from ecommerce_datagen.db_config import get_connection
from ecommerce_datagen.errors import (
    CheckViolation,
    ReferentialViolation,
    UniquenessViolation,
)
from ecommerce_datagen.reports import FRAME_REPORTS, REPORT_SQL, to_cents

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

# Load order respects table dependencies
LOAD_ORDER: list[str] = [
    "customers",
    "categories",
    "products",
    "orders",
    "order_details",
]

TABLES: dict[str, dict] = {
    "customers": {
        "key": "customer_id",
        "columns": {
            "customer_id": "int64",
            "email": "object",
            "password_hash": "object",
            "first_name": "object",
            "last_name": "object",
        },
        "unique": ["email"],
        "references": {},
        "minimums": {},
        "nullable": [],
        "defaults": {},
    },
    "categories": {
        "key": "category_id",
        "columns": {
            "category_id": "int64",
            "name": "object",
        },
        "unique": ["name"],
        "references": {},
        "minimums": {},
        "nullable": [],
        "defaults": {},
    },
    "products": {
        "key": "product_id",
        "columns": {
            "product_id": "int64",
            "category_id": "int64",
            "name": "object",
            "description": "object",
            "price": "float64",
            "stock_quantity": "int64",
        },
        "unique": [],
        "references": {"category_id": "categories"},
        "minimums": {"price": 0, "stock_quantity": 0},
        "nullable": ["description"],
        "defaults": {},
    },
    "orders": {
        "key": "order_id",
        "columns": {
            "order_id": "int64",
            "customer_id": "int64",
            "order_date": "datetime64[ns]",
            "customer_name": "object",
            "total_amount": "float64",
        },
        "unique": [],
        "references": {"customer_id": "customers"},
        "minimums": {"total_amount": 0},
        "nullable": [],
        "defaults": {"total_amount": 0.0},
    },
    "order_details": {
        "key": "order_detail_id",
        "columns": {
            "order_detail_id": "int64",
            "order_id": "int64",
            "product_id": "int64",
            "unit_price": "float64",
            "quantity": "int64",
        },
        "unique": [],
        "references": {"order_id": "orders", "product_id": "products"},
        "minimums": {"unit_price": 0, "quantity": 1},
        "nullable": [],
        "defaults": {},
    },
}


def table_meta(table: str) -> dict:
    """Return the metadata for ``table``; unknown names raise KeyError."""
    if table not in TABLES:
        raise KeyError(f"unknown table: {table!r}")
    return TABLES[table]


def _empty_frame(table: str) -> pd.DataFrame:
    columns = table_meta(table)["columns"]
    return pd.DataFrame({name: pd.Series(dtype=dtype) for name, dtype in columns.items()})


def _sample(values, limit: int = 5) -> list:
    return pd.Series(values).head(limit).tolist()


# ============================================================
# In-process store
# ============================================================


class FrameStore:
    """In-process store backed by one DataFrame per table."""

    def __init__(self) -> None:
        self.tables: dict[str, pd.DataFrame] = {}
        self._sequences: dict[str, int] = {}
        self.create_schema()

    def create_schema(self) -> None:
        """Drop and recreate every table (empty)."""
        for table in LOAD_ORDER:
            self.tables[table] = _empty_frame(table)
            self._sequences[table] = 0

    def count(self, table: str) -> int:
        table_meta(table)
        return len(self.tables[table])

    def ids(self, table: str) -> np.ndarray:
        """Sorted array of the live primary keys of ``table``."""
        key = table_meta(table)["key"]
        return np.sort(self.tables[table][key].to_numpy(dtype=np.int64))

    def reserve_ids(self, table: str, n: int) -> np.ndarray:
        key = table_meta(table)["key"]
        live = self.tables[table][key]
        # explicit ids inserted without a reservation still advance the sequence
        start = max(self._sequences[table], int(live.max()) if len(live) else 0)
        self._sequences[table] = start + n
        return np.arange(start + 1, start + n + 1, dtype=np.int64)

    def fetch(self, table: str, columns=None, ids=None) -> pd.DataFrame:
        key = table_meta(table)["key"]
        frame = self.tables[table]
        if ids is not None:
            frame = frame[frame[key].isin(np.asarray(ids, dtype=np.int64))]
        frame = frame.sort_values(key)
        if columns is not None:
            frame = frame[list(columns)]
        return frame.reset_index(drop=True).copy()

    def insert(self, table: str, frame: pd.DataFrame) -> np.ndarray:
        """Append rows; returns their primary keys (reserved here when absent)."""
        meta = table_meta(table)
        rows = frame.reset_index(drop=True)
        if meta["key"] not in rows.columns:
            rows.insert(0, meta["key"], self.reserve_ids(table, len(rows)))
        for column, default in meta["defaults"].items():
            if column not in rows.columns:
                rows[column] = default
        for column in meta["nullable"]:
            if column not in rows.columns:
                rows[column] = None
        missing = [c for c in meta["columns"] if c not in rows.columns]
        if missing:
            raise CheckViolation(f"{table}: missing required column(s) {missing}")
        rows = rows[list(meta["columns"])].astype(meta["columns"])

        self._validate(table, rows, rows.columns, existing=self.tables[table])
        if len(self.tables[table]) == 0:
            self.tables[table] = rows.reset_index(drop=True)
        else:
            self.tables[table] = pd.concat([self.tables[table], rows], ignore_index=True)
        return rows[meta["key"]].to_numpy(dtype=np.int64)

    def update_values(self, table: str, frame: pd.DataFrame) -> int:
        """Overwrite columns of existing rows, matched on the primary key."""
        key = table_meta(table)["key"]
        changes = frame.set_index(key)
        current = self.tables[table]
        positions = pd.Index(current[key]).get_indexer(changes.index)
        if (positions < 0).any():
            unknown = changes.index[positions < 0]
            raise ReferentialViolation(f"{table}: no rows with {key} {_sample(unknown)}")

        candidate = current.copy()
        for column in changes.columns:
            values = candidate[column].to_numpy(copy=True)
            values[positions] = changes[column].to_numpy()
            candidate[column] = pd.Series(values, index=candidate.index).astype(
                table_meta(table)["columns"][column]
            )
        self._validate(table, candidate, changes.columns)
        self.tables[table] = candidate
        return len(changes)

    def order_totals(self, order_ids=None) -> pd.DataFrame:
        """Per-order SUM(unit_price * quantity) and line count, orphans included."""
        orders = self.fetch("orders", ["order_id"], ids=order_ids)
        details = self.tables["order_details"]
        details = details[details["order_id"].isin(orders["order_id"])]
        lines = pd.DataFrame({
            "order_id": details["order_id"].to_numpy(dtype=np.int64),
            "cents": to_cents(details["unit_price"]) * details["quantity"].to_numpy(dtype=np.int64),
        })
        grouped = lines.groupby("order_id")["cents"].agg(["sum", "size"])
        merged = orders.merge(grouped, left_on="order_id", right_index=True, how="left")
        return pd.DataFrame({
            "order_id": merged["order_id"].to_numpy(dtype=np.int64),
            "total_amount": merged["sum"].fillna(0).to_numpy(dtype=np.int64) / 100,
            "line_count": merged["size"].fillna(0).to_numpy(dtype=np.int64),
        })

    def delete(self, table: str, ids) -> int:
        """Delete rows by primary key, cascading to every referencing table."""
        key = table_meta(table)["key"]
        frame = self.tables[table]
        doomed = frame[key].isin(np.asarray(ids, dtype=np.int64))
        removed = frame.loc[doomed, key].to_numpy()
        self.tables[table] = frame[~doomed].reset_index(drop=True)

        for child in LOAD_ORDER:
            meta = TABLES[child]
            for column, parent in meta["references"].items():
                if parent != table:
                    continue
                rows = self.tables[child]
                dependents = rows.loc[rows[column].isin(removed), meta["key"]]
                if len(dependents):
                    self.delete(child, dependents)
        return len(removed)

    def report(self, name: str, **params) -> pd.DataFrame:
        return FRAME_REPORTS[name](self.tables, **params)

    def close(self) -> None:
        pass

    def _validate(self, table: str, rows: pd.DataFrame, columns, existing=None) -> None:
        """Enforce NOT NULL, UNIQUE, FOREIGN KEY and CHECK constraints on ``columns``."""
        meta = TABLES[table]
        columns = set(columns)

        for column in columns:
            if column in meta["nullable"]:
                continue
            nulls = rows[column].isna()
            if nulls.any():
                raise CheckViolation(f"{table}.{column} may not be null ({int(nulls.sum())} row(s))")

        for column in [meta["key"], *meta["unique"]]:
            if column not in columns:
                continue
            clash = rows[column].duplicated(keep=False)
            if existing is not None:
                clash |= rows[column].isin(existing[column])
            if clash.any():
                raise UniquenessViolation(
                    f"duplicate {table}.{column}: {_sample(rows.loc[clash, column].unique())}"
                )

        for column, parent in meta["references"].items():
            if column not in columns:
                continue
            live = self.tables[parent][TABLES[parent]["key"]]
            dangling = ~rows[column].isin(live)
            if dangling.any():
                raise ReferentialViolation(
                    f"{table}.{column} does not resolve in {parent}: "
                    f"{_sample(rows.loc[dangling, column].unique())}"
                )

        for column, minimum in meta["minimums"].items():
            if column not in columns:
                continue
            below = rows[column] < minimum
            if below.any():
                raise CheckViolation(f"{table}.{column} must be >= {minimum} ({int(below.sum())} row(s))")


# ============================================================
# PostgreSQL store
# ============================================================

ORDER_TOTALS_SQL = """
    SELECT o.order_id,
           COALESCE(ROUND(SUM(d.unit_price * d.quantity), 2), 0) AS total_amount,
           COUNT(d.order_detail_id) AS line_count
    FROM orders o
    LEFT JOIN order_details d ON d.order_id = o.order_id
    {where}
    GROUP BY o.order_id
    ORDER BY o.order_id;
"""


def _coerce_decimals(frame: pd.DataFrame) -> pd.DataFrame:
    """NUMERIC columns come back as Decimal; convert them to float64."""
    for column in frame.columns:
        first = frame[column].dropna().head(1)
        if len(first) and isinstance(first.iloc[0], Decimal):
            frame[column] = frame[column].astype(np.float64)
    return frame


def _to_csv_buffer(frame: pd.DataFrame) -> io.StringIO:
    buf = io.StringIO()
    frame.to_csv(
        buf,
        index=False,
        header=False,
        lineterminator="\n",
        date_format="%Y-%m-%d %H:%M:%S",
    )
    buf.seek(0)
    return buf


class PostgresStore:
    """Store backed by a PostgreSQL connection."""

    def __init__(self, conn: psycopg2.extensions.connection) -> None:
        self.conn = conn

    @classmethod
    def connect(cls) -> "PostgresStore":
        return cls(get_connection())

    def create_schema(self) -> None:
        """Execute schema.sql to drop and recreate all tables + indexes."""
        sql = SCHEMA_PATH.read_text(encoding="utf-8")
        with self.conn.cursor() as cur:
            cur.execute(sql)
        self.conn.commit()
        print("Schema created (tables + indexes).")

    def get_index_definitions(self) -> list[tuple[str, str]]:
        """Retrieve (name, CREATE INDEX statement) for all user-created indexes."""
        query = """
            SELECT indexname, indexdef
            FROM pg_indexes
            WHERE schemaname = 'public'
              AND indexname NOT LIKE '%_pkey'
              AND indexname NOT LIKE '%_key'
            ORDER BY indexname;
        """
        with self.conn.cursor() as cur:
            cur.execute(query)
            return [(row[0], row[1]) for row in cur.fetchall()]

    def drop_indexes(self) -> list[str]:
        """Drop all non-PK, non-unique indexes, return their CREATE statements for later."""
        index_defs = self.get_index_definitions()
        if not index_defs:
            return []
        with self.conn.cursor() as cur:
            for name, _ in index_defs:
                cur.execute(f'DROP INDEX IF EXISTS "{name}";')
        self.conn.commit()
        print(f"Dropped {len(index_defs)} indexes for faster loading.")
        return [defn for _, defn in index_defs]

    def recreate_indexes(self, index_defs: list[str]) -> None:
        """Recreate indexes from saved definitions."""
        if not index_defs:
            return
        with self.conn.cursor() as cur:
            for defn in index_defs:
                cur.execute(defn + ";")
            cur.execute("ANALYZE;")
        self.conn.commit()
        print(f"Recreated {len(index_defs)} indexes.")

    def count(self, table: str) -> int:
        table_meta(table)
        with self.conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM {table};")
            return cur.fetchone()[0]

    def ids(self, table: str) -> np.ndarray:
        key = table_meta(table)["key"]
        with self.conn.cursor() as cur:
            cur.execute(f"SELECT {key} FROM {table} ORDER BY {key};")
            return np.array([row[0] for row in cur.fetchall()], dtype=np.int64)

    def reserve_ids(self, table: str, n: int) -> np.ndarray:
        """Draw ``n`` values from the table's SERIAL sequence."""
        key = table_meta(table)["key"]
        with self.conn.cursor() as cur:
            cur.execute(
                "SELECT nextval(pg_get_serial_sequence(%s, %s)) FROM generate_series(1, %s);",
                (table, key, int(n)),
            )
            reserved = np.array([row[0] for row in cur.fetchall()], dtype=np.int64)
        self.conn.commit()
        return reserved

    def fetch(self, table: str, columns=None, ids=None) -> pd.DataFrame:
        meta = table_meta(table)
        key = meta["key"]
        columns = list(columns) if columns is not None else list(meta["columns"])
        query = f"SELECT {', '.join(columns)} FROM {table}"
        params = None
        if ids is not None:
            query += f" WHERE {key} = ANY(%(ids)s)"
            params = {"ids": [int(i) for i in ids]}
        query += f" ORDER BY {key};"
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        frame = pd.DataFrame.from_records(rows, columns=columns)
        frame = _coerce_decimals(frame)
        return frame.astype({c: meta["columns"][c] for c in columns if meta["columns"][c] != "object"})

    def insert(self, table: str, frame: pd.DataFrame) -> np.ndarray:
        """Bulk insert with COPY FROM STDIN; returns the rows' primary keys."""
        meta = table_meta(table)
        rows = frame.copy()
        if meta["key"] not in rows.columns:
            rows.insert(0, meta["key"], self.reserve_ids(table, len(rows)))
        columns = [c for c in meta["columns"] if c in rows.columns]
        copy_sql = (
            f"COPY {table} ({', '.join(columns)}) "
            f"FROM STDIN WITH (FORMAT CSV, DELIMITER ',')"
        )
        try:
            with self.conn.cursor() as cur:
                cur.copy_expert(copy_sql, _to_csv_buffer(rows[columns]))
            self.conn.commit()
        except psycopg2.Error:
            self.conn.rollback()
            raise
        return rows[meta["key"]].to_numpy(dtype=np.int64)

    def update_values(self, table: str, frame: pd.DataFrame) -> int:
        """Set-based update: COPY into a staging table, then UPDATE ... FROM it."""
        key = table_meta(table)["key"]
        columns = [c for c in frame.columns if c != key]
        staging = f"{table}_staging"
        select_list = ", ".join([key, *columns])
        assignments = ", ".join(f"{c} = s.{c}" for c in columns)
        try:
            with self.conn.cursor() as cur:
                cur.execute(
                    f"CREATE TEMP TABLE {staging} ON COMMIT DROP AS "
                    f"SELECT {select_list} FROM {table} WITH NO DATA;"
                )
                cur.copy_expert(
                    f"COPY {staging} ({select_list}) FROM STDIN WITH (FORMAT CSV)",
                    _to_csv_buffer(frame[[key, *columns]]),
                )
                cur.execute(
                    f"UPDATE {table} t SET {assignments} FROM {staging} s WHERE t.{key} = s.{key};"
                )
                updated = cur.rowcount
            self.conn.commit()
        except psycopg2.Error:
            self.conn.rollback()
            raise
        return updated

    def order_totals(self, order_ids=None) -> pd.DataFrame:
        where, params = "", None
        if order_ids is not None:
            where = "WHERE o.order_id = ANY(%(ids)s)"
            params = {"ids": [int(i) for i in order_ids]}
        with self.conn.cursor() as cur:
            cur.execute(ORDER_TOTALS_SQL.format(where=where), params)
            rows = cur.fetchall()
        frame = pd.DataFrame.from_records(rows, columns=["order_id", "total_amount", "line_count"])
        frame = _coerce_decimals(frame)
        return frame.astype({"order_id": "int64", "total_amount": "float64", "line_count": "int64"})

    def delete(self, table: str, ids) -> int:
        """Delete rows by primary key; ON DELETE CASCADE removes dependents."""
        key = table_meta(table)["key"]
        with self.conn.cursor() as cur:
            cur.execute(f"DELETE FROM {table} WHERE {key} = ANY(%s);", ([int(i) for i in ids],))
            deleted = cur.rowcount
        self.conn.commit()
        return deleted

    def report(self, name: str, **params) -> pd.DataFrame:
        with self.conn.cursor() as cur:
            cur.execute(REPORT_SQL[name], params)
            columns = [col[0] for col in cur.description]
            rows = cur.fetchall()
        return _coerce_decimals(pd.DataFrame.from_records(rows, columns=columns))

    def close(self) -> None:
        self.conn.close()
