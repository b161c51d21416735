"""Reporting queries over the generated data.

Each report exists twice: as SQL for PostgreSQL (``REPORT_SQL``) and as a
pandas function over the in-process tables (``FRAME_REPORTS``). The public
functions normalise their arguments and dispatch through ``store.report``.
Month filters are half-open ranges on ``order_date`` so PostgreSQL can use
``idx_orders_order_date`` instead of truncating every row.
"""

from datetime import date, datetime, timedelta

import numpy as np
import pandas as pd

from ecommerce_datagen.errors import InvalidArgument

# ── SQL ──────────────────────────────────────────────────────
REPORT_SQL: dict[str, str] = {
    "daily_revenue": """
        SELECT DATE_TRUNC('day', order_date)::date AS order_day,
               COUNT(*) AS order_count,
               SUM(total_amount) AS total_revenue
        FROM orders
        WHERE %(day)s::date IS NULL
           OR (order_date >= %(day)s::date AND order_date < %(day)s::date + 1)
        GROUP BY 1
        ORDER BY 1;
    """,
    "top_products": """
        SELECT p.product_id,
               p.name,
               SUM(d.quantity) AS units_sold,
               SUM(d.unit_price * d.quantity) AS revenue
        FROM order_details d
        JOIN orders o ON o.order_id = d.order_id
        JOIN products p ON p.product_id = d.product_id
        WHERE o.order_date >= %(month_start)s
          AND o.order_date < %(month_end)s
        GROUP BY p.product_id, p.name
        ORDER BY revenue DESC, p.product_id
        LIMIT %(limit)s;
    """,
    "high_spend_customers": """
        SELECT c.customer_id,
               c.first_name || ' ' || c.last_name AS customer_name,
               COUNT(*) AS order_count,
               SUM(o.total_amount) AS total_spent
        FROM orders o
        JOIN customers c ON c.customer_id = o.customer_id
        WHERE o.order_date >= %(month_start)s
          AND o.order_date < %(month_end)s
        GROUP BY c.customer_id, c.first_name, c.last_name
        HAVING SUM(o.total_amount) > %(threshold)s
        ORDER BY total_spent DESC, c.customer_id;
    """,
    "search_products": """
        SELECT product_id, category_id, name, description, price
        FROM products
        WHERE name ILIKE %(pattern)s
           OR description ILIKE %(pattern)s
        ORDER BY product_id;
    """,
    "recommend_products": """
        SELECT p.product_id, p.name, p.price, p.stock_quantity
        FROM products p
        WHERE p.category_id = (SELECT category_id FROM products WHERE product_id = %(product_id)s)
          AND p.product_id <> %(product_id)s
        ORDER BY p.stock_quantity DESC, p.product_id
        LIMIT %(limit)s;
    """,
}


def to_cents(values) -> np.ndarray:
    """Money values as exact integer cents."""
    return np.rint(np.asarray(values, dtype=np.float64) * 100).astype(np.int64)


# ── pandas equivalents ───────────────────────────────────────


def _orders_between(orders: pd.DataFrame, start, end) -> pd.DataFrame:
    return orders[(orders["order_date"] >= start) & (orders["order_date"] < end)]


def _frame_daily_revenue(tables: dict[str, pd.DataFrame], day=None) -> pd.DataFrame:
    orders = tables["orders"]
    if day is not None:
        start = pd.Timestamp(day)
        orders = _orders_between(orders, start, start + pd.Timedelta(days=1))
    grouped = (
        pd.DataFrame({
            "order_day": orders["order_date"].dt.date.to_numpy(),
            "cents": to_cents(orders["total_amount"]),
        })
        .groupby("order_day")["cents"]
        .agg(["size", "sum"])
        .reset_index()
    )
    return pd.DataFrame({
        "order_day": grouped["order_day"],
        "order_count": grouped["size"].astype(np.int64),
        "total_revenue": grouped["sum"] / 100,
    })


def _frame_top_products(tables, month_start, month_end, limit=10) -> pd.DataFrame:
    in_month = _orders_between(tables["orders"], month_start, month_end)["order_id"]
    details = tables["order_details"]
    details = details[details["order_id"].isin(in_month)]
    lines = pd.DataFrame({
        "product_id": details["product_id"].to_numpy(),
        "units_sold": details["quantity"].to_numpy(),
        "cents": to_cents(details["unit_price"]) * details["quantity"].to_numpy(),
    })
    grouped = (
        lines.groupby("product_id")
        .agg(units_sold=("units_sold", "sum"), cents=("cents", "sum"))
        .reset_index()
        .merge(tables["products"][["product_id", "name"]], on="product_id")
        .sort_values(["cents", "product_id"], ascending=[False, True])
        .head(limit)
    )
    grouped["revenue"] = grouped["cents"] / 100
    return grouped[["product_id", "name", "units_sold", "revenue"]].reset_index(drop=True)


def _frame_high_spend_customers(tables, month_start, month_end, threshold) -> pd.DataFrame:
    orders = _orders_between(tables["orders"], month_start, month_end)
    spend = (
        pd.DataFrame({
            "customer_id": orders["customer_id"].to_numpy(),
            "cents": to_cents(orders["total_amount"]),
        })
        .groupby("customer_id")["cents"]
        .agg(["size", "sum"])
        .reset_index()
    )
    spend = spend[spend["sum"] > to_cents([threshold])[0]]
    customers = tables["customers"]
    merged = spend.merge(customers, on="customer_id")
    merged = merged.sort_values(["sum", "customer_id"], ascending=[False, True])
    return pd.DataFrame({
        "customer_id": merged["customer_id"].to_numpy(),
        "customer_name": (merged["first_name"] + " " + merged["last_name"]).to_numpy(),
        "order_count": merged["size"].to_numpy(dtype=np.int64),
        "total_spent": merged["sum"].to_numpy() / 100,
    })


def _frame_search_products(tables, term, pattern=None) -> pd.DataFrame:
    products = tables["products"]
    hit = products["name"].str.contains(term, case=False, regex=False) | products[
        "description"
    ].fillna("").str.contains(term, case=False, regex=False)
    columns = ["product_id", "category_id", "name", "description", "price"]
    return products.loc[hit, columns].sort_values("product_id").reset_index(drop=True)


def _frame_recommend_products(tables, product_id, limit=5) -> pd.DataFrame:
    products = tables["products"]
    columns = ["product_id", "name", "price", "stock_quantity"]
    match = products[products["product_id"] == product_id]
    if match.empty:
        return products[columns].iloc[0:0].reset_index(drop=True)
    peers = products[
        (products["category_id"] == match["category_id"].iloc[0])
        & (products["product_id"] != product_id)
    ]
    peers = peers.sort_values(["stock_quantity", "product_id"], ascending=[False, True])
    return peers[columns].head(limit).reset_index(drop=True)


FRAME_REPORTS = {
    "daily_revenue": _frame_daily_revenue,
    "top_products": _frame_top_products,
    "high_spend_customers": _frame_high_spend_customers,
    "search_products": _frame_search_products,
    "recommend_products": _frame_recommend_products,
}


# ── Public API ───────────────────────────────────────────────


def month_bounds(month) -> tuple[datetime, datetime]:
    """[start, end) of a calendar month given as a date or ``"YYYY-MM"``."""
    if isinstance(month, str):
        month = datetime.strptime(month, "%Y-%m")
    start = datetime(month.year, month.month, 1)
    end = (start + timedelta(days=32)).replace(day=1)
    return start, end


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so ``term`` matches literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _require_limit(limit: int) -> None:
    if limit <= 0:
        raise InvalidArgument(f"limit must be positive, got {limit}")


def daily_revenue(store, day=None) -> pd.DataFrame:
    """Revenue and order count per calendar day, or for a single ``day``."""
    if isinstance(day, datetime):
        day = day.date()
    elif isinstance(day, str):
        day = date.fromisoformat(day)
    return store.report("daily_revenue", day=day)


def top_products(store, month, limit: int = 10) -> pd.DataFrame:
    """Best-selling products by revenue within ``month``."""
    _require_limit(limit)
    start, end = month_bounds(month)
    return store.report("top_products", month_start=start, month_end=end, limit=limit)


def high_spend_customers(store, month, threshold: float) -> pd.DataFrame:
    """Customers whose order totals within ``month`` exceed ``threshold``."""
    start, end = month_bounds(month)
    return store.report(
        "high_spend_customers", month_start=start, month_end=end, threshold=threshold
    )


def search_products(store, term: str) -> pd.DataFrame:
    """Case-insensitive substring search over product name and description."""
    if not term:
        raise InvalidArgument("search term must not be empty")
    return store.report("search_products", term=term, pattern=f"%{escape_like(term)}%")


def recommend_products(store, product_id: int, limit: int = 5) -> pd.DataFrame:
    """Other products from the same category as ``product_id``."""
    _require_limit(limit)
    return store.report("recommend_products", product_id=int(product_id), limit=limit)
