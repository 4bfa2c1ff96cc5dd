"""SQLAlchemy tables for the relational order store.

``orders`` holds the live order set; ``external_id`` carries a unique
constraint so two writers reconciling the same checkout session cannot both
insert. ``archived_orders`` keeps one row per archived order, grouped by
``archive_date``; the full order is kept as a JSON snapshot.
"""

from sqlalchemy import JSON, Date, DateTime, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, mapped_column


class Base(DeclarativeBase):
    pass


class OrderRow(Base):
    """A live order (pedido).

    Attributes:
        id: Sequence-assigned integer primary key.
        external_id: Checkout session id; unique when present.
        items: JSON list of ``{name, unitPrice, quantity}``.
        total: Server-computed total.
        status: ``OrderStatus`` value.
    """

    __tablename__ = "orders"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id = mapped_column(String(255), nullable=True)
    customer_name = mapped_column(String(255), nullable=False)
    email = mapped_column(String(255), nullable=True)
    items = mapped_column(JSON, nullable=False, default=list)
    total = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False, default=0)
    status = mapped_column(String(32), nullable=False)
    payment_method = mapped_column(String(16), nullable=True)
    note = mapped_column(Text, nullable=True)
    payment_intent_id = mapped_column(String(255), nullable=True)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    paid_at = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("external_id", name="ux_orders_external_id"),
        # SQLite would otherwise reuse the ids of archived (deleted) rows
        {"sqlite_autoincrement": True},
    )


class ArchivedOrderRow(Base):
    """One order captured by an end-of-day archive run."""

    __tablename__ = "archived_orders"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    archive_date = mapped_column(Date, nullable=False, index=True)
    # Plain copy of orders.id; the live row is deleted in the same transaction.
    original_order_id = mapped_column(Integer, nullable=True)
    archived_at = mapped_column(DateTime(timezone=True), nullable=False)
    archived_by = mapped_column(String(255), nullable=False)
    order_data = mapped_column(JSON, nullable=False)
