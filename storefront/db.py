"""
Storefront — 永続化レイヤ

注文集約 (orders + 顧客リンク + 住所 + 明細)、決済セッション、決済ログ、カートの
テーブル定義。PostgreSQL (asyncpg) を本番で使い、テストでは SQLite (aiosqlite) で動かす。

整合性はアプリケーションの事前チェックではなく DB 制約で守る:
  - orders.id の主キー制約 → 同じ注文参照の二重作成を検知
  - cart の (customer_id, product_id) 複合主キー → 1 商品 1 行
  - cart_reconciliations の複合主キー → カート差し引きの二重適用を検知
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

metadata = MetaData()

# ── 注文集約 ─────────────────────────────────────

orders = Table(
    "orders",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("status", String(20), nullable=False),
    Column("payment_method", String(30), nullable=False),
    Column("payment_status", String(20), nullable=False),
    Column("payment_reference", String(64)),
    Column("is_guest_order", Boolean, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

guest_customers = Table(
    "guest_customers",
    metadata,
    Column(
        "order_id",
        String(64),
        ForeignKey("orders.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("email", String(255), nullable=False),
    Column("phone", String(50), nullable=False),
    Column("company", String(255)),
)

customer_orders = Table(
    "customer_orders",
    metadata,
    Column(
        "order_id",
        String(64),
        ForeignKey("orders.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("customer_id", String(64), nullable=False, index=True),
)

order_addresses = Table(
    "order_addresses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "order_id",
        String(64),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("address_type", String(10), nullable=False),
    Column("street1", String(255), nullable=False),
    Column("street2", String(255)),
    Column("city", String(100), nullable=False),
    Column("state", String(100)),
    Column("postal_code", String(20)),
    Column("country", String(100), nullable=False),
    UniqueConstraint("order_id", "address_type"),
    CheckConstraint("address_type IN ('shipping', 'billing')"),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "order_id",
        String(64),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("product_id", String(64), nullable=False),
    Column("name", String(255), nullable=False),
    Column("price", Numeric(12, 2), nullable=False),
    Column("quantity", Integer, nullable=False),
    CheckConstraint("quantity > 0"),
    CheckConstraint("price >= 0"),
)

# ── 決済 ─────────────────────────────────────────

payment_sessions = Table(
    "payment_sessions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("payload", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False, index=True),
)

payment_logs = Table(
    "payment_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(64), nullable=False, index=True),
    Column("status", String(20), nullable=False),
    Column("payment_id", String(64)),
    Column("amount", String(32)),
    Column("currency", String(8)),
    Column("raw_payload", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

# ── カート ───────────────────────────────────────

cart = Table(
    "cart",
    metadata,
    Column("customer_id", String(64), primary_key=True),
    Column("product_id", String(64), primary_key=True),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("weight", Numeric(10, 3), nullable=False, default=0),
    Column("subtotal", Numeric(12, 2), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("quantity > 0"),
)

cart_reconciliations = Table(
    "cart_reconciliations",
    metadata,
    Column("customer_id", String(64), primary_key=True),
    Column("order_id", String(64), primary_key=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


def make_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def upsert(session: AsyncSession, table: Table):
    """ON CONFLICT 句を使える INSERT 文を DB の方言に合わせて返す。"""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)
