"""Table definitions shared by the API, the importers and the tests."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
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
    func,
)

metadata = MetaData()

stores = Table(
    "stores",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("store_name", Text, nullable=False),
    Column("slug", Text),
    Column("created_at", DateTime, server_default=func.now()),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("store_id", Integer, ForeignKey("stores.id")),
    Column("store_name", Text),
    Column("name", Text),
    Column("price_tag", Numeric(12, 2, asdecimal=False)),
    Column("stock_total", Integer, nullable=False, default=0),
    Column("sizes", JSON),
    Column("size_stocks", JSON),
    Column("photo_url", JSON),
    Column("eta_text", Text),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("category", Text),
    Column("categories", JSON),
    Column("gender", JSON),
    Column("created_at", DateTime, server_default=func.now()),
)

product_import_staging = Table(
    "product_import_staging",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("store_id", Integer, nullable=False),
    Column("store_name", Text),
    Column("provider", Text),
    Column("external_id", Text),
    Column("name", Text),
    Column("mapped_name", Text),
    Column("price_tag", Numeric(12, 2, asdecimal=False)),
    Column("mapped_price", Numeric(12, 2, asdecimal=False)),
    Column("mapped_stock", Integer),
    Column("stock_total", Integer),
    Column("sizes", JSON),
    Column("size_stocks", JSON),
    Column("photo_url", JSON),
    Column("mapped_image_url", Text),
    Column("eta_text", Text),
    Column("is_active", Boolean),
    Column("category", Text),
    Column("categories", JSON),
    Column("gender", JSON),
    Column("status", String(16), nullable=False, default="draft"),
    Column("raw_json", JSON),
    Column("created_at", DateTime, server_default=func.now()),
    UniqueConstraint("store_id", "provider", "external_id", name="uq_staging_external"),
)

partner_integrations = Table(
    "partner_integrations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("store_id", Integer),
    Column("store_name", Text),
    Column("provider", Text, nullable=False),
    Column("token", Text),
    Column("access_token", Text),
    Column("shop_domain", Text),
    Column("integration_data", JSON),
    Column("updated_at", DateTime),
    UniqueConstraint("store_id", "provider", name="uq_integration_store_provider"),
)

partner_emails = Table(
    "partner_emails",
    metadata,
    Column("email", Text, primary_key=True),
    Column("store_name", Text, nullable=False),
    Column("active", Boolean, nullable=False, default=True),
)

coupons = Table(
    "coupons",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("code", Text, nullable=False, unique=True),
    Column("description", Text),
    Column("discount_type", String(16), nullable=False),
    Column("discount_value", Numeric(12, 2, asdecimal=False), nullable=False),
    Column("coupon_kind", String(1), nullable=False),
    Column("active", Boolean, nullable=False, default=True),
    Column("max_uses", Integer),
    Column("expires_at", DateTime(timezone=True)),
    Column("created_by", Text, nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
)

coupon_applicabilities = Table(
    "coupon_applicabilities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("coupon_id", String(36), ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False),
    Column("brand_id", Integer, ForeignKey("stores.id")),
    Column("product_id", Integer, ForeignKey("products.id")),
    Column("sort_order", Integer),
)
