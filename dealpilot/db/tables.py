"""Table definitions shared by the pipeline services."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", Text, unique=True),
    Column("affiliate_tag", Text),
)

channels = Table(
    "channels",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("chat_id", Text, nullable=False),
    Column("name", Text, nullable=False),
    Column("credential_key", Text),
)

channel_insights = Table(
    "channel_insights",
    metadata,
    Column("channel_id", Integer, ForeignKey("channels.id"), primary_key=True),
    Column("best_hours", JSON),
)

automation_rules = Table(
    "automation_rules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", Text, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("publishing_mode", String(16), nullable=False, default="smart"),
    Column("copy_mode", String(16), nullable=False, default="TEMPLATE"),
    Column("message_template", Text),
    Column("custom_style_prompt", Text),
    Column("llm_model", Text, nullable=False, default="gpt-4o-mini"),
    Column("deals_published", Integer, nullable=False, default=0),
    Column("last_run_at", DateTime),
)

scheduled_deals = Table(
    "scheduled_deals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("channel_id", Integer, ForeignKey("channels.id"), nullable=False),
    Column("rule_id", Integer, ForeignKey("automation_rules.id"), nullable=False),
    Column("asin", String(16), nullable=False),
    Column("product_title", Text),
    Column("base_score", Float, nullable=False, default=0),
    Column("final_score", Float, nullable=False, default=0),
    Column("deal_type", String(32)),
    Column("original_price", Float),
    Column("deal_price", Float),
    Column("discount", Float),
    Column("category", Text),
    Column("deal_end_time", DateTime),
    Column("scheduled_for", DateTime, nullable=False),
    Column("reason", String(32)),
    Column("status", String(16), nullable=False, default="pending"),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("max_retries", Integer, nullable=False, default=3),
    Column("published_at", DateTime),
    Column("cancelled_at", DateTime),
    Column("cancel_reason", Text),
    Column("failed_at", DateTime),
    Column("last_error", Text),
    Column("message_id", Text),
    Column("tracking_id_used", Text),
    Column("created_at", DateTime, nullable=False),
    Index("ix_scheduled_deals_status_scheduled_for", "status", "scheduled_for"),
    Index("ix_scheduled_deals_channel_status", "channel_id", "status"),
)

channel_deal_history = Table(
    "channel_deal_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("channel_id", Integer, ForeignKey("channels.id"), nullable=False),
    Column("rule_id", Integer, ForeignKey("automation_rules.id")),
    Column("asin", String(16), nullable=False),
    Column("published_at", DateTime, nullable=False),
    Column("expires_at", DateTime),
    Column("message_id", Text),
    Column("base_score", Float),
    Column("final_score", Float),
    Column("tracking_id_used", Text),
    Column("deal_type", String(32)),
    Column("original_price", Float),
    Column("deal_price", Float),
    Column("discount", Float),
    Column("category", Text),
    Column("generated_copy", Text),
    Column("copy_source", String(32)),
    Column("copy_generated_at", DateTime),
    Column("price_at_generation", Float),
    Column("deal_still_valid", Boolean, nullable=False, default=True),
    Column("deal_expired_at", DateTime),
    Column("validity_checked_at", DateTime),
)

user_tracking_ids = Table(
    "user_tracking_ids",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("tracking_id", Text, nullable=False),
    Column("status", String(16), nullable=False, default="available"),
    Column("total_uses", Integer, nullable=False, default=0),
    Column("last_used_at", DateTime),
    Column("assigned_at", DateTime),
    Column("expires_at", DateTime),
    Column("context_id", Text),
    Column("deal_history_id", Integer, ForeignKey("channel_deal_history.id"), unique=True),
    Column("created_at", DateTime, nullable=False),
    UniqueConstraint("user_id", "tracking_id", name="uq_user_tracking_id"),
    Index("ix_user_tracking_ids_user_status", "user_id", "status"),
)

products = Table(
    "products",
    metadata,
    Column("asin", String(16), primary_key=True),
    Column("title", Text, nullable=False),
    Column("current_price", Float, nullable=False, default=0),
    Column("original_price", Float, nullable=False, default=0),
    Column("discount", Integer, nullable=False, default=0),
    Column("sales_rank", Integer),
    Column("rating", Float),
    Column("review_count", Integer),
    Column("category", Text, nullable=False, default="General"),
    Column("image_url", Text),
    Column("last_price_check_at", DateTime, nullable=False),
    Column("keepa_data_ttl", Integer, nullable=False, default=1440),
    Column("updated_at", DateTime),
)

keepa_monthly_budgets = Table(
    "keepa_monthly_budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("month", String(7), nullable=False),
    Column("tokens_used", Integer, nullable=False, default=0),
    Column("tokens_limit", Integer, nullable=False, default=10000),
    Column("reset_at", DateTime, nullable=False),
    UniqueConstraint("user_id", "month", name="uq_budget_user_month"),
)
