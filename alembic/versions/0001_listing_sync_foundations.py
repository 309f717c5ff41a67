from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_listing_sync_foundations"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb(default: str):
    return postgresql.JSONB(astext_type=sa.Text()), sa.text(f"'{default}'::jsonb")


def _audit_columns():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
    ]


def _child_table(name: str, *columns):
    op.create_table(
        name,
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("property_id", sa.String(), sa.ForeignKey("properties.id", ondelete="CASCADE"), nullable=False),
        *columns,
    )
    op.create_index(f"ix_{name}_property_id", name, ["property_id"])


def upgrade():
    json_obj, empty_obj = _jsonb("{}")
    json_list, empty_list = _jsonb("[]")

    op.create_table(
        "properties",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("upstream_id", sa.BigInteger(), nullable=False),

        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("subcategory_id", sa.Integer(), nullable=True),
        sa.Column("aim_id", sa.Integer(), nullable=True),
        sa.Column("custom_code", sa.String(length=120), nullable=True),

        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("sqr_meters", sa.Float(), nullable=True),
        sa.Column("price_per_sqrm", sa.Float(), nullable=True),
        sa.Column("building_year", sa.Integer(), nullable=True),
        sa.Column("plot_sqr_meters", sa.Float(), nullable=True),
        sa.Column("rooms", sa.Integer(), nullable=True),
        sa.Column("master_bedrooms", sa.Integer(), nullable=True),
        sa.Column("bathrooms", sa.Integer(), nullable=True),
        sa.Column("wc", sa.Integer(), nullable=True),

        sa.Column("area_id", sa.Integer(), nullable=True),
        sa.Column("subarea_id", sa.Integer(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("postal_code", sa.String(length=20), nullable=True),

        sa.Column("energy_class_id", sa.Integer(), nullable=True),
        sa.Column("floor_id", sa.Integer(), nullable=True),
        sa.Column("levels", sa.String(length=120), nullable=True),
        sa.Column("total_parkings", sa.Integer(), nullable=True),

        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("ad_text", sa.Text(), nullable=True),
        sa.Column("primary_image_url", sa.Text(), nullable=True),

        sa.Column("send_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("update_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("token", sa.String(length=200), nullable=True),
        sa.Column("is_sync", sa.Boolean(), nullable=True),
        sa.Column("status_id", sa.Integer(), nullable=False, server_default=sa.text("1")),

        sa.Column("raw_payload", json_obj, nullable=False, server_default=empty_obj),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_properties_upstream_id", "properties", ["upstream_id"], unique=True)
    op.create_index("ix_properties_status_id", "properties", ["status_id"])

    _child_table(
        "property_images",
        sa.Column("upstream_image_id", sa.BigInteger(), nullable=True),
        sa.Column("order_num", sa.Integer(), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("thumb_url", sa.Text(), nullable=True),
    )
    _child_table(
        "property_characteristics",
        sa.Column("upstream_characteristic_id", sa.BigInteger(), nullable=True),
        sa.Column("language_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("lookup_type", sa.String(length=120), nullable=True),
    )
    _child_table(
        "property_partners",
        sa.Column("upstream_partner_id", sa.BigInteger(), nullable=True),
        sa.Column("firstname", sa.String(length=200), nullable=True),
        sa.Column("lastname", sa.String(length=200), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=80), nullable=True),
        sa.Column("photo_url", sa.Text(), nullable=True),
    )
    _child_table(
        "property_distances",
        sa.Column("place_id", sa.Integer(), nullable=True),
        sa.Column("distance", sa.Float(), nullable=True),
        sa.Column("measure_id", sa.Integer(), nullable=True),
        sa.Column("descriptions", json_list, nullable=False, server_default=empty_list),
    )
    for name in ("property_parkings", "property_basements", "property_flags"):
        _child_table(name, sa.Column("data", json_obj, nullable=False, server_default=empty_obj))

    op.create_table(
        "sync_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("sync_type", sa.String(length=30), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),

        sa.Column("status_id", sa.Integer(), nullable=True),
        sa.Column("include_deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("update_date_from_utc", sa.DateTime(timezone=True), nullable=True),
        sa.Column("update_date_to_utc", sa.DateTime(timezone=True), nullable=True),
        sa.Column("send_date_from_utc", sa.DateTime(timezone=True), nullable=True),

        sa.Column("total_properties", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("new_properties", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_properties", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("deleted_properties", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed_properties", sa.Integer(), nullable=False, server_default=sa.text("0")),

        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details", json_obj, nullable=True),
        sa.Column("api_responses", json_list, nullable=False, server_default=empty_list),

        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.CheckConstraint(
            "sync_type IN ('full', 'incremental', 'webhook', 'csv_import')", name="ck_sync_sessions_sync_type"
        ),
    )
    op.create_index("ix_sync_sessions_started_at", "sync_sessions", ["started_at"])

    op.create_table(
        "upstream_config",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("auth_token_ciphertext", sa.Text(), nullable=False),
        sa.Column("api_base_url", sa.String(length=300), nullable=False),
        sa.Column("rate_limit_per_minute", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column("polling_interval_minutes", sa.Integer(), nullable=False, server_default=sa.text("15")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_audit_columns(),
    )

    op.create_table(
        "upstream_lookups",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("lookup_type", sa.String(length=120), nullable=False),
        sa.Column("lookup_id", sa.BigInteger(), nullable=False),
        sa.Column("language_id", sa.Integer(), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("raw_data", json_obj, nullable=False, server_default=empty_obj),
        sa.Column("last_updated", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("lookup_type", "lookup_id", "language_id", name="uq_upstream_lookup"),
    )

    # Read model for listing search; refreshed after every sync run
    op.execute(
        """
        CREATE MATERIALIZED VIEW property_search_optimized AS
        SELECT
            p.id,
            p.upstream_id,
            p.title,
            p.price,
            p.sqr_meters,
            p.rooms,
            p.category_id,
            p.subcategory_id,
            p.area_id,
            p.latitude,
            p.longitude,
            p.primary_image_url,
            p.update_date,
            COUNT(i.id) AS image_count
        FROM properties p
        LEFT JOIN property_images i ON i.property_id = p.id
        WHERE p.status_id = 1
        GROUP BY p.id
        """
    )
    op.create_index("ix_property_search_optimized_id", "property_search_optimized", ["id"], unique=True)


def downgrade():
    op.execute("DROP MATERIALIZED VIEW IF EXISTS property_search_optimized")
    op.drop_table("upstream_lookups")
    op.drop_table("upstream_config")
    op.drop_index("ix_sync_sessions_started_at", table_name="sync_sessions")
    op.drop_table("sync_sessions")
    for name in (
        "property_flags",
        "property_basements",
        "property_parkings",
        "property_distances",
        "property_partners",
        "property_characteristics",
        "property_images",
    ):
        op.drop_table(name)
    op.drop_index("ix_properties_status_id", table_name="properties")
    op.drop_index("ix_properties_upstream_id", table_name="properties")
    op.drop_table("properties")
