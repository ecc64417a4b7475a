"""Initial schema for blocks, logical clock, offers, assets and commands.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Raw block bodies
    op.create_table(
        "blocks",
        sa.Column("height", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("tx_count", sa.Integer(), nullable=False),
        sa.Column("block", sa.Text(), nullable=True),
        sa.Column("found", sa.Boolean(), nullable=False),
        sa.Column("ingested", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("height"),
    )
    op.create_index("idx_blocks_found", "blocks", ["found"])
    op.create_index("idx_blocks_ingest", "blocks", ["ingested", "found", "tx_count"])

    # Logical clock
    op.create_table(
        "nonces",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("origin", sa.BigInteger(), nullable=False),
        sa.Column("closed", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Offers
    op.create_table(
        "offers",
        sa.Column("offer_id", sa.String(80), nullable=False),
        sa.Column("seller", sa.Integer(), nullable=True),
        sa.Column("assets", sa.JSON(), nullable=True),
        sa.Column("minimum_price", sa.BigInteger(), nullable=False),
        sa.Column("expiration", sa.DateTime(timezone=True), nullable=True),
        sa.Column("origin_nonce", sa.BigInteger(), nullable=False),
        sa.Column("closed_nonce", sa.BigInteger(), nullable=False),
        sa.Column("closed", sa.String(20), nullable=True),
        sa.PrimaryKeyConstraint("offer_id"),
    )
    op.create_index("idx_offers_origin_nonce", "offers", ["origin_nonce"])
    op.create_index("idx_offers_seller", "offers", ["seller"])

    op.create_table(
        "offer_assets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("offer_id", sa.String(80), nullable=False),
        sa.Column("asset_id", sa.String(80), nullable=False),
        sa.Column("type", sa.String(80), nullable=True),
        sa.ForeignKeyConstraint(["offer_id"], ["offers.offer_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_offer_assets_offer", "offer_assets", ["offer_id"])
    op.create_index("idx_offer_assets_type", "offer_assets", ["type"])

    # Assets and stamp intervals
    op.create_table(
        "assets",
        sa.Column("asset_id", sa.String(80), nullable=False),
        sa.Column("owner", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=False),
        sa.Column("stamp_on", sa.Integer(), nullable=False),
        sa.Column("stamp_off", sa.Integer(), nullable=False),
        sa.Column("asset", sa.JSON(), nullable=True),
        sa.Column("stamp", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("asset_id"),
    )
    op.create_index("idx_assets_owner", "assets", ["owner"])

    # Administrative command queue
    op.create_table(
        "db_control",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("command", sa.String(40), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("db_control")
    op.drop_index("idx_assets_owner", table_name="assets")
    op.drop_table("assets")
    op.drop_index("idx_offer_assets_type", table_name="offer_assets")
    op.drop_index("idx_offer_assets_offer", table_name="offer_assets")
    op.drop_table("offer_assets")
    op.drop_index("idx_offers_seller", table_name="offers")
    op.drop_index("idx_offers_origin_nonce", table_name="offers")
    op.drop_table("offers")
    op.drop_table("nonces")
    op.drop_index("idx_blocks_ingest", table_name="blocks")
    op.drop_index("idx_blocks_found", table_name="blocks")
    op.drop_table("blocks")
