"""initial ledger schema

Revision ID: 0001_initial_ledger
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the lot ledger schema from scratch:
- products, companies, warehouses: master data read by the ledger
- trade_masters, trade_lines: trade documents (signed quantities, return links)
- lots: one row per acquisition, with remaining vs original quantity
- matches: line <-> lot quantity links (SALE, RETURN, PURCHASE_RETURN)
- aggregate_stock: per-product cache, rebuildable from lots
- transaction_log: append-only movement journal
- production_records, production_inputs: production transformations
- lot_adjustments: disposal/loss/correction on single lots
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ============================================================================
    # Master data
    # ============================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('grade', sa.String(length=64), nullable=True),
        sa.Column('weight', sa.Numeric(14, 3), nullable=True),
        sa.Column('weight_unit', sa.String(length=16), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_name', 'products', ['name'])

    op.create_table(
        'companies',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'warehouses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )

    # ============================================================================
    # Trades
    # ============================================================================
    op.create_table(
        'trade_masters',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('trade_number', sa.String(length=64), nullable=True),
        sa.Column('trade_type', sa.String(length=16), nullable=False),
        sa.Column('trade_date', sa.Date(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=True),
        sa.Column('warehouse_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.ForeignKeyConstraint(['warehouse_id'], ['warehouses.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('trade_number'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_trade_masters_trade_type', 'trade_masters', ['trade_type'])
    op.create_index('ix_trade_masters_trade_date', 'trade_masters', ['trade_date'])
    op.create_index('ix_trade_masters_company_id', 'trade_masters', ['company_id'])
    op.create_index('ix_trade_masters_warehouse_id', 'trade_masters', ['warehouse_id'])
    op.create_index('ix_trade_masters_status', 'trade_masters', ['status'])
    op.create_index('ix_trade_masters_type_date', 'trade_masters', ['trade_type', 'trade_date'])

    op.create_table(
        'trade_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('trade_master_id', sa.Integer(), nullable=False),
        sa.Column('seq_no', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Numeric(14, 3), nullable=False),
        sa.Column('unit_price', sa.Numeric(14, 4), nullable=False),
        sa.Column('total_weight', sa.Numeric(14, 3), nullable=True),
        sa.Column('weight_unit', sa.String(length=16), nullable=True),
        sa.Column('shipper_location', sa.String(length=255), nullable=True),
        sa.Column('sender', sa.String(length=255), nullable=True),
        sa.Column('parent_line_id', sa.Integer(), nullable=True),
        sa.Column('matching_status', sa.String(length=16), nullable=False),
        sa.Column('cost_basis', sa.Numeric(14, 4), nullable=True),
        sa.Column('cost_basis_missing', sa.Boolean(), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['trade_master_id'], ['trade_masters.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['parent_line_id'], ['trade_lines.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_trade_lines_trade_master_id', 'trade_lines', ['trade_master_id'])
    op.create_index('ix_trade_lines_product_id', 'trade_lines', ['product_id'])
    op.create_index('ix_trade_lines_parent_line_id', 'trade_lines', ['parent_line_id'])
    op.create_index('ix_trade_lines_matching_status', 'trade_lines', ['matching_status'])
    op.create_index('ix_trade_lines_product_status', 'trade_lines', ['product_id', 'matching_status'])

    # ============================================================================
    # Lots, matches, aggregate cache
    # ============================================================================
    op.create_table(
        'lots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('trade_line_id', sa.Integer(), nullable=True),
        sa.Column('company_id', sa.Integer(), nullable=True),
        sa.Column('warehouse_id', sa.Integer(), nullable=True),
        sa.Column('shipper_location', sa.String(length=255), nullable=True),
        sa.Column('sender', sa.String(length=255), nullable=True),
        sa.Column('acquisition_date', sa.Date(), nullable=False),
        sa.Column('original_quantity', sa.Numeric(14, 3), nullable=False),
        sa.Column('remaining_quantity', sa.Numeric(14, 3), nullable=False),
        sa.Column('unit_cost', sa.Numeric(14, 4), nullable=False),
        sa.Column('total_weight', sa.Numeric(14, 3), nullable=False),
        sa.Column('weight_unit', sa.String(length=16), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('display_order', sa.Integer(), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['trade_line_id'], ['trade_lines.id']),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.ForeignKeyConstraint(['warehouse_id'], ['warehouses.id']),
        sa.CheckConstraint('remaining_quantity >= 0', name='ck_lots_remaining_nonnegative'),
        sa.CheckConstraint('original_quantity > 0', name='ck_lots_original_positive'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_lots_product_id', 'lots', ['product_id'])
    op.create_index('ix_lots_trade_line_id', 'lots', ['trade_line_id'])
    op.create_index('ix_lots_company_id', 'lots', ['company_id'])
    op.create_index('ix_lots_warehouse_id', 'lots', ['warehouse_id'])
    op.create_index('ix_lots_acquisition_date', 'lots', ['acquisition_date'])
    op.create_index('ix_lots_status', 'lots', ['status'])
    op.create_index('ix_lots_fifo', 'lots', ['product_id', 'status', 'acquisition_date', 'display_order'])

    op.create_table(
        'matches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('line_id', sa.Integer(), nullable=False),
        sa.Column('lot_id', sa.Integer(), nullable=False),
        sa.Column('matched_quantity', sa.Numeric(14, 3), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('matched_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('actor', sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(['line_id'], ['trade_lines.id']),
        sa.ForeignKeyConstraint(['lot_id'], ['lots.id']),
        sa.CheckConstraint('matched_quantity > 0', name='ck_matches_quantity_positive'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_matches_line_id', 'matches', ['line_id'])
    op.create_index('ix_matches_lot_id', 'matches', ['lot_id'])
    op.create_index('ix_matches_line_kind', 'matches', ['line_id', 'kind'])

    op.create_table(
        'aggregate_stock',
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Numeric(14, 3), nullable=False),
        sa.Column('weight', sa.Numeric(14, 3), nullable=False),
        sa.Column('last_unit_cost', sa.Numeric(14, 4), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('product_id')
    )

    op.create_table(
        'lot_adjustments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('lot_id', sa.Integer(), nullable=False),
        sa.Column('adjustment_type', sa.String(length=16), nullable=False),
        sa.Column('quantity_change', sa.Numeric(14, 3), nullable=False),
        sa.Column('before_quantity', sa.Numeric(14, 3), nullable=False),
        sa.Column('after_quantity', sa.Numeric(14, 3), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('actor', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['lot_id'], ['lots.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_lot_adjustments_lot_id', 'lot_adjustments', ['lot_id'])

    # ============================================================================
    # Transaction log (append-only)
    # ============================================================================
    op.create_table(
        'transaction_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('transaction_date', sa.Date(), nullable=False),
        sa.Column('transaction_type', sa.String(length=16), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Numeric(14, 3), nullable=False),
        sa.Column('weight', sa.Numeric(14, 3), nullable=True),
        sa.Column('unit_price', sa.Numeric(14, 4), nullable=True),
        sa.Column('before_quantity', sa.Numeric(14, 3), nullable=False),
        sa.Column('after_quantity', sa.Numeric(14, 3), nullable=False),
        sa.Column('line_id', sa.Integer(), nullable=True),
        sa.Column('reference_number', sa.String(length=64), nullable=True),
        sa.Column('actor', sa.String(length=64), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['line_id'], ['trade_lines.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_transaction_log_transaction_date', 'transaction_log', ['transaction_date'])
    op.create_index('ix_transaction_log_transaction_type', 'transaction_log', ['transaction_type'])
    op.create_index('ix_transaction_log_product_id', 'transaction_log', ['product_id'])
    op.create_index('ix_transaction_log_line_id', 'transaction_log', ['line_id'])
    op.create_index('ix_transaction_log_product_date', 'transaction_log', ['product_id', 'transaction_date'])

    # ============================================================================
    # Production
    # ============================================================================
    op.create_table(
        'production_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('output_lot_id', sa.Integer(), nullable=True),
        sa.Column('output_line_id', sa.Integer(), nullable=True),
        sa.Column('trade_master_id', sa.Integer(), nullable=True),
        sa.Column('additional_cost', sa.Numeric(14, 4), nullable=False),
        sa.Column('memo', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('actor', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['output_lot_id'], ['lots.id']),
        sa.ForeignKeyConstraint(['output_line_id'], ['trade_lines.id']),
        sa.ForeignKeyConstraint(['trade_master_id'], ['trade_masters.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_production_records_output_lot_id', 'production_records', ['output_lot_id'])
    op.create_index('ix_production_records_output_line_id', 'production_records', ['output_line_id'])
    op.create_index('ix_production_records_trade_master_id', 'production_records', ['trade_master_id'])

    op.create_table(
        'production_inputs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('production_id', sa.Integer(), nullable=False),
        sa.Column('lot_id', sa.Integer(), nullable=False),
        sa.Column('consumed_quantity', sa.Numeric(14, 3), nullable=False),
        sa.ForeignKeyConstraint(['production_id'], ['production_records.id']),
        sa.ForeignKeyConstraint(['lot_id'], ['lots.id']),
        sa.CheckConstraint('consumed_quantity > 0', name='ck_production_inputs_quantity_positive'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_production_inputs_production_id', 'production_inputs', ['production_id'])
    op.create_index('ix_production_inputs_lot_id', 'production_inputs', ['lot_id'])


def downgrade():
    op.drop_table('production_inputs')
    op.drop_table('production_records')
    op.drop_table('transaction_log')
    op.drop_table('lot_adjustments')
    op.drop_table('aggregate_stock')
    op.drop_table('matches')
    op.drop_table('lots')
    op.drop_table('trade_lines')
    op.drop_table('trade_masters')
    op.drop_table('warehouses')
    op.drop_table('companies')
    op.drop_table('products')
