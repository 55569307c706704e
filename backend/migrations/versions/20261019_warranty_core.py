"""Warranty core: storefronts, barcodes, batches, claims, tickets, outbox

WARRANTY CORE MIGRATION:
1. Creates 'storefronts' as the tenant root, plus catalog products and customers
2. Creates barcode batches and warranty barcodes (code_value unique system-wide)
3. Creates claims with a per-storefront claim number sequence
4. Creates the append-only claim timeline and attachment metadata
5. Creates repair tickets with a partial unique index (one open ticket per claim)
6. Creates the transactional outbox

Revision ID: w001_warranty_core
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'w001_warranty_core'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # STEP 1: Tenant root and read-only reference data
    # ==========================================================================
    op.create_table('storefronts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('slug', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('custom_domain', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_storefronts_slug', 'storefronts', ['slug'], unique=True)
    op.create_index('ix_storefronts_custom_domain', 'storefronts', ['custom_domain'], unique=True)
    op.create_index('ix_storefronts_status', 'storefronts', ['status'])

    op.create_table('products',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('storefront_id', sa.Uuid(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('base_price', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('warranty_months', sa.Integer(), nullable=False, server_default='12'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['storefront_id'], ['storefronts.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('storefront_id', 'sku', name='uq_products_storefront_sku')
    )
    op.create_index('ix_products_storefront_id', 'products', ['storefront_id'])

    op.create_table('customers',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('storefront_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['storefront_id'], ['storefronts.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('storefront_id', 'email', name='uq_customers_storefront_email')
    )
    op.create_index('ix_customers_storefront_id', 'customers', ['storefront_id'])

    # ==========================================================================
    # STEP 2: Barcode batches and barcodes
    # ==========================================================================
    op.create_table('barcode_batches',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('storefront_id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('requested_count', sa.Integer(), nullable=False),
        sa.Column('minted_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('collision_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='queued'),
        sa.Column('prefix', sa.String(length=4), nullable=True),
        sa.Column('code_length', sa.Integer(), nullable=False),
        sa.Column('failure_reason', sa.String(length=64), nullable=True),
        sa.Column('annotations', sa.JSON(), nullable=False),
        sa.Column('requested_by', sa.String(length=64), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('minted_count <= requested_count', name='ck_batches_minted_le_requested'),
        sa.ForeignKeyConstraint(['storefront_id'], ['storefronts.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_barcode_batches_storefront_id', 'barcode_batches', ['storefront_id'])
    op.create_index('ix_batches_storefront_status', 'barcode_batches', ['storefront_id', 'status'])

    op.create_table('warranty_barcodes',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('storefront_id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('code_value', sa.String(length=80), nullable=False),
        sa.Column('batch_id', sa.Uuid(), nullable=True),
        sa.Column('customer_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='generated'),
        sa.Column('activated_at', sa.DateTime(), nullable=True),
        sa.Column('purchase_date', sa.DateTime(), nullable=True),
        sa.Column('warranty_months', sa.Integer(), nullable=True),
        sa.Column('expiry_date', sa.DateTime(), nullable=True),
        sa.Column('revoked_reason', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['storefront_id'], ['storefronts.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['batch_id'], ['barcode_batches.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code_value', name='uq_barcodes_code_value')
    )
    op.create_index('ix_warranty_barcodes_storefront_id', 'warranty_barcodes', ['storefront_id'])
    op.create_index('ix_warranty_barcodes_customer_id', 'warranty_barcodes', ['customer_id'])
    op.create_index('ix_barcodes_storefront_status', 'warranty_barcodes', ['storefront_id', 'status'])
    op.create_index('ix_barcodes_batch', 'warranty_barcodes', ['batch_id'])

    # ==========================================================================
    # STEP 3: Claims and the per-storefront claim number counter
    # ==========================================================================
    op.create_table('claim_sequences',
        sa.Column('storefront_id', sa.Uuid(), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['storefront_id'], ['storefronts.id']),
        sa.PrimaryKeyConstraint('storefront_id')
    )

    op.create_table('warranty_claims',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('storefront_id', sa.Uuid(), nullable=False),
        sa.Column('claim_number', sa.String(length=32), nullable=False),
        sa.Column('barcode_id', sa.Uuid(), nullable=False),
        sa.Column('customer_id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('issue_description', sa.Text(), nullable=False),
        sa.Column('issue_category', sa.String(length=32), nullable=False),
        sa.Column('severity', sa.String(length=16), nullable=False, server_default='normal'),
        sa.Column('priority', sa.String(length=16), nullable=False, server_default='normal'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='submitted'),
        sa.Column('held_from_status', sa.String(length=16), nullable=True),
        sa.Column('pickup_address', sa.JSON(), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('customer_email', sa.String(length=255), nullable=False),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('technician_id', sa.String(length=64), nullable=True),
        sa.Column('validated_by', sa.String(length=64), nullable=True),
        sa.Column('rejection_reason', sa.String(length=1000), nullable=True),
        sa.Column('estimated_completion_at', sa.DateTime(), nullable=True),
        sa.Column('repair_notes', sa.Text(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['storefront_id'], ['storefronts.id']),
        sa.ForeignKeyConstraint(['barcode_id'], ['warranty_barcodes.id']),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('storefront_id', 'claim_number', name='uq_claims_storefront_number')
    )
    op.create_index('ix_warranty_claims_customer_id', 'warranty_claims', ['customer_id'])
    op.create_index('ix_warranty_claims_technician_id', 'warranty_claims', ['technician_id'])
    op.create_index('ix_claims_storefront_status', 'warranty_claims', ['storefront_id', 'status'])
    op.create_index('ix_claims_storefront_created', 'warranty_claims', ['storefront_id', 'created_at'])
    op.create_index('ix_claims_barcode', 'warranty_claims', ['barcode_id'])

    # ==========================================================================
    # STEP 4: Timeline (append-only) and attachments
    # ==========================================================================
    op.create_table('claim_timeline_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('claim_id', sa.Uuid(), nullable=False),
        sa.Column('storefront_id', sa.Uuid(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=False),
        sa.Column('actor_role', sa.String(length=16), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['claim_id'], ['warranty_claims.id']),
        sa.ForeignKeyConstraint(['storefront_id'], ['storefronts.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('claim_id', 'sequence', name='uq_timeline_claim_sequence')
    )
    op.create_index('ix_claim_timeline_events_storefront_id', 'claim_timeline_events', ['storefront_id'])
    op.create_index('ix_timeline_claim_created', 'claim_timeline_events', ['claim_id', 'created_at'])

    op.create_table('claim_attachments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('claim_id', sa.Uuid(), nullable=False),
        sa.Column('storefront_id', sa.Uuid(), nullable=False),
        sa.Column('uploaded_by', sa.String(length=64), nullable=False),
        sa.Column('original_filename', sa.String(length=255), nullable=False),
        sa.Column('sanitized_path', sa.String(length=512), nullable=False),
        sa.Column('size_bytes', sa.BigInteger(), nullable=False),
        sa.Column('mime_type', sa.String(length=128), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('description', sa.String(length=500), nullable=True),
        sa.Column('scan_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('scanned_at', sa.DateTime(), nullable=True),
        sa.Column('approval', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('approved_by', sa.String(length=64), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['claim_id'], ['warranty_claims.id']),
        sa.ForeignKeyConstraint(['storefront_id'], ['storefronts.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_claim_attachments_storefront_id', 'claim_attachments', ['storefront_id'])
    op.create_index('ix_attachments_claim', 'claim_attachments', ['claim_id', 'created_at'])

    # ==========================================================================
    # STEP 5: Repair tickets (one non-closed ticket per claim)
    # ==========================================================================
    op.create_table('repair_tickets',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('claim_id', sa.Uuid(), nullable=False),
        sa.Column('storefront_id', sa.Uuid(), nullable=False),
        sa.Column('technician_id', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='open'),
        sa.Column('diagnosis', sa.Text(), nullable=True),
        sa.Column('parts_used', sa.JSON(), nullable=True),
        sa.Column('labor_minutes', sa.Integer(), nullable=True),
        sa.Column('cost', sa.Numeric(12, 2), nullable=True),
        sa.Column('quality_notes', sa.Text(), nullable=True),
        sa.Column('qc_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('closed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['claim_id'], ['warranty_claims.id']),
        sa.ForeignKeyConstraint(['storefront_id'], ['storefronts.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_repair_tickets_claim_id', 'repair_tickets', ['claim_id'])
    op.create_index('ix_repair_tickets_storefront_id', 'repair_tickets', ['storefront_id'])
    op.create_index(
        'uq_repair_tickets_open_claim',
        'repair_tickets',
        ['claim_id'],
        unique=True,
        sqlite_where=sa.text("status != 'closed'"),
        postgresql_where=sa.text("status != 'closed'"),
    )

    # ==========================================================================
    # STEP 6: Transactional outbox
    # ==========================================================================
    op.create_table('outbox_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('storefront_id', sa.Uuid(), nullable=False),
        sa.Column('topic', sa.String(length=64), nullable=False),
        sa.Column('aggregate_type', sa.String(length=32), nullable=False),
        sa.Column('aggregate_id', sa.Uuid(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('dispatched_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['storefront_id'], ['storefronts.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_outbox_events_storefront_id', 'outbox_events', ['storefront_id'])
    op.create_index('ix_outbox_undispatched', 'outbox_events', ['dispatched_at', 'created_at'])


def downgrade():
    op.drop_table('outbox_events')
    op.drop_index('uq_repair_tickets_open_claim', table_name='repair_tickets')
    op.drop_table('repair_tickets')
    op.drop_table('claim_attachments')
    op.drop_table('claim_timeline_events')
    op.drop_table('warranty_claims')
    op.drop_table('claim_sequences')
    op.drop_table('warranty_barcodes')
    op.drop_table('barcode_batches')
    op.drop_table('customers')
    op.drop_table('products')
    op.drop_table('storefronts')
