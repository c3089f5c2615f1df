from alembic import op
import sqlalchemy as sa

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade():
    op.add_column("bookings", sa.Column("customer_attached_photos", sa.JSON(), nullable=True))
    op.add_column("bookings", sa.Column("work_documentation", sa.JSON(), nullable=True))
    op.add_column("bookings", sa.Column("dispute", sa.JSON(), nullable=True))

    # Backfill existing rows
    op.execute("UPDATE bookings SET customer_attached_photos = '[]' WHERE customer_attached_photos IS NULL")


def downgrade():
    op.drop_column("bookings", "dispute")
    op.drop_column("bookings", "work_documentation")
    op.drop_column("bookings", "customer_attached_photos")
