from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base

class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(sa.Text, primary_key=True)  # identity provider user id
    is_premium: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, server_default=sa.false())
    subscription_amount_cents: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    entitlement_source: Mapped[str | None] = mapped_column(sa.Text, nullable=True)  # subscription/balance
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())

    __table_args__ = (
        sa.CheckConstraint(
            "entitlement_source IS NULL OR entitlement_source IN ('subscription','balance')",
            name="ck_profiles_entitlement_source",
        ),
    )
