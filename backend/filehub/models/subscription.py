"""Subscription model - the plan an owner is on (written by the billing integration)."""
import uuid
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column
from filehub.models.base import Base, TimestampMixin, OwnerMixin


class Subscription(Base, TimestampMixin, OwnerMixin):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False, default="free")
    # active, trialing, canceled, past_due, incomplete
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
