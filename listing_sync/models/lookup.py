from datetime import datetime

from sqlalchemy import BigInteger, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from listing_sync.core.ids import id_factory
from listing_sync.models.base import Base, JSONType


class UpstreamLookup(Base):
    """Reference values (categories, floors, heating types...) as upstream labels them."""
    __tablename__ = "upstream_lookups"
    __table_args__ = (
        UniqueConstraint("lookup_type", "lookup_id", "language_id", name="uq_upstream_lookup"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=id_factory("lkp"))

    lookup_type: Mapped[str] = mapped_column(String(120), nullable=False)
    lookup_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    language_id: Mapped[int] = mapped_column(Integer, nullable=False)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
