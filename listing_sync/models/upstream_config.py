from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from listing_sync.core.ids import id_factory
from listing_sync.models.base import AuditMixin, Base


class UpstreamConfig(AuditMixin, Base):
    __tablename__ = "upstream_config"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=id_factory("cfg"))

    # Encrypted JSON blob {"auth_token": ...} (never returned by API)
    auth_token_ciphertext: Mapped[str] = mapped_column(Text, nullable=False)

    api_base_url: Mapped[str] = mapped_column(String(300), nullable=False)
    rate_limit_per_minute: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    polling_interval_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=15)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
