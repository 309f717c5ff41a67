from datetime import datetime

from sqlalchemy import BigInteger, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from listing_sync.core.ids import id_factory
from listing_sync.models.base import AuditMixin, Base, JSONType

STATUS_ACTIVE = 1
STATUS_DELETED = 2


class Property(AuditMixin, Base):
    """
    Local mirror of one upstream listing.

    `upstream_id` is the natural key every sync channel matches on; `id` is ours
    and never changes once issued. Deletion upstream is a status_id transition,
    rows are never removed by sync.
    """
    __tablename__ = "properties"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=id_factory("prp"))
    upstream_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True, index=True)

    category_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    subcategory_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    aim_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    custom_code: Mapped[str | None] = mapped_column(String(120), nullable=True)

    price: Mapped[float] = mapped_column(Float, nullable=False)
    sqr_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    price_per_sqrm: Mapped[float | None] = mapped_column(Float, nullable=True)
    building_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    plot_sqr_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    rooms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    master_bedrooms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bathrooms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    wc: Mapped[int | None] = mapped_column(Integer, nullable=True)

    area_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    subarea_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(20), nullable=True)

    energy_class_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    floor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    levels: Mapped[str | None] = mapped_column(String(120), nullable=True)
    total_parkings: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Localized text pulled out of characteristics for the configured language
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    ad_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    primary_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    send_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    update_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    token: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_sync: Mapped[bool | None] = mapped_column(nullable=True)

    # 1 = active, 2 = deleted/inactive
    status_id: Mapped[int] = mapped_column(Integer, nullable=False, default=STATUS_ACTIVE, index=True)

    # Verbatim upstream payload (replay/debugging)
    raw_payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PropertyImage(Base):
    __tablename__ = "property_images"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=id_factory("img"))
    property_id: Mapped[str] = mapped_column(String, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)

    upstream_image_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    order_num: Mapped[int | None] = mapped_column(Integer, nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumb_url: Mapped[str | None] = mapped_column(Text, nullable=True)


class PropertyCharacteristic(Base):
    __tablename__ = "property_characteristics"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=id_factory("chr"))
    property_id: Mapped[str] = mapped_column(String, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)

    upstream_characteristic_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    language_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    lookup_type: Mapped[str | None] = mapped_column(String(120), nullable=True)


class PropertyPartner(Base):
    __tablename__ = "property_partners"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=id_factory("ppt"))
    property_id: Mapped[str] = mapped_column(String, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)

    upstream_partner_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    firstname: Mapped[str | None] = mapped_column(String(200), nullable=True)
    lastname: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(80), nullable=True)
    photo_url: Mapped[str | None] = mapped_column(Text, nullable=True)


class PropertyDistance(Base):
    __tablename__ = "property_distances"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=id_factory("dst"))
    property_id: Mapped[str] = mapped_column(String, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)

    place_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    distance: Mapped[float | None] = mapped_column(Float, nullable=True)
    measure_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    descriptions: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)


class PropertyParking(Base):
    __tablename__ = "property_parkings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=id_factory("prk"))
    property_id: Mapped[str] = mapped_column(String, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)


class PropertyBasement(Base):
    __tablename__ = "property_basements"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=id_factory("bsm"))
    property_id: Mapped[str] = mapped_column(String, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)


class PropertyFlag(Base):
    __tablename__ = "property_flags"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=id_factory("flg"))
    property_id: Mapped[str] = mapped_column(String, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
