from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic import ValidationError as PydanticValidationError

from listing_sync.core.dates import parse_upstream_datetime, to_upstream_iso
from listing_sync.core.errors import ValidationFailure

# Characteristic titles that carry localized listing text
TITLE_KEY = "Τίτλος"
DESCRIPTION_KEY = "Επιπλέον κείμενο (ΧΕ)"
AD_TEXT_KEY = "Αγγελία"

LOOKUP_TYPES = (
    "PropertyAmenities",
    "PropertySecurity",
    "HeatingType",
    "PropertySpecialFeatures",
    "PropertyUniqueFeatures",
    "NearTo",
    "ImageTypes",
    "Geography",
    "propertycategories",
    "propertysubcategories",
    "floors",
    "places",
    "FramesTypes",
    "GlazedWindows",
    "EstateStatus",
    "View",
    "Orientation",
    "SuitableFor",
    "PropertyAdvantages",
)


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class UpstreamImage(_Wire):
    id: int | None = Field(default=None, alias="Id")
    order_num: int | None = Field(default=None, alias="OrderNum")
    url: str | None = Field(default=None, alias="Url")
    thumb_url: str | None = Field(default=None, alias="ThumbUrl")


class UpstreamCharacteristic(_Wire):
    id: int | None = Field(default=None, alias="Id")
    language_id: int | None = Field(default=None, alias="Language_Id")
    title: str | None = Field(default=None, alias="Title")
    value: str | None = Field(default=None, alias="Value")
    lookup_type: str | None = Field(default=None, alias="LookupType")


class UpstreamDistance(_Wire):
    place_id: int | None = Field(default=None, alias="Place_ID")
    distance: float | None = Field(default=None, alias="Distance")
    measure_id: int | None = Field(default=None, alias="Measure_ID")
    description: list[dict[str, Any]] = Field(default_factory=list, alias="Description")


class UpstreamPartner(_Wire):
    id: int | None = Field(default=None, alias="Id")
    firstname: str | None = Field(default=None, alias="Firstname")
    lastname: str | None = Field(default=None, alias="Lastname")
    email: str | None = Field(default=None, alias="Email")
    phone: str | None = Field(default=None, alias="Phone")
    photo_url: str | None = Field(default=None, alias="PhotoUrl")


class UpstreamProperty(_Wire):
    """
    One listing as the upstream CRM delivers it.

    Build with `from_payload` so the original dict is kept verbatim for
    Property.raw_payload; validated fields are only used for column mapping.
    """

    id: int | None = Field(default=None, alias="Id")
    category_id: int | None = Field(default=None, alias="Category_ID")
    subcategory_id: int | None = Field(default=None, alias="SubCategory_ID")
    aim_id: int | None = Field(default=None, alias="Aim_ID")
    custom_code: str | None = Field(default=None, alias="CustomCode")

    price: float | None = Field(default=None, alias="Price")
    sqr_meters: float | None = Field(default=None, alias="SqrMeters")
    price_per_sqrm: float | None = Field(default=None, alias="PricePerSqrm")
    building_year: int | None = Field(default=None, alias="BuildingYear")
    plot_sqr_meters: float | None = Field(default=None, alias="PlotSqrMeters")
    rooms: int | None = Field(default=None, alias="Rooms")
    master_bedrooms: int | None = Field(default=None, alias="MasterBedrooms")
    bathrooms: int | None = Field(default=None, alias="Bathrooms")
    wc: int | None = Field(default=None, alias="WC")

    area_id: int | None = Field(default=None, alias="Area_ID")
    subarea_id: int | None = Field(default=None, alias="SubArea_ID")
    latitude: float | None = Field(default=None, alias="Latitude")
    longitude: float | None = Field(default=None, alias="Longitude")
    postal_code: str | None = Field(default=None, alias="PostalCode")
    energy_class_id: int | None = Field(default=None, alias="EnergyClass_ID")
    floor_id: int | None = Field(default=None, alias="Floor_ID")
    levels: str | None = Field(default=None, alias="Levels")

    images: list[UpstreamImage] = Field(default_factory=list, alias="Images")
    characteristics: list[UpstreamCharacteristic] = Field(default_factory=list, alias="Characteristics")
    additional_languages: list[dict[str, Any]] = Field(default_factory=list, alias="AdditionalLanguages")
    total_parkings: int | None = Field(default=None, alias="TotalParkings")
    parkings: list[Any] = Field(default_factory=list, alias="Parkings")
    distances: list[UpstreamDistance] = Field(default_factory=list, alias="DistanceFrom")
    basements: list[Any] = Field(default_factory=list, alias="Basements")
    partner: UpstreamPartner | None = Field(default=None, alias="Partner")
    flags: list[Any] = Field(default_factory=list, alias="Flags")

    send_date_raw: str | None = Field(default=None, alias="SendDate")
    update_date_raw: str | None = Field(default=None, alias="UpdateDate")
    token: str | None = Field(default=None, alias="Token")
    is_sync: bool | None = Field(default=None, alias="isSync")
    status_id: int | None = Field(default=None, alias="StatusID")

    _raw: dict[str, Any] | None = PrivateAttr(default=None)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "UpstreamProperty":
        if not isinstance(payload, dict):
            raise ValidationFailure("Upstream record is not an object", detail={"record": repr(payload)[:200]})
        # upstream sends null for empty collections now and then
        cleaned = {k: v for k, v in payload.items() if not (v is None and k in _LIST_FIELDS)}
        try:
            prop = cls.model_validate(cleaned)
        except PydanticValidationError as e:
            raise ValidationFailure(
                f"Upstream record {payload.get('Id')!r} is malformed",
                detail={"errors": e.errors(include_url=False, include_context=False)},
            ) from e
        prop._raw = copy.deepcopy(payload)
        return prop

    @property
    def raw_payload(self) -> dict[str, Any]:
        if self._raw is not None:
            return self._raw
        return self.model_dump(by_alias=True, exclude_none=True)

    @property
    def update_date(self) -> datetime | None:
        return parse_upstream_datetime(self.update_date_raw)

    @property
    def send_date(self) -> datetime | None:
        return parse_upstream_datetime(self.send_date_raw)

    def localized_text(self, key: str, language_id: int) -> str | None:
        for c in self.characteristics:
            if c.title == key and c.language_id == language_id and c.value:
                return c.value
        return None

    def primary_image_url(self) -> str | None:
        ordered = sorted(
            (img for img in self.images if img.url),
            key=lambda img: img.order_num if img.order_num is not None else 1 << 30,
        )
        return ordered[0].url if ordered else None


_LIST_FIELDS = {"Images", "Characteristics", "AdditionalLanguages", "Parkings", "DistanceFrom", "Basements", "Flags"}


@dataclass(frozen=True)
class PropertyFilter:
    """Body of the upstream property listing POST."""

    status_id: int = 1  # 1 active, 2 deleted
    is_sync: bool = True
    update_date_from_utc: datetime | None = None
    send_date_from_utc: datetime | None = None
    include_deleted_from_crm: bool = False

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "StatusID": str(self.status_id),
            "isSync": self.is_sync,
            "IncludeDeletedFromCrm": self.include_deleted_from_crm,
        }
        if self.update_date_from_utc is not None:
            body["UpdateDateFromUTC"] = to_upstream_iso(self.update_date_from_utc)
        if self.send_date_from_utc is not None:
            body["SendDateFromUTC"] = to_upstream_iso(self.send_date_from_utc)
        return body


@dataclass
class PropertyPage:
    records: list[dict[str, Any]]
    success: bool
    total: int
    next_page: str | None = None
    error: str | None = None
    code: str | None = None

    def summary(self) -> dict[str, Any]:
        # what we keep of the envelope in SyncSession.api_responses
        return {
            "success": self.success,
            "total": self.total,
            "count": len(self.records),
            "next_page": self.next_page,
            "error": self.error,
            "code": self.code,
        }
