from listing_sync.models.base import Base  # noqa: F401

from listing_sync.models.property import (  # noqa: F401
    Property,
    PropertyBasement,
    PropertyCharacteristic,
    PropertyDistance,
    PropertyFlag,
    PropertyImage,
    PropertyParking,
    PropertyPartner,
)
from listing_sync.models.sync_session import SyncSession  # noqa: F401
from listing_sync.models.upstream_config import UpstreamConfig  # noqa: F401
from listing_sync.models.lookup import UpstreamLookup  # noqa: F401
