"""Internal constants shared across the library."""

BASE_URL = "https://api.gps51.com"
USER_AGENT = "pygps51/0.3"

#: Actions exposed by the GPS51 ``openapi`` endpoint that pygps51 uses.
ACTION_QUERY_DEVICES = "querymonitorlist"
ACTION_LAST_POSITION = "lastposition"
ACTION_QUERY_TRIPS = "querytrips"
ACTION_QUERY_TRACK = "querytrack"

# ------------------------------------------------------------------
# Vendor status codes (``status`` field of every openapi response)
# ------------------------------------------------------------------

STATUS_OK = 0
RATE_LIMITED_STATUSES: frozenset[int] = frozenset({8902})
AUTH_EXPIRED_STATUSES: frozenset[int] = frozenset({9903, 9906})

RATE_LIMITED_HTTP_STATUSES: frozenset[int] = frozenset({429})
AUTH_EXPIRED_HTTP_STATUSES: frozenset[int] = frozenset({401, 403})

#: Row key of the shared rate-limit coordination record.
RATE_LIMIT_KEY = "gps51"

#: Trip provenance tags.
TRIP_SOURCE_VENDOR = "gps51"
TRIP_SOURCE_DERIVED = "derived"

#: GPS51 reports trip speeds in metres per hour and distances in metres.
METERS_PER_KM = 1000.0
