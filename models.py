"""
Data models for the flight offer pipeline.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class AirlineSource(str, Enum):
    """Where a cached airline record came from."""
    BOOTSTRAP = "bootstrap"
    UPSTREAM = "upstream"
    SEARCH_RESULT = "search-result"
    FALLBACK = "fallback"


class SortKey(str, Enum):
    PRICE = "price"
    DURATION = "duration"
    STOPS = "stops"
    DEPARTURE = "departure"


def airline_logo_url(code: str) -> str:
    """Default logo location for a carrier code."""
    return f"https://images.kiwi.com/airlines/64/{code}.png"


@dataclass(frozen=True)
class CachedAirline:
    """One airline cache entry. Replaced whole, never mutated."""
    code: str
    name: str
    logo: str
    cached_at: float
    source: AirlineSource

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.cached_at)


@dataclass(frozen=True)
class AirlineRef:
    code: str
    name: str
    logo: str


@dataclass(frozen=True)
class AirlineSummary:
    code: str
    name: str
    logo: str


@dataclass(frozen=True)
class FlightEndpoint:
    code: str
    time: str


@dataclass(frozen=True)
class FlightSegment:
    """A single flown leg inside a slice."""
    origin: str
    destination: str
    departing_at: str
    arriving_at: str
    marketing_carrier: str
    flight_number: str
    operating_carrier: Optional[str] = None
    duration: int = 0


@dataclass
class NormalizedFlight:
    """Represents a bookable offer in the internal, stable shape."""
    id: str
    flight_number: str
    airline: AirlineRef
    departure: FlightEndpoint
    arrival: FlightEndpoint
    duration: int
    stops: int
    price: Decimal
    currency: str
    status: str = "scheduled"
    segments: List[FlightSegment] = field(default_factory=list)
    layovers: List[int] = field(default_factory=list)
    expires_at: Optional[str] = None
    raw_offer: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def formatted_price(self) -> str:
        return f"{self.currency} {self.price:,.2f}"

    def __repr__(self) -> str:
        return (
            f"NormalizedFlight({self.flight_number} "
            f"{self.departure.code}→{self.arrival.code}, "
            f"{self.departure.time[:16]}, {self.stops} stop(s), {self.formatted_price})"
        )


@dataclass(frozen=True)
class FilterCriteria:
    """Client-visible filter/sort settings for one search call.

    An empty ``airlines`` allow-list means "no restriction".
    """
    airlines: Tuple[str, ...] = ()
    max_price: Optional[Decimal] = None
    max_stops: Optional[int] = None
    sort_by: Optional[SortKey] = None

    @classmethod
    def build(cls, airlines=None, max_price=None, max_stops=None, sort_by=None) -> 'FilterCriteria':
        """Coerce loosely typed caller input (lists, floats, strings)."""
        codes = tuple(str(a).strip().upper() for a in (airlines or ()) if str(a).strip())
        price = Decimal(str(max_price)) if max_price is not None else None
        stops = int(max_stops) if max_stops is not None else None
        key = SortKey(sort_by) if sort_by else None
        return cls(airlines=codes, max_price=price, max_stops=stops, sort_by=key)


@dataclass(frozen=True)
class SearchRequest:
    origin: str
    destination: str
    departure_date: date
    adults: int = 1
    children: int = 0
    infants: int = 0
    return_date: Optional[date] = None
    cabin_class: Optional[str] = None
    max_connections: Optional[int] = None


@dataclass
class NormalizationResult:
    flights: List[NormalizedFlight]
    dropped: int = 0
    drop_reasons: Dict[str, int] = field(default_factory=dict)


@dataclass
class SearchResult:
    flights: List[NormalizedFlight]
    count: int
    source: str
    dropped: int = 0
    airlines: List[AirlineSummary] = field(default_factory=list)
