"""Turn raw marketplace offers into NormalizedFlight records, then filter/sort them.

Malformed offers are dropped and counted, never patched with defaults: a
half-rendered flight is worse than a missing one when it can be booked.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional

from airline_cache import AirlineCache
from models import (
    AirlineRef,
    FilterCriteria,
    FlightEndpoint,
    FlightSegment,
    NormalizationResult,
    NormalizedFlight,
    SortKey,
)

logger = logging.getLogger(__name__)

DURATION_RE = re.compile(r"P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:\d+(?:\.\d+)?S)?)?")


def parse_duration_to_minutes(value: Optional[str]) -> int:
    """PT2H30M -> 150. Hours-only and minutes-only are valid; junk gives 0."""
    if not value or not isinstance(value, str):
        return 0
    match = DURATION_RE.fullmatch(value.strip().upper())
    if not match:
        return 0
    days = int(match.group(1) or 0)
    hours = int(match.group(2) or 0)
    minutes = int(match.group(3) or 0)
    return days * 24 * 60 + hours * 60 + minutes


def _parse_time(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None


def _code(obj: Any) -> str:
    code = obj.get('iata_code') if isinstance(obj, Mapping) else None
    return code.strip().upper() if isinstance(code, str) else ''


def _parse_price(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        return None
    return price if price.is_finite() and price >= 0 else None


def validate_offer(offer: Any) -> Optional[str]:
    """Return why an offer is unusable, or None when it is well-formed."""
    if not isinstance(offer, Mapping):
        return "not an object"

    slices = offer.get('slices')
    if not isinstance(slices, list) or not slices:
        return "no slices"

    segments = slices[0].get('segments') if isinstance(slices[0], Mapping) else None
    if not isinstance(segments, list) or not segments:
        return "no segments"

    if not all(isinstance(s, Mapping) for s in segments):
        return "malformed segment"
    for s in segments:
        operating = s.get('operating_carrier')
        if operating is not None and not isinstance(operating, Mapping):
            return "malformed segment"
        if not _code(s.get('marketing_carrier')):
            return "missing marketing carrier"
    first, last = segments[0], segments[-1]
    if not _code(first.get('origin')):
        return "missing departure airport"
    if not _code(last.get('destination')):
        return "missing arrival airport"

    if not _code(offer.get('owner')):
        return "missing owner"

    if _parse_price(offer.get('total_amount')) is None:
        return "invalid price"

    return None


def _to_segment(raw: Mapping[str, Any]) -> FlightSegment:
    marketing = _code(raw.get('marketing_carrier'))
    return FlightSegment(
        origin=_code(raw.get('origin')),
        destination=_code(raw.get('destination')),
        departing_at=str(raw.get('departing_at') or ''),
        arriving_at=str(raw.get('arriving_at') or ''),
        marketing_carrier=marketing,
        flight_number=f"{marketing}{raw.get('marketing_carrier_flight_number') or ''}",
        operating_carrier=_code(raw.get('operating_carrier')) or None,
        duration=parse_duration_to_minutes(raw.get('duration')),
    )


def compute_layovers(segments: List[FlightSegment]) -> List[int]:
    """Minutes on the ground between consecutive segments.

    Negative gaps (clock/timezone inconsistencies upstream) are clamped to 0.
    """
    layovers: List[int] = []
    for prev, nxt in zip(segments, segments[1:]):
        arrived = _parse_time(prev.arriving_at)
        departs = _parse_time(nxt.departing_at)
        if arrived is None or departs is None:
            layovers.append(0)
            continue
        try:
            gap = int((departs - arrived).total_seconds() // 60)
        except TypeError:
            # one side carries an offset, the other does not
            gap = int((departs.replace(tzinfo=None) - arrived.replace(tzinfo=None)).total_seconds() // 60)
        if gap < 0:
            logger.warning(
                f"Negative layover at {prev.destination} ({prev.arriving_at} -> {nxt.departing_at}), clamping to 0"
            )
            gap = 0
        layovers.append(gap)
    return layovers


def normalize_offer(offer: Mapping[str, Any], airline_cache: AirlineCache) -> NormalizedFlight:
    """Normalize one offer that already passed `validate_offer`."""
    slice_ = offer['slices'][0]
    segments = [_to_segment(s) for s in slice_['segments']]
    first, last = segments[0], segments[-1]

    airline = airline_cache.get_airline(_code(offer['owner']))

    return NormalizedFlight(
        id=str(offer.get('id') or ''),
        flight_number=first.flight_number,
        airline=AirlineRef(code=airline.code, name=airline.name, logo=airline.logo),
        departure=FlightEndpoint(code=first.origin, time=first.departing_at),
        arrival=FlightEndpoint(code=last.destination, time=last.arriving_at),
        duration=parse_duration_to_minutes(slice_.get('duration')),
        stops=len(segments) - 1,
        price=_parse_price(offer.get('total_amount')),
        currency=str(offer.get('total_currency') or ''),
        segments=segments,
        layovers=compute_layovers(segments),
        expires_at=offer.get('expires_at'),
        raw_offer=dict(offer),
    )


def normalize_offers(offers: Iterable[Any], airline_cache: AirlineCache) -> NormalizationResult:
    """Normalize a batch, dropping (and counting) every malformed record."""
    flights: List[NormalizedFlight] = []
    drop_reasons: Dict[str, int] = {}

    for offer in offers:
        reason = validate_offer(offer)
        if reason is not None:
            drop_reasons[reason] = drop_reasons.get(reason, 0) + 1
            offer_id = offer.get('id') if isinstance(offer, Mapping) else None
            logger.debug(f"Dropping offer {offer_id}: {reason}")
            continue
        flights.append(normalize_offer(offer, airline_cache))

    dropped = sum(drop_reasons.values())
    if dropped:
        logger.warning(f"Dropped {dropped} malformed offer(s): {drop_reasons}")

    return NormalizationResult(flights=flights, dropped=dropped, drop_reasons=drop_reasons)


def apply_filters(flights: Iterable[NormalizedFlight], criteria: FilterCriteria) -> List[NormalizedFlight]:
    """Price ceiling, then max stops, then airline allow-list.

    Each filter is skipped when unset; an empty allow-list restricts nothing.
    """
    result = list(flights)

    if criteria.max_price is not None:
        result = [f for f in result if f.price <= criteria.max_price]

    if criteria.max_stops is not None:
        result = [f for f in result if f.stops <= criteria.max_stops]

    if criteria.airlines:
        allowed = set(criteria.airlines)
        result = [f for f in result if f.airline.code in allowed]

    return result


_SORT_KEYS = {
    SortKey.PRICE: lambda f: f.price,
    SortKey.DURATION: lambda f: f.duration,
    SortKey.STOPS: lambda f: f.stops,
    SortKey.DEPARTURE: lambda f: f.departure.time,
}


def sort_flights(flights: Iterable[NormalizedFlight], sort_by: Optional[SortKey]) -> List[NormalizedFlight]:
    """Ascending, stable for ties. None keeps the input order."""
    if sort_by is None:
        return list(flights)
    return sorted(flights, key=_SORT_KEYS[SortKey(sort_by)])


def filter_and_sort(flights: Iterable[NormalizedFlight], criteria: FilterCriteria) -> List[NormalizedFlight]:
    return sort_flights(apply_filters(flights, criteria), criteria.sort_by)
