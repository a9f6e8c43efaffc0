"""Real-time flight search over the Duffel marketplace.

search: fetch every offer (all cursor pages) -> warm the airline cache ->
normalize (fail closed) -> filter -> sort.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Union

from airline_cache import AirlineCache, get_airline_cache
from duffel_client import APIError, ConfigurationError, DuffelClient, check_cancelled
from models import AirlineSummary, FilterCriteria, SearchRequest, SearchResult
from offer_normalizer import _code, filter_and_sort, normalize_offers

logger = logging.getLogger(__name__)

SOURCE_TAG = "duffel-api"
ROUTE_FALLBACK_LIMIT = 20


def extract_iata(value: str) -> str:
    """Accept 'JFK', 'jfk ' or a display label like 'New York (JFK)'."""
    value = (value or "").strip()
    if "(" in value and ")" in value:
        value = value.split("(", 1)[1].split(")", 1)[0]
    return value.strip().upper()


class FlightSearchService:
    """Search pipeline shared by the search page and the airline filter."""

    def __init__(self, client: Optional[DuffelClient] = None, airline_cache: Optional[AirlineCache] = None):
        self.client = client if client is not None else DuffelClient()
        # AirlineCache defines __len__, so an empty cache is falsy
        self.airline_cache = airline_cache if airline_cache is not None else get_airline_cache()

    def _fetch_offers(
        self,
        request: SearchRequest,
        max_connections: Optional[int],
        cancel_flag: Optional[Mapping[str, Any]],
    ) -> List[Dict[str, Any]]:
        return self.client.search_flights(
            extract_iata(request.origin),
            extract_iata(request.destination),
            request.departure_date,
            adults=request.adults,
            children=request.children,
            infants=request.infants,
            return_date=request.return_date,
            cabin_class=request.cabin_class,
            max_connections=max_connections,
            cancel_flag=cancel_flag,
        )

    def search(
        self,
        request: SearchRequest,
        criteria: Optional[FilterCriteria] = None,
        cancel_flag: Optional[Mapping[str, Any]] = None,
    ) -> SearchResult:
        """Run one search.

        Raises:
        - APIError (incl. ConfigurationError) when the upstream call fails;
          distinct from a successful search with zero flights.
        - SearchCancelled when ``cancel_flag['cancelled']`` is set.
        """
        criteria = criteria or FilterCriteria()
        max_connections = request.max_connections
        if max_connections is None:
            max_connections = criteria.max_stops

        offers = self._fetch_offers(request, max_connections, cancel_flag)

        check_cancelled(cancel_flag)
        self.airline_cache.remember_from_offers(offers)
        self.airline_cache.process_offers(offers)

        check_cancelled(cancel_flag)
        normalized = normalize_offers(offers, self.airline_cache)
        flights = filter_and_sort(normalized.flights, criteria)

        airlines: Dict[str, AirlineSummary] = {}
        for flight in flights:
            airlines.setdefault(
                flight.airline.code,
                AirlineSummary(code=flight.airline.code, name=flight.airline.name, logo=flight.airline.logo),
            )

        logger.info(
            f"Search {request.origin}→{request.destination}: {len(offers)} offers, "
            f"{normalized.dropped} dropped, {len(flights)} after filters"
        )
        return SearchResult(
            flights=flights,
            count=len(flights),
            source=SOURCE_TAG,
            dropped=normalized.dropped,
            airlines=list(airlines.values()),
        )

    def get_airlines_for_route(
        self,
        origin: str,
        destination: str,
        departure_date: Union[date, str],
    ) -> List[AirlineSummary]:
        """Unique offer owners on a route, or cached airlines if the search fails."""
        request = SearchRequest(origin=origin, destination=destination, departure_date=departure_date)
        try:
            offers = self._fetch_offers(request, None, None)
        except ConfigurationError:
            raise
        except APIError as e:
            logger.error(f"Airlines for {origin}→{destination} unavailable, using cache: {e}")
            cached = self.airline_cache.get_all_cached_airlines()[:ROUTE_FALLBACK_LIMIT]
            return [AirlineSummary(code=a.code, name=a.name, logo=a.logo) for a in cached]

        self.airline_cache.remember_from_offers(offers)

        summaries: Dict[str, AirlineSummary] = {}
        for offer in offers:
            code = _code(offer.get("owner")) if isinstance(offer, Mapping) else ""
            if not code or code in summaries:
                continue
            airline = self.airline_cache.get_airline(code)
            summaries[code] = AirlineSummary(code=code, name=airline.name, logo=airline.logo)
        return list(summaries.values())
