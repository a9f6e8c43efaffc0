from datetime import date
from decimal import Decimal

import pytest

from airline_cache import AirlineCache
from duffel_client import APIError, ConfigurationError, SearchCancelled
from flight_search import FlightSearchService, extract_iata
from models import FilterCriteria, SearchRequest, SortKey


class _FakeClient:
    def __init__(self, offers=None, error=None):
        self.offers = offers or []
        self.error = error
        self.calls = []

    def search_flights(self, origin, destination, departure_date, **kwargs):
        self.calls.append(dict(origin=origin, destination=destination, departure_date=departure_date, **kwargs))
        if self.error is not None:
            raise self.error
        return list(self.offers)


class _FakeAirlineSource:
    def __init__(self):
        self.calls = []

    def get_airline(self, code):
        self.calls.append([code])
        return None

    def get_airlines(self, codes):
        self.calls.append(list(codes))
        return {}


def _request(**overrides):
    params = dict(origin="JFK", destination="LAX", departure_date=date(2026, 11, 10))
    params.update(overrides)
    return SearchRequest(**params)


@pytest.fixture
def example_offers(nonstop_offer, one_stop_offer):
    a = nonstop_offer("A", 200, "XX")
    b = one_stop_offer("B", 150, "YY")
    c = {k: v for k, v in nonstop_offer("C", 100, "ZZ").items() if k != "owner"}
    return [a, b, c]


def test_example_scenario(example_offers):
    service = FlightSearchService(client=_FakeClient(example_offers), airline_cache=AirlineCache(bootstrap=()))
    criteria = FilterCriteria(max_price=Decimal("180"), max_stops=1, sort_by=SortKey.PRICE)

    result = service.search(_request(), criteria)

    assert [f.id for f in result.flights] == ["B"]
    assert result.count == 1
    assert result.dropped == 1
    assert result.source == "duffel-api"
    assert result.flights[0].airline.name == "YY Airways"
    assert [a.code for a in result.airlines] == ["YY"]


def test_zero_survivors_is_an_empty_success(example_offers):
    service = FlightSearchService(client=_FakeClient(example_offers), airline_cache=AirlineCache(bootstrap=()))

    result = service.search(_request(), FilterCriteria(max_price=Decimal("10")))

    assert result.flights == []
    assert result.count == 0
    assert result.dropped == 1


def test_upstream_failure_propagates():
    client = _FakeClient(error=APIError("Duffel rejected the request (HTTP 500): boom", status_code=500))
    service = FlightSearchService(client=client, airline_cache=AirlineCache(bootstrap=()))

    with pytest.raises(APIError) as exc_info:
        service.search(_request())
    assert exc_info.value.status_code == 500


def test_cancelled_search_raises(example_offers):
    service = FlightSearchService(client=_FakeClient(example_offers), airline_cache=AirlineCache(bootstrap=()))

    with pytest.raises(SearchCancelled):
        service.search(_request(), cancel_flag={"cancelled": True})


def test_search_warms_airline_cache_for_unknown_carriers(example_offers):
    source = _FakeAirlineSource()
    cache = AirlineCache(source=source, bootstrap=())
    service = FlightSearchService(client=_FakeClient(example_offers), airline_cache=cache)

    service.search(_request())

    # owners are taken from the offers; only the carrier of the ownerless offer goes upstream
    assert source.calls == [["ZZ"]]
    assert {a.code for a in cache.get_all_cached_airlines()} == {"XX", "YY", "ZZ"}


def test_search_normalizes_locations_and_forwards_max_stops():
    client = _FakeClient([])
    service = FlightSearchService(client=client, airline_cache=AirlineCache(bootstrap=()))

    service.search(
        _request(origin="New York (jfk)", destination=" lax ", return_date=date(2026, 11, 20), adults=2),
        FilterCriteria(max_stops=1),
    )

    call = client.calls[0]
    assert call["origin"] == "JFK"
    assert call["destination"] == "LAX"
    assert call["adults"] == 2
    assert call["return_date"] == date(2026, 11, 20)
    assert call["max_connections"] == 1


@pytest.mark.parametrize("value,expected", [
    ("JFK", "JFK"),
    ("jfk ", "JFK"),
    ("London Heathrow (LHR)", "LHR"),
    ("", ""),
])
def test_extract_iata(value, expected):
    assert extract_iata(value) == expected


def test_airlines_for_route_are_unique_owners(nonstop_offer, one_stop_offer):
    offers = [nonstop_offer("A", 200, "XX"), one_stop_offer("B", 150, "YY"), nonstop_offer("C", 120, "XX")]
    service = FlightSearchService(client=_FakeClient(offers), airline_cache=AirlineCache(bootstrap=()))

    airlines = service.get_airlines_for_route("JFK", "LAX", "2026-11-10")

    assert [(a.code, a.name) for a in airlines] == [("XX", "XX Airways"), ("YY", "YY Airways")]


def test_airlines_for_route_falls_back_to_cache():
    cache = AirlineCache()
    service = FlightSearchService(client=_FakeClient(error=APIError("timeout")), airline_cache=cache)

    airlines = service.get_airlines_for_route("JFK", "LAX", "2026-11-10")

    assert len(airlines) == 20
    assert airlines[0].name == cache.get_all_cached_airlines()[0].name


def test_airlines_for_route_does_not_hide_configuration_errors():
    client = _FakeClient(error=ConfigurationError("Duffel API token missing (DUFFEL_API_TOKEN)"))
    service = FlightSearchService(client=client, airline_cache=AirlineCache())

    with pytest.raises(ConfigurationError):
        service.get_airlines_for_route("JFK", "LAX", "2026-11-10")


def _with_owner_string(offer):
    return dict(offer, owner="XX")


def _with_string_slice(offer):
    return dict(offer, slices=["oops"])


def _with_string_operating_carrier(offer):
    segment = dict(offer["slices"][0]["segments"][0], operating_carrier="AA")
    return dict(offer, slices=[{"duration": "PT5H", "segments": [segment]}])


@pytest.mark.parametrize("break_offer", [
    _with_owner_string,
    _with_string_slice,
    _with_string_operating_carrier,
    lambda offer: "not an offer",
])
def test_wrongly_shaped_offer_is_dropped_not_raised(nonstop_offer, break_offer):
    offers = [nonstop_offer("good", 100, "XX"), break_offer(nonstop_offer("bad", 90, "YY"))]
    service = FlightSearchService(client=_FakeClient(offers), airline_cache=AirlineCache(bootstrap=()))

    result = service.search(_request())

    assert [f.id for f in result.flights] == ["good"]
    assert result.count == 1
    assert result.dropped == 1


def test_route_airlines_skip_wrongly_shaped_owners(nonstop_offer):
    offers = [dict(nonstop_offer("A", 200, "XX"), owner="XX"), "junk", nonstop_offer("B", 150, "YY")]
    service = FlightSearchService(client=_FakeClient(offers), airline_cache=AirlineCache(bootstrap=()))

    airlines = service.get_airlines_for_route("JFK", "LAX", "2026-11-10")

    assert [a.code for a in airlines] == ["YY"]
