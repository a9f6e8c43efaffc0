import pytest


def _segment(origin, destination, departing_at, arriving_at, carrier, number, operating=None):
    return {
        "origin": {"iata_code": origin},
        "destination": {"iata_code": destination},
        "departing_at": departing_at,
        "arriving_at": arriving_at,
        "marketing_carrier": {"iata_code": carrier},
        "marketing_carrier_flight_number": number,
        "operating_carrier": {"iata_code": operating or carrier},
    }


def _offer(offer_id, price, owner, legs, duration="PT5H", currency="USD", owner_name=None):
    """Build a Duffel-shaped offer. ``legs`` is a list of _segment() dicts."""
    offer = {
        "id": offer_id,
        "total_amount": str(price),
        "total_currency": currency,
        "slices": [{"duration": duration, "segments": legs}],
        "expires_at": "2026-12-01T10:00:00Z",
    }
    if owner is not None:
        offer["owner"] = {"iata_code": owner, "name": owner_name or f"{owner} Airways"}
    return offer


@pytest.fixture
def segment():
    return _segment


@pytest.fixture
def offer_factory():
    return _offer


@pytest.fixture
def nonstop_offer():
    def make(offer_id, price, owner, departing_at="2026-11-10T08:00:00", duration="PT5H"):
        leg = _segment("JFK", "LAX", departing_at, "2026-11-10T13:00:00", owner, "100")
        return _offer(offer_id, price, owner, [leg], duration=duration)
    return make


@pytest.fixture
def one_stop_offer():
    def make(offer_id, price, owner, duration="PT7H30M"):
        legs = [
            _segment("JFK", "ORD", "2026-11-10T08:00:00", "2026-11-10T10:00:00", owner, "200"),
            _segment("ORD", "LAX", "2026-11-10T11:30:00", "2026-11-10T15:30:00", owner, "201"),
        ]
        return _offer(offer_id, price, owner, legs, duration=duration)
    return make
