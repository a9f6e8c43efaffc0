"""Duffel flight-marketplace client.

Purpose
- Create offer requests and collect every offer for them across cursor pages.
- Expose order create/fetch/cancel and airline lookups on the same HTTP layer.
- Raise `APIError` with the upstream's own message so callers can show it.

API reference: https://duffel.com/docs/api

Environment variables (loaded via config.py):
- DUFFEL_API_TOKEN
- DUFFEL_BASE_URL (optional)

Notes
- Construction never touches credentials. The token is resolved by
  `_ensure_ready()` on the first real operation, so wiring this client into a
  process that never searches cannot crash it.
- Nothing here retries. Order creation is not idempotent and retry policy
  belongs to the caller.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import requests

from config import DEFAULT_API_VERSION, DEFAULT_BASE_URL, config_help_text, load_config

logger = logging.getLogger(__name__)

CABIN_CLASSES = ("economy", "premium_economy", "business", "first")


def _safe_resp_text(text: str, limit: int = 1000) -> str:
    """Return a compact/truncated response text for debugging in raised errors."""

    text = (text or "").strip()
    if len(text) > limit:
        return text[:limit] + "…(truncated)"
    return text


class APIError(RuntimeError):
    """Upstream or transport failure (message safe to show to users)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        upstream_message: Optional[str] = None,
        provider: str = "Duffel",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.upstream_message = upstream_message
        self.provider = provider


class ConfigurationError(APIError):
    """Missing or unusable credentials. Fatal for every client operation."""


class PaginationError(APIError):
    """The upstream cursor chain did not terminate."""


class SearchCancelled(RuntimeError):
    """The caller cancelled the operation."""


def check_cancelled(cancel_flag: Optional[Mapping[str, Any]]) -> None:
    if cancel_flag and cancel_flag.get('cancelled'):
        raise SearchCancelled("Search cancelled by caller")


def _iso(value: Union[date, str]) -> str:
    return value.isoformat() if isinstance(value, date) else str(value)


@dataclass
class DuffelConfig:
    api_token: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    api_version: str = DEFAULT_API_VERSION
    timeout: float = 30.0
    page_size: int = 200
    # upper bound on cursor pages followed for one listing
    max_pages: int = 200
    verify_ssl: bool = True

    @staticmethod
    def from_env() -> 'DuffelConfig':
        """Create config from environment variables (token is resolved later)."""
        cfg = load_config()
        return DuffelConfig(
            base_url=cfg.duffel_base_url,
            api_version=cfg.duffel_version,
            timeout=cfg.timeout,
            max_pages=cfg.max_pages,
        )


class DuffelClient:
    """Duffel API client.

    Public contract used by the search pipeline and the airline cache:
    - search_flights(...) -> List[dict] (raw offers, all pages)
    - create_order / get_order / list_orders / cancel_order
    - list_airlines / get_airline / get_airlines

    Raises:
    - ConfigurationError when no token is configured (first operation only).
    - APIError on transport/HTTP failures.
    """

    def __init__(self, config: Optional[DuffelConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or DuffelConfig.from_env()

        self._session = session or requests.Session()
        self._session.headers.update({
            "Accept": "application/json",
            "Accept-Encoding": "gzip",
            "Content-Type": "application/json",
            "Duffel-Version": self.config.api_version,
            "User-Agent": "FlightOfferPipeline/1.0",
        })

        self._ready_lock = threading.Lock()
        self._token: Optional[str] = None

    # ------------------------------
    # Lifecycle
    # ------------------------------

    def _ensure_ready(self) -> str:
        """Resolve the bearer token; the only path that raises ConfigurationError."""
        with self._ready_lock:
            if self._token:
                return self._token

            token = (self.config.api_token or "").strip()
            if not token:
                token = load_config().duffel_api_token

            if not token:
                logger.error(config_help_text())
                raise ConfigurationError("Duffel API token missing (DUFFEL_API_TOKEN)")

            self._token = token
            return self._token

    # ------------------------------
    # HTTP
    # ------------------------------

    def _request_json(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        token = self._ensure_ready()
        url = f"{self.config.base_url}{endpoint}"
        headers = {"Authorization": f"Bearer {token}"}

        try:
            resp = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self.config.timeout,
                verify=self.config.verify_ssl,
            )
        except requests.exceptions.RequestException as e:
            raise APIError(f"Duffel request failed: {e}") from e

        if 200 <= resp.status_code < 300:
            if resp.status_code == 204:
                return {}
            try:
                payload = resp.json()
            except ValueError as e:
                raise APIError(
                    f"Duffel returned invalid JSON for {endpoint}",
                    status_code=resp.status_code,
                ) from e
            return payload if isinstance(payload, dict) else {}

        error_msg = self._parse_error_message(resp)
        raise APIError(
            f"Duffel rejected the request (HTTP {resp.status_code}): {error_msg}",
            status_code=resp.status_code,
            upstream_message=error_msg,
        )

    def _paginate(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        cancel_flag: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Follow `meta.after` cursors until the upstream stops sending one.

        Pages are requested strictly in order and concatenated; callers never
        see a partial listing.
        """
        items: List[Dict[str, Any]] = []
        seen_cursors = set()
        cursor: Optional[str] = None

        for page in range(1, self.config.max_pages + 1):
            check_cancelled(cancel_flag)

            page_params: Dict[str, Any] = dict(params or {})
            page_params.setdefault("limit", self.config.page_size)
            if cursor:
                page_params["after"] = cursor

            payload = self._request_json("GET", endpoint, params=page_params)
            data = payload.get("data")
            if isinstance(data, list):
                items.extend(d for d in data if isinstance(d, dict))

            meta = payload.get("meta") or {}
            cursor = meta.get("after") if isinstance(meta, dict) else None
            if not cursor:
                logger.debug(f"{endpoint}: {len(items)} items over {page} page(s)")
                return items

            if cursor in seen_cursors:
                raise PaginationError(f"Duffel repeated cursor {cursor!r} while listing {endpoint}")
            seen_cursors.add(cursor)

        raise PaginationError(
            f"Duffel listing {endpoint} did not finish within {self.config.max_pages} pages"
        )

    # ------------------------------
    # Offers
    # ------------------------------

    def search_flights(
        self,
        origin: str,
        destination: str,
        departure_date: Union[date, str],
        adults: int = 1,
        children: int = 0,
        infants: int = 0,
        return_date: Optional[Union[date, str]] = None,
        cabin_class: Optional[str] = None,
        max_connections: Optional[int] = None,
        cancel_flag: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Create an offer request and return every offer for it.

        Origin/destination are expected to be upper-case IATA codes and
        ``adults >= 1``; the caller enforces both.
        """
        self._ensure_ready()

        cabin = (cabin_class or "economy").strip().lower()
        if cabin not in CABIN_CLASSES:
            raise ValueError(f"Unsupported cabin class {cabin_class!r}")

        passengers: List[Dict[str, Any]] = []
        passengers.extend({"type": "adult"} for _ in range(adults))
        passengers.extend({"type": "child", "age": 10} for _ in range(children))
        passengers.extend({"type": "infant_without_seat", "age": 1} for _ in range(infants))

        slices = [{
            "origin": origin,
            "destination": destination,
            "departure_date": _iso(departure_date),
        }]
        if return_date:
            slices.append({
                "origin": destination,
                "destination": origin,
                "departure_date": _iso(return_date),
            })

        body: Dict[str, Any] = {
            "slices": slices,
            "passengers": passengers,
            "cabin_class": cabin,
        }
        if max_connections is not None:
            body["max_connections"] = max_connections

        check_cancelled(cancel_flag)
        logger.info(f"Creating offer request {origin}→{destination} on {_iso(departure_date)}"
                    + (f" returning {_iso(return_date)}" if return_date else ""))

        created = self._request_json(
            "POST",
            "/air/offer_requests",
            params={"return_offers": "false"},
            json_body={"data": body},
        )
        offer_request_id = (created.get("data") or {}).get("id")
        if not offer_request_id:
            raise APIError("Duffel offer request response is missing an id")

        offers = self._paginate("/air/offers", {"offer_request_id": offer_request_id}, cancel_flag)
        offers = self._deduplicate(offers)
        logger.info(f"Offer request {offer_request_id}: {len(offers)} offers")
        return offers

    def get_offer(self, offer_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_ready()
        try:
            return self._request_json("GET", f"/air/offers/{offer_id}").get("data")
        except APIError as e:
            logger.warning(f"Duffel get offer {offer_id} failed: {e}")
            return None

    # ------------------------------
    # Orders
    # ------------------------------

    def create_order(
        self,
        offer_ids: Iterable[str],
        passengers: List[Dict[str, Any]],
        payments: List[Dict[str, Any]],
        order_type: str = "instant",
    ) -> Dict[str, Any]:
        """Book the selected offers. Sent exactly once; failures propagate unchanged."""
        self._ensure_ready()
        body = {
            "selected_offers": list(offer_ids),
            "passengers": passengers,
            "payments": payments,
            "type": order_type,
        }
        try:
            payload = self._request_json("POST", "/air/orders", json_body={"data": body})
        except APIError as e:
            logger.error(f"Duffel create order failed: {e}")
            raise

        order = payload.get("data")
        if not isinstance(order, dict):
            raise APIError("Duffel order response is missing data")
        return order

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_ready()
        try:
            return self._request_json("GET", f"/air/orders/{order_id}").get("data")
        except APIError as e:
            logger.warning(f"Duffel get order {order_id} failed: {e}")
            return None

    def list_orders(self, **filters: Any) -> List[Dict[str, Any]]:
        return self._paginate("/air/orders", dict(filters))

    def cancel_order(self, order_id: str) -> bool:
        """Cancel an order. Best effort: False on any upstream failure."""
        self._ensure_ready()
        try:
            pending = self._request_json(
                "POST",
                "/air/order_cancellations",
                json_body={"data": {"order_id": order_id}},
            )
            cancellation_id = (pending.get("data") or {}).get("id")
            if not cancellation_id:
                logger.warning(f"Duffel cancellation for {order_id} returned no id")
                return False
            self._request_json("POST", f"/air/order_cancellations/{cancellation_id}/actions/confirm")
            return True
        except APIError as e:
            logger.warning(f"Duffel cancel order {order_id} failed: {e}")
            return False

    # ------------------------------
    # Airlines / places
    # ------------------------------

    def list_airlines(self) -> List[Dict[str, Any]]:
        return self._paginate("/air/airlines")

    def get_airline(self, code: str) -> Optional[Dict[str, Any]]:
        """Look up one airline; None when the upstream does not know the code."""
        try:
            return self._request_json("GET", f"/air/airlines/{code}").get("data")
        except APIError as e:
            if e.status_code == 404:
                return None
            raise

    def get_airlines(self, codes: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Look up one chunk of airlines.

        Unknown codes are left out of the result; any other failure aborts the
        whole chunk.
        """
        found: Dict[str, Dict[str, Any]] = {}
        for code in codes:
            record = self.get_airline(code)
            if record:
                found[code] = record
        return found

    def search_places(self, query: str) -> List[Dict[str, Any]]:
        self._ensure_ready()
        try:
            data = self._request_json("GET", "/places/suggestions", params={"query": query}).get("data")
        except APIError as e:
            logger.warning(f"Duffel place search for {query!r} failed: {e}")
            return []
        return data if isinstance(data, list) else []

    # ------------------------------
    # Helpers
    # ------------------------------

    def _parse_error_message(self, resp: requests.Response) -> str:
        """Extract the upstream's structured error message, if any."""
        try:
            error_data = resp.json()
        except ValueError:
            return _safe_resp_text(resp.text)

        if isinstance(error_data, dict):
            errors = error_data.get("errors")
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                first_error = errors[0]
                message = first_error.get("message") or first_error.get("title") or ""
                code = first_error.get("code") or ""
                if message and code:
                    return f"{message} ({code})"
                if message or code:
                    return message or code
        return _safe_resp_text(resp.text)

    def _deduplicate(self, offers: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        seen = set()
        out: List[Dict[str, Any]] = []
        for offer in offers:
            offer_id = offer.get("id")
            if offer_id:
                if offer_id in seen:
                    continue
                seen.add(offer_id)
            out.append(offer)
        return out
