'''
In-memory airline metadata cache.

Maps carrier code -> display name/logo without a network round trip on the
hot path. Entries expire after a TTL (24 hours by default), are refreshed
through batched upstream lookups, and are never an error source: a failed
lookup resolves to a fallback record keyed by the code itself.
'''

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from config import load_config
from duffel_client import DuffelClient
from models import AirlineSource, CachedAirline, airline_logo_url

logger = logging.getLogger(__name__)


KNOWN_AIRLINES: Tuple[Tuple[str, str], ...] = (
    ('AA', 'American Airlines'),
    ('DL', 'Delta Air Lines'),
    ('UA', 'United Airlines'),
    ('WN', 'Southwest Airlines'),
    ('B6', 'JetBlue Airways'),
    ('AS', 'Alaska Airlines'),
    ('BA', 'British Airways'),
    ('LH', 'Lufthansa'),
    ('AF', 'Air France'),
    ('KL', 'KLM'),
    ('IB', 'Iberia'),
    ('EK', 'Emirates'),
    ('QR', 'Qatar Airways'),
    ('EY', 'Etihad Airways'),
    ('TK', 'Turkish Airlines'),
    ('SQ', 'Singapore Airlines'),
    ('CX', 'Cathay Pacific'),
    ('JL', 'Japan Airlines'),
    ('NH', 'All Nippon Airways'),
    ('QF', 'Qantas'),
    ('AC', 'Air Canada'),
    ('AM', 'Aeromexico'),
    ('LA', 'LATAM'),
    ('AV', 'Avianca'),
)

HOUR = 60 * 60


def _normalize_code(code: Any) -> str:
    if not isinstance(code, str):
        return ''
    return code.strip().upper()


def _carrier_code(obj: Any) -> str:
    '''Code of a `{"iata_code": ...}` carrier object; '' for anything else.'''
    if isinstance(obj, Mapping):
        return _normalize_code(obj.get('iata_code'))
    return ''


def _first_text(record: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def extract_airline_codes_from_offers(offers: Iterable[Any]) -> Set[str]:
    '''
    Collect every carrier code referenced by a set of raw offers.

    Covers marketing and operating carriers of every segment in every slice,
    the offer owner and any top-level validating carrier codes. Runs before
    validation, so records of the wrong shape are skipped, not raised on.
    '''
    codes: Set[str] = set()

    def add(code: str) -> None:
        if code:
            codes.add(code)

    for offer in offers:
        if not isinstance(offer, Mapping):
            continue

        slices = offer.get('slices')
        for slice_ in slices if isinstance(slices, list) else []:
            segments = slice_.get('segments') if isinstance(slice_, Mapping) else None
            for segment in segments if isinstance(segments, list) else []:
                if not isinstance(segment, Mapping):
                    continue
                add(_carrier_code(segment.get('marketing_carrier')))
                add(_carrier_code(segment.get('operating_carrier')))

        add(_carrier_code(offer.get('owner')))
        validating = offer.get('validatingAirlineCodes')
        for code in validating if isinstance(validating, list) else []:
            add(_normalize_code(code))

    return codes


class AirlineCache:
    '''Process-wide airline store with TTL reads and per-entry replace-on-write.'''

    def __init__(
        self,
        source: Optional[Any] = None,
        ttl_hours: float = 24,
        batch_size: int = 10,
        max_workers: int = 4,
        clock: Callable[[], float] = time.time,
        bootstrap: Iterable[Tuple[str, str]] = KNOWN_AIRLINES,
    ):
        '''
        Initialize the cache.

        Args:
            source: Upstream lookup with `get_airline(code)` and
                `get_airlines(codes)` (e.g. DuffelClient). None disables
                upstream refresh; misses then resolve to fallbacks.
            ttl_hours: Time-to-live in hours (default: 24 hours)
            batch_size: Max codes per upstream chunk (default: 10)
            max_workers: Concurrent chunk lookups in `get_airlines`
            clock: Time source in epoch seconds
            bootstrap: (code, name) pairs seeded at construction
        '''
        self.source = source
        self.ttl_seconds = ttl_hours * HOUR
        self.batch_size = max(1, int(batch_size))
        self.max_workers = max(1, int(max_workers))
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, CachedAirline] = {}
        self._inflight: Dict[str, threading.Lock] = {}

        now = self._clock()
        for code, name in bootstrap:
            code = _normalize_code(code)
            self._entries[code] = CachedAirline(
                code=code,
                name=name,
                logo=airline_logo_url(code),
                cached_at=now,
                source=AirlineSource.BOOTSTRAP,
            )

    # ------------------------------
    # Entry helpers
    # ------------------------------

    def _is_fresh(self, entry: Optional[CachedAirline], now: float) -> bool:
        return entry is not None and (now - entry.cached_at) < self.ttl_seconds

    def _fresh_entry(self, code: str) -> Optional[CachedAirline]:
        with self._lock:
            entry = self._entries.get(code)
        return entry if self._is_fresh(entry, self._clock()) else None

    def _store(self, entry: CachedAirline) -> CachedAirline:
        with self._lock:
            self._entries[entry.code] = entry
        return entry

    def _fallback(self, code: str) -> CachedAirline:
        return CachedAirline(
            code=code,
            name=code,
            logo=airline_logo_url(code),
            cached_at=self._clock(),
            source=AirlineSource.FALLBACK,
        )

    def _from_upstream(self, code: str, record: Mapping[str, Any]) -> CachedAirline:
        name = _first_text(record, 'name', 'businessName', 'commonName') or code
        logo = _first_text(record, 'logo_symbol_url', 'logo_lockup_url') or airline_logo_url(code)
        return CachedAirline(
            code=code,
            name=name,
            logo=logo,
            cached_at=self._clock(),
            source=AirlineSource.UPSTREAM,
        )

    def _code_lock(self, code: str) -> threading.Lock:
        with self._lock:
            lock = self._inflight.get(code)
            if lock is None:
                lock = self._inflight[code] = threading.Lock()
            return lock

    # ------------------------------
    # Reads
    # ------------------------------

    def get_airline(self, code: str) -> CachedAirline:
        '''
        Return airline data for a carrier code. Never raises.

        A fresh entry is returned as-is. Otherwise one upstream lookup is made
        (concurrent callers for the same code share it); on failure a fallback
        entry is cached so an outage does not cause repeated lookups within
        the TTL window.
        '''
        code = _normalize_code(code)
        cached = self._fresh_entry(code)
        if cached is not None:
            return cached

        with self._code_lock(code):
            cached = self._fresh_entry(code)
            if cached is not None:
                return cached

            if self.source is not None:
                try:
                    record = self.source.get_airline(code)
                    if isinstance(record, Mapping) and record:
                        logger.info(f"Airline {code} refreshed from upstream")
                        return self._store(self._from_upstream(code, record))
                    logger.info(f"Airline {code} unknown upstream, caching fallback")
                except Exception as e:
                    logger.warning(f"Failed to fetch airline data for {code}: {e}")

            return self._store(self._fallback(code))

    def get_airlines(self, codes: Iterable[str]) -> List[CachedAirline]:
        '''
        Batch lookup.

        Fresh codes are answered from memory; stale or missing codes are sent
        upstream in chunks of `batch_size`. A failed chunk degrades only its
        own codes to fallbacks. Results follow the order of `codes`.
        '''
        wanted: List[str] = []
        for code in codes:
            code = _normalize_code(code)
            if code and code not in wanted:
                wanted.append(code)

        results: Dict[str, CachedAirline] = {}
        stale: List[str] = []
        for code in wanted:
            cached = self._fresh_entry(code)
            if cached is not None:
                results[code] = cached
            else:
                stale.append(code)

        if stale:
            chunks = [stale[i:i + self.batch_size] for i in range(0, len(stale), self.batch_size)]
            if len(chunks) == 1 or self.max_workers == 1:
                for chunk in chunks:
                    results.update(self._refresh_chunk(chunk))
            else:
                with ThreadPoolExecutor(max_workers=min(self.max_workers, len(chunks))) as pool:
                    for refreshed in pool.map(self._refresh_chunk, chunks):
                        results.update(refreshed)

        return [results[code] for code in wanted]

    def _refresh_chunk(self, chunk: List[str]) -> Dict[str, CachedAirline]:
        '''Fetch one chunk upstream. Never raises.'''
        records: Mapping[str, Any] = {}
        if self.source is not None:
            try:
                records = self.source.get_airlines(chunk) or {}
            except Exception as e:
                logger.warning(f"Batch airline fetch failed for {','.join(chunk)}: {e}")
                records = {}
            if not isinstance(records, Mapping):
                logger.warning(f"Batch airline fetch for {','.join(chunk)} returned {type(records).__name__}, ignoring")
                records = {}

        out: Dict[str, CachedAirline] = {}
        for code in chunk:
            record = records.get(code)
            # records of the wrong shape count as unknown
            if isinstance(record, Mapping) and record:
                entry = self._from_upstream(code, record)
            else:
                entry = self._fallback(code)
            out[code] = self._store(entry)
        return out

    def remember_from_offers(self, offers: Iterable[Mapping[str, Any]]) -> int:
        '''
        Cache owner name/logo carried inside search results.

        Never replaces a fresh entry. Returns the number of entries written.
        '''
        written = 0
        for offer in offers:
            owner = offer.get('owner') if isinstance(offer, Mapping) else None
            if not isinstance(owner, Mapping):
                continue
            code = _normalize_code(owner.get('iata_code'))
            name = owner.get('name')
            if not code or not isinstance(name, str) or not name.strip():
                continue
            with self._lock:
                current = self._entries.get(code)
                if self._is_fresh(current, self._clock()) and current.source != AirlineSource.FALLBACK:
                    continue
                self._entries[code] = CachedAirline(
                    code=code,
                    name=name,
                    logo=_first_text(owner, 'logo_symbol_url') or airline_logo_url(code),
                    cached_at=self._clock(),
                    source=AirlineSource.SEARCH_RESULT,
                )
            written += 1
        return written

    def process_offers(self, offers: List[Mapping[str, Any]]) -> List[CachedAirline]:
        '''Make sure every carrier referenced by `offers` is cached.'''
        return self.get_airlines(sorted(extract_airline_codes_from_offers(offers)))

    def extract_airline_codes_from_offers(self, offers: Iterable[Mapping[str, Any]]) -> Set[str]:
        return extract_airline_codes_from_offers(offers)

    # ------------------------------
    # Maintenance / introspection
    # ------------------------------

    def cleanup_expired_entries(self) -> int:
        '''Remove expired entries and their idle lookup locks. Returns the number removed.'''
        now = self._clock()
        with self._lock:
            expired = [code for code, entry in self._entries.items() if not self._is_fresh(entry, now)]

        removed = 0
        for code in expired:
            with self._lock:
                entry = self._entries.get(code)
                # a concurrent refresh may have replaced it since the scan
                if entry is None or self._is_fresh(entry, now):
                    continue
                del self._entries[code]
                removed += 1
                lock = self._inflight.get(code)
                # a held lock belongs to a lookup in progress; it goes when that entry expires
                if lock is not None and not lock.locked():
                    del self._inflight[code]
        return removed

    def get_all_cached_airlines(self) -> List[CachedAirline]:
        '''All entries (expired ones included until the next sweep), by name.'''
        with self._lock:
            entries = list(self._entries.values())
        return sorted(entries, key=lambda a: (a.name.lower(), a.code))

    def get_cache_stats(self) -> dict:
        '''Get cache statistics.'''
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())

        by_source: Dict[str, int] = {}
        by_age: Dict[str, int] = {}
        expired = 0
        for entry in entries:
            by_source[entry.source.value] = by_source.get(entry.source.value, 0) + 1

            age_hours = entry.age_seconds(now) / HOUR
            if age_hours < 1:
                bucket = 'fresh'
            elif age_hours < 24:
                bucket = 'recent'
            elif age_hours < 168:
                bucket = 'week'
            else:
                bucket = 'old'
            by_age[bucket] = by_age.get(bucket, 0) + 1

            if not self._is_fresh(entry, now):
                expired += 1

        return {
            'total': len(entries),
            'expired': expired,
            'by_source': by_source,
            'by_age': by_age,
            'coverage': {
                'upstream': by_source.get(AirlineSource.UPSTREAM.value, 0),
                'bootstrap': by_source.get(AirlineSource.BOOTSTRAP.value, 0),
                'search_result': by_source.get(AirlineSource.SEARCH_RESULT.value, 0),
                'fallback': by_source.get(AirlineSource.FALLBACK.value, 0),
            },
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


_cache_instance: Optional[AirlineCache] = None
_instance_lock = threading.Lock()


def get_airline_cache() -> AirlineCache:
    '''Get or create the process-default cache (backed by a DuffelClient).'''
    global _cache_instance
    with _instance_lock:
        if _cache_instance is None:
            cfg = load_config()
            _cache_instance = AirlineCache(
                source=DuffelClient(),
                ttl_hours=cfg.airline_cache_ttl_hours,
                batch_size=cfg.airline_batch_size,
            )
        return _cache_instance
