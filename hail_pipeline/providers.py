#!/usr/bin/env python3
"""
Hail Report Providers
Ordered cascade of report sources: MRMS proxy feed, IEM MESH archive, static/replay data.
Each provider normalizes its own payload and filters to the requested bounds.
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Dict, Any, List, Optional, Sequence, Tuple, Union

import requests

from .config import NormalizationConfig
from .grid_align import GridBounds
from .report_ingest import HailReport, SourceProfile, load_raw_records, normalize_reports

logger = logging.getLogger(__name__)

USER_AGENT = 'HailFieldEngine/1.0'

# IEM MESH archive coverage starts October 2019
IEM_MIN_DATE = date(2019, 10, 1)

When = Optional[Union[date, datetime]]


class DataIngestionError(Exception):
    """Custom exception for data ingestion failures"""
    pass


def get_json_with_retry(url: str, params: Optional[Dict[str, Any]] = None,
                        timeout: int = 30, max_retries: int = 3,
                        description: str = "") -> Any:
    """
    GET a JSON document with automatic retry logic and exponential backoff

    Raises:
        DataIngestionError: if all retry attempts fail, on 403/404, or on invalid JSON
    """
    headers = {'User-Agent': USER_AGENT}
    for attempt in range(max_retries):
        try:
            logger.info(f"Fetching {description}: {url} (attempt {attempt + 1}/{max_retries})")
            response = requests.get(url, params=params, headers=headers, timeout=timeout)
            response.raise_for_status()
            try:
                return response.json()
            except ValueError as e:
                raise DataIngestionError(f"Invalid JSON from {url}: {e}")

        except requests.exceptions.Timeout:
            logger.warning(f"Timeout fetching {description} (attempt {attempt + 1})")
            if attempt == max_retries - 1:
                raise DataIngestionError(f"Timeout after {max_retries} attempts: {url}")
            time.sleep(2 ** attempt)  # Exponential backoff

        except requests.exceptions.ConnectionError:
            logger.warning(f"Connection error fetching {description} (attempt {attempt + 1})")
            if attempt == max_retries - 1:
                raise DataIngestionError(f"Connection error after {max_retries} attempts: {url}")
            time.sleep(2 ** attempt)

        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status in [404, 403]:
                # Don't retry for client errors
                raise DataIngestionError(f"HTTP {status} error: {url}")

            logger.warning(f"HTTP error fetching {description} (attempt {attempt + 1}): {e}")
            if attempt == max_retries - 1:
                raise DataIngestionError(f"HTTP error after {max_retries} attempts: {url}")
            time.sleep(2 ** attempt)

        except requests.exceptions.RequestException as e:
            logger.warning(f"Request failed for {description} (attempt {attempt + 1}): {e}")
            if attempt == max_retries - 1:
                raise DataIngestionError(f"Request failed after {max_retries} attempts: {e}")
            time.sleep(2 ** attempt)

    raise DataIngestionError(f"No attempts made for {url}")


def _date_str(when: When) -> Optional[str]:
    if when is None:
        return None
    if isinstance(when, datetime):
        when = when.astimezone(timezone.utc).date() if when.tzinfo else when.date()
    return when.isoformat()


def filter_to_bounds(reports: Sequence[HailReport], bounds: Optional[GridBounds]) -> List[HailReport]:
    if bounds is None:
        return list(reports)
    return [r for r in reports if bounds.contains(r.latitude, r.longitude)]


class ReportProvider(ABC):
    """A source of hail reports"""

    name: str = "provider"
    profile: SourceProfile = SourceProfile.MANUAL

    def __init__(self, normalization: Optional[NormalizationConfig] = None):
        self.normalization = normalization or NormalizationConfig()

    @abstractmethod
    def fetch_reports(self, bounds: Optional[GridBounds] = None, when: When = None) -> List[HailReport]:
        """Fetch, normalize and bounds-filter reports; raises DataIngestionError on failure"""

    def _normalize(self, payload: Any, bounds: Optional[GridBounds]) -> List[HailReport]:
        reports = normalize_reports(payload, self.profile, self.normalization)
        in_bounds = filter_to_bounds(reports, bounds)
        logger.info(f"✓ {self.name}: {len(in_bounds)} reports in bounds ({len(reports)} total)")
        return in_bounds


class ProxyFeedProvider(ReportProvider):
    """
    MRMS proxy server: GET {base}/api/mrms?type=realtime|historical|validation[&date=YYYY-MM-DD]
    Responses are cached in memory for `cache_ttl` seconds
    """

    PROFILES = {
        'realtime': SourceProfile.REALTIME,
        'historical': SourceProfile.HISTORICAL,
        'validation': SourceProfile.PROXY,
    }

    def __init__(self, base_url: str, report_type: str = 'realtime',
                 normalization: Optional[NormalizationConfig] = None,
                 timeout: int = 30, max_retries: int = 3, cache_ttl: float = 300.0):
        super().__init__(normalization)
        if report_type not in self.PROFILES:
            raise ValueError(f"Unknown proxy report type '{report_type}'")
        self.base_url = base_url.rstrip('/')
        self.report_type = report_type
        self.profile = self.PROFILES[report_type]
        self.name = f"MRMS proxy ({report_type})"
        self.timeout = timeout
        self.max_retries = max_retries
        self.cache_ttl = cache_ttl
        self._cache: Dict[Optional[str], Tuple[float, Any]] = {}

    def _payload(self, date_str: Optional[str]) -> Any:
        cached = self._cache.get(date_str)
        if cached and time.monotonic() - cached[0] < self.cache_ttl:
            logger.debug(f"{self.name}: using cached payload for {date_str or 'latest'}")
            return cached[1]

        params = {'type': self.report_type}
        if date_str:
            params['date'] = date_str
        payload = get_json_with_retry(f"{self.base_url}/api/mrms", params=params,
                                      timeout=self.timeout, max_retries=self.max_retries,
                                      description=self.name)
        self._cache[date_str] = (time.monotonic(), payload)
        return payload

    def fetch_reports(self, bounds: Optional[GridBounds] = None, when: When = None) -> List[HailReport]:
        payload = self._payload(_date_str(when))
        if not isinstance(payload, dict) or not isinstance(payload.get('reports'), list):
            raise DataIngestionError(f"{self.name}: response has no 'reports' list")
        return self._normalize(payload['reports'], bounds)


class IEMArchiveProvider(ReportProvider):
    """
    Daily MESH swaths from the IEM archive proxy: GET {base}/api/mesh/YYYY-MM-DD
    Accepts a {'reports': [...]} wrapper or a GeoJSON FeatureCollection of MESH polygons
    """

    name = "IEM archive"
    profile = SourceProfile.HISTORICAL

    def __init__(self, base_url: str, normalization: Optional[NormalizationConfig] = None,
                 timeout: int = 30, max_retries: int = 3):
        super().__init__(normalization)
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries

    def fetch_reports(self, bounds: Optional[GridBounds] = None, when: When = None) -> List[HailReport]:
        date_str = _date_str(when or datetime.now(timezone.utc))
        if date.fromisoformat(date_str) < IEM_MIN_DATE:
            logger.info(f"{self.name}: {date_str} predates archive coverage")
            return []

        payload = get_json_with_retry(f"{self.base_url}/api/mesh/{date_str}",
                                      timeout=self.timeout, max_retries=self.max_retries,
                                      description=f"{self.name} {date_str}")
        return self._normalize(payload, bounds)


class StaticReportProvider(ReportProvider):
    """In-memory records or a records file (fixtures, storm replays, demo data)"""

    def __init__(self, records: Union[str, Sequence[Dict[str, Any]]],
                 profile: SourceProfile = SourceProfile.MANUAL, name: str = "static",
                 normalization: Optional[NormalizationConfig] = None):
        super().__init__(normalization)
        self.records = records
        self.profile = profile
        self.name = name

    def fetch_reports(self, bounds: Optional[GridBounds] = None, when: When = None) -> List[HailReport]:
        records = self.records
        if isinstance(records, str):
            try:
                records = load_raw_records(records)
            except (OSError, ValueError) as e:
                raise DataIngestionError(f"{self.name}: failed to load {records}: {e}")
        return self._normalize(list(records), bounds)


class ProviderChain:
    """
    Try providers in order; the first non-empty result wins
    Failing or empty providers are logged and skipped
    """

    def __init__(self, providers: Sequence[ReportProvider]):
        self.providers = list(providers)
        self.last_source: Optional[str] = None
        self.errors: List[str] = []

    def fetch_reports(self, bounds: Optional[GridBounds] = None, when: When = None) -> List[HailReport]:
        self.last_source = None
        self.errors = []

        for provider in self.providers:
            try:
                reports = provider.fetch_reports(bounds, when)
            except DataIngestionError as e:
                logger.warning(f"{provider.name} failed: {e}")
                self.errors.append(f"{provider.name}: {e}")
                continue

            if reports:
                self.last_source = provider.name
                logger.info(f"Using {len(reports)} reports from {provider.name}")
                return reports
            logger.info(f"{provider.name} returned no reports, trying next source")

        logger.warning(f"All {len(self.providers)} report providers failed or were empty")
        return []


def build_default_chain(proxy_url: Optional[str] = None, iem_url: Optional[str] = None,
                        normalization: Optional[NormalizationConfig] = None,
                        timeout: int = 30, max_retries: int = 3,
                        when: When = None) -> ProviderChain:
    """
    Realtime proxy (today only), then historical proxy, then the IEM archive
    Sources without a configured URL are left out
    """
    providers: List[ReportProvider] = []
    is_today = when is None or _date_str(when) == _date_str(datetime.now(timezone.utc))

    if proxy_url:
        if is_today:
            providers.append(ProxyFeedProvider(proxy_url, 'realtime', normalization, timeout, max_retries))
        providers.append(ProxyFeedProvider(proxy_url, 'historical', normalization, timeout, max_retries))
    if iem_url:
        providers.append(IEMArchiveProvider(iem_url, normalization, timeout, max_retries))

    return ProviderChain(providers)
