"""Client for the upstream events calendar REST API."""
import logging
import time
from typing import Any, Dict, Iterator, Optional

import requests

from processor.errors import TransportError
from processor.models import ApiPage, DateRange

logger = logging.getLogger(__name__)


class EventsCalendarApiClient:
    """Client for the paginated events feed."""

    BASE_URL = "https://www.chq.org/wp-json/tribe/events/v1"
    USER_AGENT = "Season-Calendar-Sync/1.0"
    MAX_RETRIES = 3
    BASE_DELAY = 1  # seconds

    def __init__(self, base_url: Optional[str] = None, timeout: int = 30, per_page: int = 50):
        """
        Initialize the API client.

        Args:
            base_url: API root (default: BASE_URL)
            timeout: HTTP request timeout in seconds (default: 30)
            per_page: Default page size (default: 50)
        """
        self.base_url = (base_url or self.BASE_URL).rstrip('/')
        self.timeout = timeout
        self.per_page = per_page
        self.session = requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'User-Agent': self.USER_AGENT
        })

    def fetch_page(
        self,
        date_range: DateRange,
        page: int = 1,
        per_page: Optional[int] = None
    ) -> ApiPage:
        """
        Fetch a single page of events for a date range.

        Raises:
            TransportError: If the request fails after all retries
        """
        params = {
            'start_date': date_range.start.isoformat(),
            'end_date': date_range.end.isoformat(),
            'per_page': per_page or self.per_page,
            'page': page
        }
        payload = self._get_json(f"{self.base_url}/events", params=params)
        return self._to_page(payload, page)

    def iter_pages(self, date_range: DateRange, per_page: Optional[int] = None) -> Iterator[ApiPage]:
        """
        Iterate over all pages of events in a date range, in fetch order.

        Follows ``next_rest_url`` when the API provides one, otherwise
        increments the page number until ``total_pages`` is reached. Stops
        early on an empty page.

        Raises:
            TransportError: If any page cannot be fetched
        """
        logger.info(f"Fetching events from {date_range.start} to {date_range.end}")
        page_number = 1
        current = self.fetch_page(date_range, page=page_number, per_page=per_page)
        seen_urls = set()

        while True:
            logger.info(
                f"Page {current.page}/{current.total_pages}: {len(current.events)} events "
                f"(total: {current.total})"
            )
            if not current.events:
                return
            yield current

            next_url = current.next_rest_url
            page_number += 1
            if next_url:
                if next_url in seen_urls:
                    logger.warning(f"Pagination loop detected at {next_url}, stopping")
                    return
                seen_urls.add(next_url)
                current = self._to_page(self._get_json(next_url), page_number)
            elif page_number <= current.total_pages:
                current = self.fetch_page(date_range, page=page_number, per_page=per_page)
            else:
                return

    def health_check(self) -> Dict[str, Any]:
        """Check the API answers a one-event request."""
        try:
            self._get_json(f"{self.base_url}/events", params={'per_page': 1}, retries=1)
            return {'healthy': True, 'message': 'API healthy'}
        except TransportError as e:
            return {'healthy': False, 'message': f"API health check failed: {e}"}

    def _get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        retries: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        GET a JSON document with retry logic.

        Raises:
            TransportError: If all retry attempts fail or the body is not JSON
        """
        max_retries = retries or self.MAX_RETRIES

        for attempt in range(max_retries):
            try:
                logger.debug(f"GET {url} (attempt {attempt + 1}/{max_retries})")
                response = self.session.get(url, params=params, timeout=self.timeout)
                response.raise_for_status()
                break

            except requests.RequestException as e:
                if attempt < max_retries - 1:
                    # Exponential backoff
                    delay = self.BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {max_retries} retry attempts failed. Last error: {e}"
                    )
                    raise TransportError(f"Failed to fetch {url}: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {url}: {e}") from e
        if not isinstance(payload, dict):
            raise TransportError(f"Unexpected response shape from {url}")
        return payload

    def _to_page(self, payload: Dict[str, Any], page: int) -> ApiPage:
        events = payload.get('events') or []
        if not isinstance(events, list):
            raise TransportError(f"Unexpected 'events' value on page {page}")
        try:
            total = int(payload.get('total') or len(events))
            total_pages = int(payload.get('total_pages') or 1)
        except (TypeError, ValueError) as e:
            raise TransportError(f"Invalid paging totals on page {page}: {e}") from e
        return ApiPage(
            page=page,
            events=events,
            total=total,
            total_pages=total_pages,
            next_rest_url=payload.get('next_rest_url') or None
        )
