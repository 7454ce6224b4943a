"""
freshness_probe.py
Cheap remote checks used to decide whether the local NVD cache is stale.
"""

import json
import logging
import re
from datetime import datetime
from typing import Dict, Optional

from nvdsync.utils.config import API_KEY_HEADER
from nvdsync.utils.errors import ProbeError, TransportError
from nvdsync.utils.http_client import HttpClient

logger = logging.getLogger(__name__)

TOTAL_RESULTS_PATTERN = re.compile(r'"totalResults"\s*:\s*(\d+)')


class RemoteFreshnessProbe:
    """Asks the NVD API when its data last changed and how many records it holds."""

    def __init__(self, client: HttpClient, api_url: str, probe_url: Optional[str] = None):
        self.client = client
        self.api_url = api_url
        self.probe_url = probe_url or api_url
        self.logger = logging.getLogger(__name__)

    def _headers(self, api_key: Optional[str]) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if api_key:
            headers[API_KEY_HEADER] = api_key
        return headers

    def remote_last_modified(self, api_key: Optional[str] = None) -> Optional[datetime]:
        """HEAD the probe URL and return its Last-Modified instant, if any."""
        try:
            response = self.client.head(self.probe_url, headers=self._headers(api_key))
        except TransportError as e:
            raise ProbeError(f"Last-modified probe failed: {e}", url=self.probe_url) from e

        if not response.ok:
            raise ProbeError(f"Last-modified probe returned HTTP {response.status_code}", url=self.probe_url)

        modified = response.last_modified
        if modified is None:
            self.logger.debug(f"No usable Last-Modified header from {self.probe_url}")
        return modified

    def remote_record_count(self, api_key: Optional[str] = None) -> Optional[int]:
        """Fetch a one-record page and return totalResults."""
        params = {"resultsPerPage": 1, "startIndex": 0}
        try:
            response = self.client.get(self.api_url, headers=self._headers(api_key), params=params)
        except TransportError as e:
            raise ProbeError(f"Record count probe failed: {e}", url=self.api_url) from e

        try:
            if not response.ok:
                raise ProbeError(f"Record count probe returned HTTP {response.status_code}", url=self.api_url)
            body = response.text
        finally:
            response.close()

        return self.parse_total_results(body)

    @staticmethod
    def parse_total_results(body: str) -> Optional[int]:
        """Extract totalResults from a JSON body, tolerating truncated payloads."""
        try:
            data = json.loads(body)
            if isinstance(data, dict) and isinstance(data.get("totalResults"), int):
                return data["totalResults"]
        except ValueError:
            pass

        match = TOTAL_RESULTS_PATTERN.search(body)
        if match:
            return int(match.group(1))
        logger.debug("No totalResults in record count response")
        return None
