"""
Minimal Kraken.io API client.

Only the calls the optimizer needs: synchronous file upload, account
status and download of the optimized result.
"""

import json
import logging
import os
from typing import Any, Dict

import requests

API_BASE_URL = "https://api.kraken.io"
USER_AGENT = "wp-kraken"


class KrakenError(Exception):
    """The Kraken API returned something we cannot use."""


class KrakenConnectionError(KrakenError):
    """The Kraken API could not be reached."""


class KrakenClient:
    """Kraken.io API client"""

    def __init__(self, api_key: str, api_secret: str, timeout: int = 300,
                 base_url: str = API_BASE_URL, session: requests.Session = None,
                 logger: logging.Logger = None):
        self.auth = {'api_key': api_key, 'api_secret': api_secret}
        self.timeout = timeout
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': USER_AGENT})
        self.logger = logger or logging.getLogger(__name__)

    def _decode(self, response: requests.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise KrakenError(f"Unable to parse JSON response (HTTP {response.status_code})") from e

        if not isinstance(data, dict):
            raise KrakenError(f"Unexpected response from Kraken API: {data!r}")
        return data

    def upload(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Upload a local file with optimization options.

        ``params['file']`` is the local path; every other key is sent as
        an API option. Returns the decoded response, whose ``success`` key
        tells whether the file was optimized.
        """
        params = dict(params)
        path = params.pop('file')
        params['auth'] = self.auth

        url = f"{self.base_url}/v1/upload"
        self.logger.debug(f"Uploading {path} to {url}")

        try:
            with open(path, 'rb') as image:
                response = self.session.post(
                    url,
                    data={'data': json.dumps(params)},
                    files={'upload': (os.path.basename(path), image)},
                    timeout=self.timeout
                )
        except requests.exceptions.RequestException as e:
            raise KrakenConnectionError(f"Upload of {path} failed: {e}") from e

        return self._decode(response)

    def user_status(self) -> Dict[str, Any]:
        """Account quota details"""
        try:
            response = self.session.post(
                f"{self.base_url}/user_status",
                json={'auth': self.auth},
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise KrakenConnectionError(str(e)) from e

        return self._decode(response)

    def download(self, url: str) -> bytes:
        """Fetch the optimized file from the URL Kraken returned."""
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise KrakenConnectionError(f"Download of {url} failed: {e}") from e

        return response.content
