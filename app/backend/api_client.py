"""HTTP client for the segmentation backend.

Any object with a ``post(path, files=..., data=...)`` method returning a
response with ``.json()`` can be handed to the uploader. :class:`ApiClient`
is the stock implementation on top of a ``requests`` session.
"""

# project_root/app/backend/api_client.py
import logging
from typing import Any, Dict, Optional

import requests

import config

logger = logging.getLogger(__name__)


class ApiClient:
    def __init__(
        self,
        base_url: str = config.API_BASE_URL,
        timeout: float = config.UPLOAD_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def post(
        self,
        path: str,
        files: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        """POST a multipart body; raises ``requests.HTTPError`` on non-2xx."""
        url = self.url_for(path)
        logger.debug("POST %s", url)
        response = self.session.post(url, files=files, data=data, timeout=self.timeout)
        response.raise_for_status()
        return response

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
