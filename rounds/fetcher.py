"""
Download level images for the round coordinator.
"""

import requests

from config import DOWNLOAD_TIMEOUT


def fetch_image_bytes(url: str, timeout: float = DOWNLOAD_TIMEOUT) -> bytes:
    """GET ``url`` and return the body.  Raises requests.RequestException on failure."""
    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    return resp.content
