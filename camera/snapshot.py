# =============================================================================
# Art Docent - Camera Snapshot Client
# =============================================================================
# Provides the SnapshotClient class that pulls still frames from a network
# camera (e.g. an ESP32-CAM access point) over HTTP.  The camera exposes:
#   GET /snapshot -> a JPEG frame
#   GET /status   -> 200 when the camera is up
# =============================================================================

import logging
import time

import requests
from PIL import Image

from recognition.preprocess import decode_image

logger = logging.getLogger(__name__)


class SnapshotClient:
    """
    HTTP client for capturing frames from a network camera.

    Args:
        base_url: Base URL of the camera (e.g., "http://192.168.4.1:80").
        timeout:  Per-request timeout in seconds.
    """

    def __init__(self, base_url: str, timeout: float = 10.0):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = requests.Session()

    def fetch_snapshot(self, max_retries: int = 3) -> Image.Image:
        """
        Capture one frame.

        Retries on network failure with exponential backoff.

        Args:
            max_retries: Maximum number of attempts.

        Returns:
            PIL.Image.Image: The decoded frame.

        Raises:
            requests.exceptions.RequestException: After all retries exhausted.
            InvalidImage: If the camera returned bytes that are not an image.
        """
        url = f"{self._base_url}/snapshot"
        last_exception = None

        for attempt in range(1, max_retries + 1):
            try:
                response = self._session.get(url, timeout=self._timeout)
                response.raise_for_status()
                image = decode_image(response.content)
                logger.info(
                    "Snapshot captured: %dx%d (attempt %d, %d KB)",
                    image.width, image.height, attempt, len(response.content) // 1024,
                )
                return image

            except requests.exceptions.RequestException as exc:
                last_exception = exc
                wait_time = 2 ** (attempt - 1)
                logger.warning(
                    "Snapshot failed (attempt %d/%d): %s - retrying in %ds",
                    attempt, max_retries, exc, wait_time,
                )
                if attempt < max_retries:
                    time.sleep(wait_time)

        logger.error("All %d snapshot attempts failed", max_retries)
        raise last_exception

    def is_online(self) -> bool:
        """Return True if the camera's /status endpoint answers 200."""
        try:
            response = self._session.get(f"{self._base_url}/status", timeout=3)
        except requests.exceptions.RequestException:
            logger.debug("Camera status check failed", exc_info=True)
            return False
        return response.status_code == 200

    def close(self) -> None:
        self._session.close()
