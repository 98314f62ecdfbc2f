import logging
from typing import Optional

import httpx

from .errors import UploadError

logger = logging.getLogger(__name__)


class HttpUploader:
    """Client for the artifact upload endpoint.

    Posts a multipart form with ``file`` and ``folder`` fields and expects a
    JSON body carrying ``secure_url``.
    """

    def __init__(self, url: str, timeout: float = 15.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    def upload(self, content: bytes, content_type: str, folder: str, filename: str = "proof") -> str:
        files = {"file": (filename, content, content_type)}
        data = {"folder": folder}
        try:
            if self._client is not None:
                response = self._client.post(self.url, files=files, data=data)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.url, files=files, data=data)
            response.raise_for_status()
            result = response.json()
        except httpx.TimeoutException as e:
            logger.error("Upload to %s timed out after %ss", self.url, self.timeout)
            raise UploadError(f"Upload timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            logger.error("Upload failed: %s - %s", e.response.status_code, e.response.text)
            raise UploadError(f"Upload failed with status {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("Upload to %s failed: %s", self.url, e)
            raise UploadError(f"Upload failed: {e}") from e
        except ValueError as e:
            raise UploadError("Upload service returned a non-JSON response") from e

        secure_url = result.get("secure_url") if isinstance(result, dict) else None
        if not secure_url:
            raise UploadError("Upload service response has no secure_url")
        logger.info("Uploaded %d bytes to %s", len(content), folder)
        return secure_url
