"""Files.vc API client"""
from pathlib import Path
from typing import Optional
import logging

import httpx

from permavid.config import settings
from permavid.services.filemoon import ProviderError, parse_api_response

logger = logging.getLogger(__name__)


class FilesVcClient:
    def __init__(
        self,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        upload_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or settings.files_vc_api_base).rstrip("/")
        self.upload_timeout = upload_timeout if upload_timeout is not None else settings.upload_timeout_seconds
        self._transport = transport

    async def upload_file(self, path: Path, filename: str) -> str:
        """Upload a local file and return the public URL Files.vc assigns it."""
        try:
            async with httpx.AsyncClient(timeout=self.upload_timeout, transport=self._transport) as client:
                with open(path, "rb") as fh:
                    response = await client.post(
                        f"{self.base_url}/upload",
                        data={"key": self.api_key},
                        files={"file": (filename, fh, "application/octet-stream")},
                    )
        except httpx.HTTPError as e:
            raise ProviderError(f"Files.vc request failed: {e}") from e
        except OSError as e:
            raise ProviderError(f"Failed to read file {path}: {e}") from e

        body = parse_api_response(response, "Files.vc")
        result = body.get("result")
        if not isinstance(result, dict) or not result.get("url"):
            raise ProviderError(f"Files.vc API Error (Status {body.get('status')}): no result in response")
        logger.info(f"Files.vc upload successful: {result['url']}")
        return str(result["url"])
