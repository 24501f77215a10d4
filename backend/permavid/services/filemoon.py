"""Filemoon API client"""
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

import httpx

from permavid.config import settings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A hosting provider request failed (transport, HTTP, body or API status)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def parse_api_response(response: httpx.Response, label: str) -> Dict[str, Any]:
    """
    Decode a provider JSON body and check both the HTTP status and the API's
    own `status` field (the providers answer HTTP 200 with status 4xx in the body).
    """
    try:
        body = response.json()
    except ValueError as e:
        raise ProviderError(
            f"Failed to parse {label} response (HTTP {response.status_code}): {e}. Raw Body: {response.text[:500]}",
            status_code=response.status_code,
        ) from e
    if not isinstance(body, dict):
        raise ProviderError(
            f"Unexpected {label} response (HTTP {response.status_code}): {response.text[:500]}",
            status_code=response.status_code,
        )
    api_status = body.get("status")
    if not response.is_success or api_status != 200:
        raise ProviderError(
            f"{label} API Error (Status {api_status if api_status is not None else response.status_code}): {body.get('msg', '')}",
            status_code=response.status_code,
        )
    return body


class FilemoonClient:
    """Thin async wrapper over the Filemoon HTTP API"""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        upload_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or settings.filemoon_api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self.upload_timeout = upload_timeout if upload_timeout is not None else settings.upload_timeout_seconds
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _get(self, path: str, label: str, params: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with self._client(self.timeout) as client:
                response = await client.get(f"{self.base_url}{path}", params=params)
        except httpx.HTTPError as e:
            raise ProviderError(f"{label} request failed: {e}") from e
        return parse_api_response(response, label)

    async def get_upload_server(self) -> str:
        body = await self._get("/upload/server", "Filemoon GetServer", {"key": self.api_key})
        server = body.get("result")
        if not isinstance(server, str) or not server:
            raise ProviderError(f"Filemoon GetServer returned no upload URL: {body}")
        logger.info(f"Got Filemoon upload server: {server}")
        return server

    async def upload_file(self, path: Path, filename: str) -> str:
        """Upload a local file and return its Filemoon file code."""
        server = await self.get_upload_server()
        try:
            async with self._client(self.upload_timeout) as client:
                with open(path, "rb") as fh:
                    response = await client.post(
                        server,
                        data={"key": self.api_key},
                        files={"file": (filename, fh, "application/octet-stream")},
                    )
        except httpx.HTTPError as e:
            raise ProviderError(f"Filemoon Upload request failed: {e}") from e
        except OSError as e:
            raise ProviderError(f"Failed to read file {path}: {e}") from e

        body = parse_api_response(response, "Filemoon Upload")
        files = body.get("files")
        if not isinstance(files, list) or not files or not isinstance(files[0], dict) or not files[0].get("filecode"):
            raise ProviderError(f"Filemoon Upload API Error (Status {body.get('status')}): no file code in {body}")
        return str(files[0]["filecode"])

    async def file_info(self, file_code: str) -> List[Dict[str, Any]]:
        body = await self._get(
            "/file/info", "Filemoon FileInfo", {"key": self.api_key, "file_code": file_code}
        )
        result = body.get("result")
        if not isinstance(result, list):
            raise ProviderError(f"Filemoon FileInfo returned no result list for {file_code}")
        return [r for r in result if isinstance(r, dict)]

    async def encoding_status(self, file_code: str) -> Dict[str, Any]:
        body = await self._get(
            "/encoding/status", "Filemoon Status", {"key": self.api_key, "file_code": file_code}
        )
        result = body.get("result")
        if not isinstance(result, dict) or not result.get("status"):
            raise ProviderError(f"Filemoon status check returned no result data for {file_code}")
        return result

    async def restart_encoding(self, file_code: str) -> Dict[str, Any]:
        try:
            async with self._client(self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/upload/restart",
                    data={"key": self.api_key, "file_code": file_code},
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"Filemoon Restart request failed: {e}") from e
        return parse_api_response(response, "Filemoon Restart")
