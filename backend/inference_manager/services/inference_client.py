from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from inference_manager.core.config import settings
from inference_manager.core.exceptions import InferenceError
from inference_manager.core.logging import get_logger

inference_logger = get_logger("inference")


class InferenceClient:
    """HTTP client for the model server, reached through the session's tunnel."""

    def __init__(
        self,
        local_port: int,
        host: str = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.base_url = f"http://{host or settings.TUNNEL_BIND_HOST}:{local_port}"
        self.timeout = timeout or settings.INFERENCE_REQUEST_TIMEOUT
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        )

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            inference_logger.warning(f"{method} {self.base_url}{path} timed out")
            raise InferenceError(f"Request to {path} timed out after {self.timeout}s")
        except httpx.HTTPError as exc:
            inference_logger.warning(f"{method} {self.base_url}{path} failed: {exc}")
            raise InferenceError(f"Inference server unreachable: {exc}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.is_error:
            message = payload.get("error") if isinstance(payload, dict) else None
            raise InferenceError(
                message or f"{path} failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        return payload if isinstance(payload, dict) else {"data": payload}

    async def health(self) -> Dict[str, Any]:
        return await self._request("GET", "/health")

    async def query(self, prompt: str, system_instruction: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"query": prompt}
        if system_instruction:
            body["system_instruction"] = system_instruction
        return await self._request("POST", "/query", json=body)

    async def list_files(self) -> List[Dict[str, Any]]:
        payload = await self._request("GET", "/list_files")
        return payload.get("files", [])

    async def upload_file(self, filename: str, content: bytes, content_type: str = None) -> Dict[str, Any]:
        files = {"file": (filename, content, content_type or "application/octet-stream")}
        return await self._request("POST", "/upload_file", files=files)

    async def delete_file(self, filename: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/delete_file/{quote(filename, safe='')}")
