import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from lumen.config import Settings
from lumen.error_handler import FunctionInvokeError, RateLimitError

logger = logging.getLogger(__name__)


class EdgeFunctionsClient:
    """Invokes the serverless functions that proxy the AI vendors."""

    def __init__(self, base_url: str, api_key: str = '', timeout: float = 60):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> 'EdgeFunctionsClient':
        return cls(settings.edge_functions_url, settings.supabase_key)

    def _headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['apikey'] = self.api_key
            headers['Authorization'] = f"Bearer {self.api_key}"
        return headers

    async def invoke(self, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/{name}"
        logger.info(f"Invoking function {name}")
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, json=body, headers=self._headers()) as response:
                    text = await response.text()
                    data = self._parse(text)
                    if response.status >= 300:
                        self._raise_for_error(name, response.status, data, text)
        except asyncio.TimeoutError:
            logger.error(f"Function {name} timed out after {self.timeout.total}s")
            raise FunctionInvokeError(
                f"Function invoke error: request timeout after {self.timeout.total}s",
                status_code=504
            )
        except aiohttp.ClientError as e:
            logger.error(f"Function {name} transport error: {str(e)}")
            raise FunctionInvokeError(f"Function invoke error: {str(e)}", status_code=502)

        if data.get('error'):
            raise FunctionInvokeError(f"Function invoke error: {data['error']}", status_code=500)
        return data

    @staticmethod
    def _parse(text: str) -> Dict[str, Any]:
        if not text:
            return {}
        try:
            data = json.loads(text)
        except ValueError:
            return {'error': text}
        return data if isinstance(data, dict) else {'data': data}

    @staticmethod
    def _raise_for_error(name: str, status: int, data: Dict[str, Any], text: str) -> None:
        error: Optional[str] = data.get('error') or text or 'Unknown error'
        details = data.get('details')
        if details:
            error = f"{error}: {details}"
        logger.error(f"Function {name} failed: {status} - {error}")
        if data.get('type') == 'rate_limit':
            raise RateLimitError(error, provider=name, retry_after=data.get('retryAfter'))
        raise FunctionInvokeError(
            f"{error} (Edge Function returned a non-2xx status code: {status})",
            status_code=status
        )
