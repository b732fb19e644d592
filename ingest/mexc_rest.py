import asyncio
import hmac
import hashlib
import json
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from config import config


class MexcAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"MEXC API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


def sign_request(api_key: str, api_secret: str, request_time: str, param_string: str) -> str:
    """HMAC-SHA256 over ``api_key + request_time + param_string``."""
    message = f"{api_key}{request_time}{param_string}"
    return hmac.new(
        api_secret.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


class MexcRESTClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        exchange_cfg = config.section("exchange")
        self.base_url = (base_url or exchange_cfg.get("rest_base_url") or "https://contract.mexc.com").rstrip("/")
        self.api_key: Optional[str] = api_key or exchange_cfg.get("api_key")
        self.api_secret: Optional[str] = api_secret or exchange_cfg.get("api_secret")
        self.timeout = float(timeout or exchange_cfg.get("request_timeout_s", 10))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def _auth_headers(self, param_string: str) -> Dict[str, str]:
        if not self.has_credentials:
            raise RuntimeError("MEXC API key/secret required for private request")
        request_time = str(int(time.time() * 1000))
        return {
            "ApiKey": self.api_key,
            "Request-Time": request_time,
            "Signature": sign_request(self.api_key, self.api_secret, request_time, param_string),
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        session = await self._get_session()
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        query = {k: v for k, v in (params or {}).items() if v is not None}
        data = json.dumps(body, separators=(",", ":")) if body is not None else None

        if signed:
            if method.upper() == "GET" or method.upper() == "DELETE":
                param_string = urlencode(sorted(query.items()))
            else:
                param_string = data or ""
            headers.update(self._auth_headers(param_string))

        url = f"{self.base_url}{path}"
        async with session.request(
            method.upper(),
            url,
            params=sorted(query.items()) or None,
            data=data,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as resp:
            text = await resp.text()
            try:
                payload: Any = json.loads(text) if text else None
            except ValueError:
                payload = text

            if resp.status >= 400:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("message") or payload.get("msg")
                raise MexcAPIError(resp.status, code, msg, text)

            return payload

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(
        self,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        # Private POST endpoints sign the exact JSON body
        return await self._request("POST", path, body=body or {}, signed=signed)
