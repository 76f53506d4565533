import asyncio
import base64
import hmac
import hashlib
import json
import time
from typing import Any, Dict, Mapping, Optional

import aiohttp


class TransportError(Exception):
    """An exchange call failed before a usable response came back."""


class BitfinexAPIError(TransportError):
    def __init__(self, status: int, msg: Optional[str], body: str):
        self.status = status
        self.msg = msg
        self.body = body
        text = f"Bitfinex API error (status={status}, msg={msg})"
        super().__init__(text)


class BitfinexRESTClient:
    def __init__(self, exchange_cfg: Mapping, timeout_s: float = 15):
        self.base_url = (exchange_cfg.get('rest_url') or "https://api.bitfinex.com").rstrip("/")
        self.api_key: Optional[str] = exchange_cfg.get('api_key') or None
        self.api_secret: Optional[str] = exchange_cfg.get('api_secret') or None
        self.timeout_s = timeout_s
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()
        self._last_nonce = 0

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

    def _nonce(self) -> str:
        # strictly increasing even when called twice within the same microsecond
        nonce = max(int(time.time() * 1_000_000), self._last_nonce + 1)
        self._last_nonce = nonce
        return str(nonce)

    def _signed_headers(self, path: str, params: Dict[str, Any]) -> Dict[str, str]:
        if not self.api_key or not self.api_secret:
            raise TransportError("Bitfinex API key/secret required for signed request")
        body = dict(params)
        body["request"] = path
        body["nonce"] = self._nonce()
        payload = base64.b64encode(json.dumps(body).encode("utf-8"))
        signature = hmac.new(
            self.api_secret.encode("utf-8"),
            payload,
            hashlib.sha384,
        ).hexdigest()
        return {
            "X-BFX-APIKEY": self.api_key,
            "X-BFX-PAYLOAD": payload.decode("utf-8"),
            "X-BFX-SIGNATURE": signature,
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        session = await self._get_session()
        params = dict(params or {})
        headers: Dict[str, str] = {}
        if signed:
            headers.update(self._signed_headers(path, params))

        url = f"{self.base_url}{path}"
        try:
            async with session.request(
                method.upper(),
                url,
                params=params if not signed and params else None,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{method.upper()} {path} failed: {exc}") from exc

        try:
            payload: Any = json.loads(text) if text else None
        except ValueError:
            payload = text

        if resp.status >= 400:
            msg = None
            if isinstance(payload, dict):
                msg = payload.get("message") or payload.get("error")
            raise BitfinexAPIError(resp.status, msg, text)
        return payload

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params=params)

    async def post(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> Any:
        # v1 authenticated endpoints carry their parameters in the signed payload header
        return await self._request("POST", path, params=params, signed=signed)
