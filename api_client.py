# Package: market data REST clients
import aiohttp
import json
import logging
from typing import Any, Optional
from urllib.parse import quote

logger = logging.getLogger(__name__)


class ApiException(Exception):
    """Raised when an API response has a non-200 status or an error payload."""
    def __init__(self, status: int, code: Optional[Any], message: str):
        super().__init__(f"API Request Error(status={status}, code={code}): {message}")
        self.status = status
        self.code = code
        self.message = message


class RequestException(Exception):
    """Raised for client-side request errors."""
    pass


def parse_params_to_string(params: dict[str, Any]) -> str:
    """URL-encode GET parameters into a query string."""
    if not params:
        return ""
    parts = []
    for k, v in params.items():
        if v is not None:
            if isinstance(v, bool):
                v = str(v).lower()
            parts.append(f"{k}={quote(str(v))}")
    return "?" + "&".join(parts)


class AsyncRestClient:
    """Asynchronous JSON-over-HTTP client with an optional injected session."""
    def __init__(
        self,
        base_api: str,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._base_url = base_api.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def open(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _get(self, path: str, params: Optional[dict] = None) -> Any:
        if not self._session:
            raise RequestException("Session not initialized. Use 'async with' or open().")

        url = self._base_url + path + parse_params_to_string(params or {})
        async with self._session.get(url) as resp:
            text = await resp.text()
            if resp.status != 200:
                raise ApiException(resp.status, None, text)
            try:
                return json.loads(text)
            except json.JSONDecodeError as e:
                raise ApiException(resp.status, None, f"Invalid JSON: {e}")


class BinanceAPI(AsyncRestClient):
    """Public spot ticker endpoints."""

    def __init__(self, base_api: str = "https://api.binance.com", **kwargs):
        super().__init__(base_api, **kwargs)

    async def get_ticker_price(self, symbol: str) -> dict:
        """
        Latest price for a symbol
        GET /api/v3/ticker/price
        """
        return await self._get("/api/v3/ticker/price", {"symbol": symbol})


class CoinGeckoAPI(AsyncRestClient):
    """Public simple price endpoint."""

    def __init__(self, base_api: str = "https://api.coingecko.com", **kwargs):
        super().__init__(base_api, **kwargs)

    async def get_simple_price(self, ids: str, vs_currencies: str = "usd") -> dict:
        """
        GET /api/v3/simple/price
        """
        return await self._get("/api/v3/simple/price", {"ids": ids, "vs_currencies": vs_currencies})


class DeribitAPI(AsyncRestClient):
    """Public Deribit JSON-RPC over HTTP endpoints."""

    MAINNET = "https://www.deribit.com/api/v2"
    TESTNET = "https://test.deribit.com/api/v2"

    def __init__(self, testnet: bool = False, **kwargs):
        super().__init__(self.TESTNET if testnet else self.MAINNET, **kwargs)

    async def get_instruments(self, currency: str, kind: str = "option",
                              expired: bool = False) -> list:
        """
        List instruments for a currency
        GET /public/get_instruments
        """
        data = await self._get(
            "/public/get_instruments",
            {"currency": currency, "kind": kind, "expired": expired}
        )
        if "result" not in data:
            raise ApiException(200, data.get("error", {}).get("code"),
                               f"get_instruments failed: {data.get('error')}")
        return data["result"]
