"""
REST client resolving option contracts to feed instrument tokens.

The resolver maps (index, expiry, option type, strike) to the token used in
the feed's option topic names (NSE_FO|<token>).
"""

import asyncio
import logging
from typing import Dict, Optional

import aiohttp

from .models import OptionType

logger = logging.getLogger(__name__)


class TokenResolver:
    """HTTP client for the strike -> instrument token lookup service."""

    def __init__(
        self,
        expiry_dates: Dict[str, str],
        base_url: str = "https://api.trado.trade",
        timeout: float = 10.0,
        max_connections: int = 10,
    ):
        """
        Initialize the token resolver.

        Args:
            expiry_dates: Per-index expiry date sent with every lookup
            base_url: Base URL of the token service
            timeout: Total request timeout in seconds
            max_connections: Connection pool limit for the HTTP session
        """
        self.expiry_dates = {name.upper(): expiry for name, expiry in expiry_dates.items()}
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_connections = max_connections
        self._session: Optional[aiohttp.ClientSession] = None

        self.stats = {
            "requests": 0,
            "resolved": 0,
            "not_found": 0,
            "errors": 0,
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=self.max_connections)
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout
            )
        return self._session

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def resolve_token(
        self,
        index_name: str,
        strike: float,
        option_type: OptionType,
    ) -> Optional[str]:
        """
        Look up the feed token for one option contract.

        Args:
            index_name: Underlying index (e.g. NIFTY)
            strike: Strike price
            option_type: CALL or PUT

        Returns:
            Token string, or None if not found or the request failed
        """
        index_name = index_name.upper()
        expiry_date = self.expiry_dates.get(index_name)
        if not expiry_date:
            logger.warning(f"No expiry date configured for {index_name}, cannot resolve {strike} {option_type.value}")
            self.stats["not_found"] += 1
            return None

        params = {
            "index": index_name,
            "expiryDate": expiry_date,
            "optionType": option_type.query_value,
            "strikePrice": _format_strike(strike),
        }

        self.stats["requests"] += 1
        try:
            session = await self._get_session()
            async with session.get(f"{self.base_url}/token", params=params) as response:
                if response.status != 200:
                    logger.error(
                        f"Failed to fetch token for {index_name} {strike} {option_type.query_value}: "
                        f"{response.status} {response.reason}"
                    )
                    self.stats["errors"] += 1
                    return None
                data = await response.json(content_type=None)

        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Error fetching token for {index_name} {strike} {option_type.query_value}: {e}")
            self.stats["errors"] += 1
            return None

        token = None
        if isinstance(data, dict) and data.get("success") and isinstance(data.get("data"), dict):
            token = data["data"].get("token")

        if token is None or token == "":
            logger.warning(f"No token returned for {index_name} {strike} {option_type.query_value}")
            self.stats["not_found"] += 1
            return None

        self.stats["resolved"] += 1
        return str(token)

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)


def _format_strike(strike: float) -> str:
    """Render whole strikes without a trailing .0 (19950.0 -> 19950)."""
    if float(strike).is_integer():
        return str(int(strike))
    return str(strike)
