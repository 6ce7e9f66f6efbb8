"""Data API client for the leader's public account activity."""

import asyncio
import logging
from decimal import Decimal
from typing import Optional

import aiohttp
import orjson

from copytrade_common.errors import CopyTradeError, UpstreamRateLimited, UpstreamUnavailable
from copytrade_common.util import to_decimal

from .types import ClosedPosition, LeaderActivity, LeaderMovement

logger = logging.getLogger(__name__)


class DataApiClient:
    """
    Client for the public data API.

    Used to read the leader's position value, recent trades and
    closed positions. Read-only, no authentication.
    """

    def __init__(
        self,
        base_url: str = "https://data-api.polymarket.com",
        timeout_seconds: float = 15.0,
        trades_limit: int = 20,
        closed_positions_limit: int = 50,
    ):
        """
        Initialize the client.

        Args:
            base_url: Data API base URL
            timeout_seconds: Total timeout per request
            trades_limit: Recent trades fetched per poll
            closed_positions_limit: Closed positions fetched per poll
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.trades_limit = trades_limit
        self.closed_positions_limit = closed_positions_limit
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _get_json(self, path: str, params: dict):
        """
        GET a JSON document.

        Raises:
            UpstreamRateLimited: On HTTP 429
            UpstreamUnavailable: On any other failure
        """
        url = f"{self.base_url}{path}"
        try:
            session = await self._get_session()
            async with session.get(url, params=params) as resp:
                if resp.status == 429:
                    raise UpstreamRateLimited(f"{path} rate limited (429)")
                if resp.status != 200:
                    raise UpstreamUnavailable(f"{path} returned {resp.status}")
                return orjson.loads(await resp.read())
        except CopyTradeError:
            raise
        except asyncio.TimeoutError:
            raise UpstreamUnavailable(f"{path} timed out")
        except (aiohttp.ClientError, orjson.JSONDecodeError) as e:
            raise UpstreamUnavailable(f"{path} failed: {e}")

    async def positions_value(self, user: str) -> Decimal:
        """Total current value of the user's open positions."""
        data = await self._get_json("/value", {"user": user})
        entry = data[0] if isinstance(data, list) and data else data
        if not isinstance(entry, dict) or "value" not in entry:
            raise UpstreamUnavailable("/value returned no value")
        return to_decimal(entry["value"], "value")

    async def trades(self, user: str) -> list[LeaderMovement]:
        """Most recent trades of the user, newest first as the API returns them."""
        data = await self._get_json("/trades", {"user": user, "limit": self.trades_limit})
        movements = []
        for trade in data if isinstance(data, list) else []:
            try:
                movements.append(LeaderMovement.from_trade(trade))
            except CopyTradeError as e:
                logger.warning(f"Ignoring malformed trade: {e}")
        return movements

    async def closed_positions(self, user: str) -> list[ClosedPosition]:
        """Recently closed positions of the user."""
        data = await self._get_json(
            "/closed-positions", {"user": user, "limit": self.closed_positions_limit}
        )
        positions = []
        for item in data if isinstance(data, list) else []:
            try:
                positions.append(ClosedPosition.from_dict(item))
            except CopyTradeError as e:
                logger.warning(f"Ignoring malformed closed position: {e}")
        return positions

    async def fetch_activity(self, leader_address: str) -> LeaderActivity:
        """
        Fetch one poll's worth of leader activity.

        Closed positions are best effort: a failure there is logged and
        yields an empty list. Value and trades failures propagate.
        """
        positions_value = await self.positions_value(leader_address)

        try:
            closed = await self.closed_positions(leader_address)
        except UpstreamRateLimited:
            raise
        except UpstreamUnavailable as e:
            logger.warning(f"Closed positions unavailable: {e}")
            closed = []

        trades = await self.trades(leader_address)

        return LeaderActivity(
            positions_value=positions_value,
            movements=tuple(trades),
            closed_positions=tuple(closed),
        )
