"""
MTF Sentinel Trader - Lemonn Broker Client
Async REST client for token issuance, margin quotes, MTF orders and market data.

Failure handling:
- Every request carries a client-side timeout; a timeout is a failure, never success.
- HTTP 200 responses are still checked: `status != "success"` is a business failure.
- Expired tokens trigger a forced refresh and retry, a bounded number of times.
- Transient failures (network, timeouts, rate limits, 5xx) are retried with backoff.
- Business rejections (insufficient funds, invalid symbol, ...) are never retried.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta, time as dt_time
from enum import Enum
from typing import Optional, List, Dict, Any

import httpx
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from config import Config
from models.market import Candle
from models.trades import OrderResult, OrderSide
from utils.retry import retry_async

logger = logging.getLogger(__name__)

IST = timezone(timedelta(hours=5, minutes=30))
MARKET_OPEN = dt_time(9, 15)
MARKET_CLOSE = dt_time(15, 30)

EXCHANGE = "NSE"
SYSTEM_USER_ID = "SYSTEM"

TOKEN_PATH = "/api-trading/api/v1/generate_access_token"
MARGIN_PATH = "/api-trading/api/v2/margin-info"
ORDERS_PATH = "/api-trading/api/v2/orders"
LTP_PATH = "/api-trading/api/v2/market-data/ltp"
HISTORICAL_CHART_PATH = "/api-trading/api/v2/market-data/historical-chart"
CHART_PATH = "/api-trading/api/v2/market-data/chart"

AUTH_ERROR_CODES = {"AUTHENTICATION_ERROR", "INVALID_TOKEN", "TOKEN_EXPIRED"}
AUTH_ERROR_MESSAGES = ("access token validation failed", "token expired")
RETRYABLE_ERROR_CODES = {"RATE_LIMIT_EXCEEDED", "INTERNAL_ERROR", "NETWORK_ERROR", "TIMEOUT_ERROR"}
REJECTED_ORDER_STATUSES = {"REJECTED", "CANCELLED", "FAILED"}


# =============================================================================
# ERRORS
# =============================================================================

class BrokerError(Exception):
    """Base class for broker failures."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.payload = payload or {}


class BrokerTransientError(BrokerError):
    """Network trouble, timeouts, rate limits and server errors. Safe to retry reads."""

    def __init__(self, *args, request_sent: bool = True, **kwargs):
        super().__init__(*args, **kwargs)
        # False only when the request never reached the broker
        self.request_sent = request_sent


class BrokerAuthError(BrokerError):
    """Access token missing, expired or rejected."""


class BrokerRejection(BrokerError):
    """Business failure reported by the broker. Never retried."""


# =============================================================================
# MARKET SESSION
# =============================================================================

class MarketSession(Enum):
    OPEN = "OPEN"
    PRE_MARKET = "PRE_MARKET"
    POST_MARKET = "POST_MARKET"
    WEEKEND = "WEEKEND"


def market_status(now: Optional[datetime] = None) -> MarketSession:
    """NSE cash session (09:15-15:30 IST, Monday-Friday). Exchange holidays are not modelled."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(IST)

    if local.weekday() >= 5:
        return MarketSession.WEEKEND
    if local.time() < MARKET_OPEN:
        return MarketSession.PRE_MARKET
    if local.time() >= MARKET_CLOSE:
        return MarketSession.POST_MARKET
    return MarketSession.OPEN


def is_market_open(now: Optional[datetime] = None) -> bool:
    return market_status(now) == MarketSession.OPEN


# =============================================================================
# CREDENTIALS AND TOKENS
# =============================================================================

@dataclass
class BrokerCredentials:
    """API key pair for one broker account."""
    user_id: str
    client_id: str
    api_key: str
    private_key: str  # 32-byte Ed25519 seed, hex encoded

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BrokerCredentials":
        return cls(
            user_id=data["user_id"],
            client_id=data["client_id"],
            api_key=data["api_key"],
            private_key=data["private_key"],
        )

    @classmethod
    def from_config(cls) -> "BrokerCredentials":
        """The market data account configured in the environment."""
        return cls(
            user_id=SYSTEM_USER_ID,
            client_id=Config.LEMON_CLIENT_ID,
            api_key=Config.LEMON_API_KEY,
            private_key=Config.LEMON_PRIVATE_KEY,
        )


@dataclass
class AccessToken:
    token: str
    expires_at: datetime

    def is_valid(self, now: Optional[datetime] = None, margin_minutes: int = Config.TOKEN_REFRESH_MARGIN_MINUTES) -> bool:
        """Tokens are treated as expired a few minutes early."""
        now = now or datetime.now(timezone.utc)
        return bool(self.token) and self.expires_at - timedelta(minutes=margin_minutes) > now


def _parse_expiry(value: Any) -> datetime:
    """Broker expiry timestamp, defaulting to 24 hours from now when absent or unparseable."""
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            logger.warning(f"Unparseable token expiry {value!r}, assuming 24h")
    if isinstance(value, (int, float)) and value > 0:
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    return datetime.now(timezone.utc) + timedelta(hours=24)


def sign_request(client_id: str, private_key_hex: str, epoch_ms: str) -> str:
    """Hex Ed25519 signature over client_id + epoch_ms."""
    try:
        seed = bytes.fromhex(private_key_hex.strip())
    except ValueError as e:
        raise BrokerAuthError("Private key is not valid hex") from e
    if len(seed) != 32:
        raise BrokerAuthError(f"Invalid private key length: expected 32 bytes, got {len(seed)}")

    key = Ed25519PrivateKey.from_private_bytes(seed)
    return key.sign(f"{client_id}{epoch_ms}".encode("utf-8")).hex()


def _history_interval(days: int) -> str:
    if days <= 365:
        return "1Y"
    if days <= 3 * 365:
        return "3Y"
    return "5Y"


# =============================================================================
# CLIENT
# =============================================================================

class LemonBrokerClient:
    """
    Async client for the Lemonn trading API.

    Credentials for a user come from the injected store (anything with
    get_api_credentials / save_access_token); market data calls use the
    configured system account.
    """

    def __init__(
        self,
        credential_store=None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        auth_retries: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        system_credentials: Optional[BrokerCredentials] = None,
        sleep=asyncio.sleep,
    ):
        self.credential_store = credential_store
        self.base_url = (base_url or Config.LEMON_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else Config.BROKER_TIMEOUT_SECONDS
        self.auth_retries = auth_retries if auth_retries is not None else Config.BROKER_AUTH_RETRIES
        self.retry_attempts = retry_attempts if retry_attempts is not None else Config.BROKER_ORDER_RETRIES
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else Config.BROKER_RETRY_BASE_DELAY
        )
        self._transport = transport
        self._sleep = sleep
        self.system_credentials = system_credentials or BrokerCredentials.from_config()
        self._tokens: Dict[str, AccessToken] = {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    # =========================================================================
    # LOW LEVEL
    # =========================================================================

    @staticmethod
    def _is_auth_failure(status_code: int, payload: Dict[str, Any]) -> bool:
        if status_code in (401, 403):
            return True
        code = str(payload.get("error_code") or "").upper()
        message = str(payload.get("message") or payload.get("error") or "").lower()
        return code in AUTH_ERROR_CODES or any(m in message for m in AUTH_ERROR_MESSAGES)

    async def _post(self, path: str, body: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        """POST and classify the outcome. Returns the payload only when status == success."""
        try:
            async with self._client() as client:
                response = await client.post(path, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise BrokerTransientError(
                f"Timeout after {self.timeout}s calling {path}", error_code="TIMEOUT_ERROR",
                request_sent=not isinstance(e, httpx.ConnectTimeout),
            ) from e
        except httpx.ConnectError as e:
            raise BrokerTransientError(
                f"Could not connect to broker for {path}: {e}", error_code="NETWORK_ERROR",
                request_sent=False,
            ) from e
        except httpx.HTTPError as e:
            raise BrokerTransientError(f"Network error calling {path}: {e}", error_code="NETWORK_ERROR") from e

        status_code = response.status_code
        try:
            payload = response.json()
        except ValueError as e:
            raise BrokerTransientError(
                f"Invalid JSON from {path} (HTTP {status_code})",
                error_code="INVALID_RESPONSE",
                status_code=status_code,
            ) from e
        if not isinstance(payload, dict):
            raise BrokerTransientError(
                f"Unexpected response shape from {path}", error_code="INVALID_RESPONSE", status_code=status_code
            )

        if self._is_auth_failure(status_code, payload):
            raise BrokerAuthError(
                payload.get("message") or f"Authentication failed (HTTP {status_code})",
                error_code=payload.get("error_code") or "AUTHENTICATION_ERROR",
                status_code=status_code,
                payload=payload,
            )

        error_code = payload.get("error_code")
        message = payload.get("message") or payload.get("error") or f"HTTP {status_code}"

        if status_code >= 500 or status_code == 429 or error_code in RETRYABLE_ERROR_CODES:
            raise BrokerTransientError(message, error_code=error_code, status_code=status_code, payload=payload)

        if not 200 <= status_code < 300 or payload.get("status") != "success":
            raise BrokerRejection(message, error_code=error_code, status_code=status_code, payload=payload)

        return payload

    async def generate_access_token(self, credentials: BrokerCredentials) -> AccessToken:
        """Issue a fresh access token using the account's Ed25519 key."""
        epoch_ms = str(int(time.time() * 1000))
        signature = sign_request(credentials.client_id, credentials.private_key, epoch_ms)
        headers = {
            "Content-Type": "application/json",
            "x-api-key": credentials.api_key,
            "x-epoch-time": epoch_ms,
            "x-signature": signature,
        }
        try:
            payload = await self._post(TOKEN_PATH, {"client_id": credentials.client_id}, headers)
        except BrokerRejection as e:
            raise BrokerAuthError(f"Token generation rejected: {e.message}", error_code=e.error_code) from e

        data = payload.get("data") or {}
        token = data.get("access_token")
        if not token:
            raise BrokerAuthError("Token response did not include an access token", payload=payload)

        access_token = AccessToken(token=token, expires_at=_parse_expiry(data.get("expires_at")))
        logger.info(f"Generated access token for {credentials.user_id} (expires {access_token.expires_at.isoformat()})")
        return access_token

    async def _get_token(self, credentials: BrokerCredentials, force_refresh: bool = False) -> AccessToken:
        key = credentials.user_id
        if not force_refresh:
            cached = self._tokens.get(key)
            if cached and cached.is_valid():
                return cached
            stored = self._stored_token(key)
            if stored and stored.is_valid():
                self._tokens[key] = stored
                return stored

        token = await self.generate_access_token(credentials)
        self._tokens[key] = token
        if self.credential_store is not None and key != SYSTEM_USER_ID:
            self.credential_store.save_access_token(key, token.token, token.expires_at.isoformat())
        return token

    def _stored_token(self, user_id: str) -> Optional[AccessToken]:
        if self.credential_store is None or user_id == SYSTEM_USER_ID:
            return None
        row = self.credential_store.get_api_credentials(user_id)
        if not row or not row.get("access_token") or not row.get("token_expires_at"):
            return None
        return AccessToken(token=row["access_token"], expires_at=_parse_expiry(row["token_expires_at"]))

    def _credentials_for(self, user_id: Optional[str]) -> BrokerCredentials:
        if not user_id or user_id == SYSTEM_USER_ID:
            return self.system_credentials
        if self.credential_store is None:
            raise BrokerAuthError(f"No credential store configured for user {user_id}")
        row = self.credential_store.get_api_credentials(user_id)
        if not row:
            raise BrokerAuthError(f"No broker credentials for user {user_id}")
        return BrokerCredentials.from_dict(row)

    async def _authenticated_post(
        self,
        credentials: BrokerCredentials,
        path: str,
        body: Dict[str, Any],
    ) -> Dict[str, Any]:
        """POST with auth headers, refreshing the token on auth failures up to auth_retries times."""
        for attempt in range(self.auth_retries + 1):
            token = await self._get_token(credentials, force_refresh=attempt > 0)
            headers = {
                "Content-Type": "application/json",
                "x-api-key": credentials.api_key,
                "x-auth-key": token.token,
                "x-client-id": credentials.client_id,
            }
            try:
                return await self._post(path, body, headers)
            except BrokerAuthError:
                self._tokens.pop(credentials.user_id, None)
                if attempt >= self.auth_retries:
                    raise
                logger.warning(f"Auth failure on {path} for {credentials.user_id}, refreshing token")

    async def _request(
        self,
        path: str,
        body: Dict[str, Any],
        user_id: Optional[str] = None,
        idempotent: bool = True,
    ) -> Dict[str, Any]:
        """
        Authenticated request with transient-failure retries.

        Non-idempotent requests (orders) are only retried when the broker
        never received them.
        """
        credentials = self._credentials_for(user_id)

        def _retryable(error: BaseException) -> bool:
            if not isinstance(error, BrokerTransientError):
                return False
            return idempotent or not error.request_sent or error.error_code == "RATE_LIMIT_EXCEEDED"

        return await retry_async(
            self._authenticated_post,
            credentials,
            path,
            body,
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            retry_if=_retryable,
            description=f"Broker {path}",
            sleep=self._sleep,
        )

    # =========================================================================
    # TRADING
    # =========================================================================

    async def get_margin_info(self, symbol: str, price: float, user_id: Optional[str] = None) -> Optional[float]:
        """
        Approximate MTF margin for one share, or None when the broker gives no usable quote.

        Raises BrokerError on request failure; callers fall back to an estimate.
        """
        body = {
            "symbol": symbol,
            "exchange": EXCHANGE,
            "transactionType": "BUY",
            "price": str(price),
            "quantity": "1",
            "productType": "MARGIN",
        }
        payload = await self._request(MARGIN_PATH, body, user_id=user_id)
        data = payload.get("data") or {}
        try:
            margin = float(data.get("approximateMargin") or 0)
        except (TypeError, ValueError):
            margin = 0.0
        if margin <= 0:
            logger.warning(f"No usable margin quote for {symbol}: {data}")
            return None
        return margin

    async def place_order(
        self,
        user_id: str,
        symbol: str,
        side: OrderSide,
        quantity: int,
        tag: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OrderResult:
        """
        Place an MTF market order. Never raises for broker failures: the
        returned OrderResult carries success, order ID and any error verbatim.
        """
        after_market = not is_market_open(now)
        credentials_client_id = None
        try:
            credentials_client_id = self._credentials_for(user_id).client_id
        except BrokerAuthError as e:
            logger.error(f"Cannot place {side.value} {symbol} for {user_id}: {e}")
            return OrderResult(
                success=False, symbol=symbol, side=side, quantity=quantity,
                error=str(e), error_code="AUTHENTICATION_ERROR", after_market_order=after_market,
            )

        body = {
            "clientId": credentials_client_id,
            "transactionType": side.value,
            "exchangeSegment": EXCHANGE,
            "productType": "MTF",
            "orderType": "MARKET",
            "validity": "DAY",
            "symbol": symbol,
            "quantity": str(quantity),
            "tag": tag or f"mtf-{side.value.lower()}-{symbol}"[:20],
            "afterMarketOrder": after_market,
        }

        try:
            payload = await self._request(ORDERS_PATH, body, user_id=user_id, idempotent=False)
        except BrokerError as e:
            logger.error(f"Order {side.value} {quantity} {symbol} for {user_id} failed: {e.message}")
            return OrderResult(
                success=False, symbol=symbol, side=side, quantity=quantity,
                error=e.message, error_code=e.error_code, after_market_order=after_market,
            )

        data = payload.get("data") or {}
        order_id = data.get("orderId")
        order_status = str(data.get("orderStatus") or "").upper() or None

        if not order_id or order_status in REJECTED_ORDER_STATUSES:
            error = data.get("rejectionReason") or payload.get("message") or "Order not accepted"
            logger.error(f"Order {side.value} {quantity} {symbol} for {user_id} not accepted: {error}")
            return OrderResult(
                success=False, symbol=symbol, side=side, quantity=quantity,
                order_id=order_id, order_status=order_status, error=error,
                error_code="ORDER_REJECTED", after_market_order=after_market,
            )

        logger.info(
            f"Order placed: {side.value} {quantity} {symbol} for {user_id} "
            f"(id {order_id}, {order_status}{', AMO' if after_market else ''})"
        )
        return OrderResult(
            success=True, symbol=symbol, side=side, quantity=quantity,
            order_id=str(order_id), order_status=order_status, after_market_order=after_market,
        )

    # =========================================================================
    # MARKET DATA
    # =========================================================================

    async def get_ltp(self, symbol: str) -> Optional[float]:
        """Last traded price for a symbol, or None if the broker has none."""
        payload = await self._request(LTP_PATH, {"exchange": EXCHANGE, "symbols": [symbol]})
        data = payload.get("data")

        entry: Any = None
        if isinstance(data, dict):
            entry = data.get(symbol, data)
        elif isinstance(data, list):
            entry = next((item for item in data if item.get("symbol") == symbol), None)

        if isinstance(entry, dict):
            value = entry.get("last_traded_price") or entry.get("ltp")
        else:
            value = entry
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    async def get_daily_candles(
        self,
        symbol: str,
        days: int = Config.CANDLE_LOOKBACK_DAYS,
        now: Optional[datetime] = None,
    ) -> List[Candle]:
        """Daily OHLCV candles for the last `days` days, oldest first."""
        end = (now or datetime.now(timezone.utc)).astimezone(IST).replace(hour=15, minute=30, second=0, microsecond=0)
        start = (end - timedelta(days=days)).replace(hour=9, minute=15)
        body = {
            "symbol": symbol.upper(),
            "exchange": EXCHANGE,
            "interval": _history_interval(days),
            "start_time": start.strftime("%Y-%m-%dT%H:%M:%S"),
            "end_time": end.strftime("%Y-%m-%dT%H:%M:%S"),
        }
        payload = await self._request(HISTORICAL_CHART_PATH, body)
        points = (payload.get("data") or {}).get("points") or []

        return self._parse_points(symbol, points)

    async def get_intraday_candles(
        self,
        symbol: str,
        interval: str = "1m",
        now: Optional[datetime] = None,
    ) -> List[Candle]:
        """Today's intraday bars for the NSE session."""
        session_day = (now or datetime.now(timezone.utc)).astimezone(IST).date().isoformat()
        body = {
            "symbol": symbol.upper(),
            "exchange": EXCHANGE,
            "interval": interval,
            "start_time": f"{session_day}T09:00:00",
            "end_time": f"{session_day}T15:30:00",
        }
        payload = await self._request(CHART_PATH, body)
        points = (payload.get("data") or {}).get("points") or []
        return self._parse_points(symbol, points)

    async def get_todays_candle(self, symbol: str, now: Optional[datetime] = None) -> Optional[Candle]:
        """Today's intraday bars folded into one daily candle, or None before any trade."""
        bars = await self.get_intraday_candles(symbol, now=now)
        if not bars:
            return None
        return Candle(
            timestamp=bars[0].timestamp.replace(hour=0, minute=0, second=0, microsecond=0),
            open=bars[0].open,
            high=max(b.high for b in bars),
            low=min(b.low for b in bars),
            close=bars[-1].close,
            volume=sum(b.volume for b in bars),
        )

    async def get_trading_candles(
        self,
        symbol: str,
        days: int = Config.CANDLE_LOOKBACK_DAYS,
        now: Optional[datetime] = None,
    ) -> List[Candle]:
        """
        Daily history with today's partial session appended as the latest bar.

        Missing intraday data is not an error: the daily history is returned as is.
        """
        candles = await self.get_daily_candles(symbol, days, now=now)
        try:
            today = await self.get_todays_candle(symbol, now=now)
        except BrokerError as e:
            logger.warning(f"Intraday data unavailable for {symbol}: {e.message}")
            today = None

        if today is None:
            return candles
        history = [c for c in candles if c.timestamp.date() != today.timestamp.date()]
        return history + [today]

    @staticmethod
    def _parse_points(symbol: str, points: List[Dict[str, Any]]) -> List[Candle]:
        candles = []
        for point in points:
            try:
                candles.append(Candle.from_point(point))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed candle for {symbol}: {e}")
        candles.sort(key=lambda c: c.timestamp)
        return candles
