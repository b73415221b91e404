"""
IOCSentry VirusTotal Client

Queries VirusTotal API v3 for hash, IP, domain and URL reports using a
credential chosen by the key pool. Applies a per-type request throttle
and translates HTTP failures into lookup errors.
"""

import asyncio
import base64
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
import structlog

from iocsentry.lookup.errors import (
    InvalidCredential,
    ProviderRateLimited,
    TransientProviderError,
)
from iocsentry.lookup.models import ApiCredential, Indicator, IndicatorType, utcnow

logger = structlog.get_logger(__name__)


USER_AGENT = "IOCSentry/0.1.0"


@dataclass
class ProviderResponse:
    """Successful (200 or 404) provider answer."""

    payload: dict[str, Any] = field(default_factory=dict)
    found: bool = True
    remaining: int | None = None
    reset_at: datetime | None = None


def url_identifier(url: str) -> str:
    """VirusTotal URL id: unpadded URL-safe base64 of the URL."""
    return base64.urlsafe_b64encode(url.encode()).decode().rstrip("=")


def endpoint_for(indicator: Indicator) -> str:
    """API path for an indicator."""
    if indicator.type == IndicatorType.HASH:
        return f"/files/{indicator.canonical}"
    elif indicator.type == IndicatorType.IP:
        return f"/ip_addresses/{indicator.canonical}"
    elif indicator.type == IndicatorType.DOMAIN:
        return f"/domains/{indicator.canonical}"
    elif indicator.type == IndicatorType.URL:
        return f"/urls/{url_identifier(indicator.canonical)}"
    raise ValueError(f"Unsupported indicator type: {indicator.type}")


def gui_link(indicator: Indicator) -> str:
    """Link to the VirusTotal web report."""
    paths = {
        IndicatorType.HASH: f"file/{indicator.canonical}",
        IndicatorType.IP: f"ip-address/{indicator.canonical}",
        IndicatorType.DOMAIN: f"domain/{indicator.canonical}",
        IndicatorType.URL: f"url/{url_identifier(indicator.canonical)}",
    }
    return f"https://www.virustotal.com/gui/{paths[indicator.type]}"


class VirusTotalClient:
    """
    VirusTotal API v3 client.

    Features:
    - Hash, IP, domain and URL lookups
    - Per-type request throttle (requests per window)
    - Quota header parsing for the key pool
    - HTTP status to error mapping
    """

    BASE_URL = "https://www.virustotal.com/api/v3"

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = 30.0,
        type_rate_limits: dict[str, int] | None = None,
        rate_window: float = 60.0,
        default_cooldown: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the client.

        Args:
            base_url: API root (defaults to the public v3 endpoint)
            timeout: Per-request timeout in seconds
            type_rate_limits: Requests per window by indicator type (0 = unlimited)
            rate_window: Throttle window in seconds
            default_cooldown: Cooldown when a 429 carries no reset hint
            transport: Optional httpx transport (used by tests)
            clock: Time source for reset timestamps
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self.type_rate_limits = dict(type_rate_limits or {})
        self.rate_window = rate_window
        self.default_cooldown = default_cooldown
        self._transport = transport
        self._clock = clock

        # Throttle state per indicator type
        self._request_times: dict[str, list[float]] = {t.value: [] for t in IndicatorType}
        self._rate_locks: dict[str, asyncio.Lock] = {t.value: asyncio.Lock() for t in IndicatorType}

    @classmethod
    def from_settings(cls, settings: Any, transport: httpx.AsyncBaseTransport | None = None) -> "VirusTotalClient":
        return cls(
            base_url=settings.virustotal_base_url,
            timeout=settings.request_timeout_seconds,
            type_rate_limits=settings.type_rate_limits,
            rate_window=settings.rate_limit_window_seconds,
            default_cooldown=settings.default_rate_limit_cooldown,
            transport=transport,
        )

    async def _wait_for_rate_limit(self, indicator_type: IndicatorType) -> None:
        """Wait if this type's request budget for the window is spent."""
        limit = self.type_rate_limits.get(indicator_type.value, 0)
        if limit <= 0:
            return

        async with self._rate_locks[indicator_type.value]:
            now = asyncio.get_running_loop().time()

            # Remove old request times
            times = [t for t in self._request_times[indicator_type.value] if now - t < self.rate_window]

            # If at limit, wait
            if len(times) >= limit:
                oldest = min(times)
                wait_time = self.rate_window - (now - oldest)
                if wait_time > 0:
                    logger.debug(
                        "virustotal_rate_limit_wait",
                        type=indicator_type.value,
                        seconds=round(wait_time, 2),
                    )
                    await asyncio.sleep(wait_time)
                now = asyncio.get_running_loop().time()
                times = [t for t in times if now - t < self.rate_window]

            # Record this request
            times.append(now)
            self._request_times[indicator_type.value] = times

    def _reset_from_headers(self, headers: httpx.Headers) -> datetime | None:
        retry_after = headers.get("Retry-After")
        if retry_after and retry_after.strip().isdigit():
            return self._clock() + timedelta(seconds=int(retry_after))

        reset = headers.get("X-RateLimit-Reset")
        if reset and reset.strip().isdigit():
            return datetime.fromtimestamp(int(reset), tz=timezone.utc)

        return None

    @staticmethod
    def _remaining_from_headers(headers: httpx.Headers) -> int | None:
        remaining = headers.get("X-RateLimit-Remaining")
        if remaining and remaining.strip().isdigit():
            return int(remaining)
        return None

    async def lookup(self, indicator: Indicator, credential: ApiCredential) -> ProviderResponse:
        """
        Fetch the report for an indicator.

        Args:
            indicator: Normalized indicator
            credential: Key selected by the key pool

        Returns:
            ProviderResponse (found=False for a 404)

        Raises:
            ProviderRateLimited: 429 for this key
            InvalidCredential: 401/403 for this key
            TransientProviderError: Timeout, transport error or 5xx
        """
        await self._wait_for_rate_limit(indicator.type)

        endpoint = endpoint_for(indicator)
        url = f"{self.base_url}{endpoint}"
        headers = {
            "x-apikey": credential.secret,
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }

        logger.debug(
            "virustotal_request",
            type=indicator.type.value,
            indicator=indicator.canonical[:64],
            key_id=credential.id,
        )

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.get(url, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException:
            logger.info("virustotal_timeout", endpoint=endpoint, key_id=credential.id)
            raise TransientProviderError("Request timed out", raw=indicator.raw)
        except httpx.RequestError as e:
            logger.info("virustotal_request_error", endpoint=endpoint, error=str(e))
            raise TransientProviderError(f"Request failed: {e}", raw=indicator.raw)

        status = response.status_code
        remaining = self._remaining_from_headers(response.headers)

        if status == 200:
            try:
                payload = response.json()
            except ValueError:
                raise TransientProviderError("Malformed JSON from provider", raw=indicator.raw)
            return ProviderResponse(
                payload=payload if isinstance(payload, dict) else {},
                remaining=remaining,
                reset_at=self._reset_from_headers(response.headers),
            )

        if status == 404:
            logger.debug("virustotal_not_found", endpoint=endpoint)
            return ProviderResponse(payload={}, found=False, remaining=remaining)

        if status == 429:
            reset_at = self._reset_from_headers(response.headers) or (
                self._clock() + timedelta(seconds=self.default_cooldown)
            )
            logger.info("virustotal_rate_limited", key_id=credential.id, reset_at=reset_at.isoformat())
            raise ProviderRateLimited("Rate limited", reset_at=reset_at, credential_id=credential.id)

        if status in (401, 403):
            raise InvalidCredential(f"HTTP {status}", credential_id=credential.id)

        logger.info("virustotal_error", status=status, endpoint=endpoint)
        raise TransientProviderError(f"HTTP {status}", raw=indicator.raw)


# Singleton instance
_client_instance: VirusTotalClient | None = None


def get_virustotal_client() -> VirusTotalClient:
    """Get or create the global VirusTotal client."""
    global _client_instance
    if _client_instance is None:
        from iocsentry.config import settings

        _client_instance = VirusTotalClient.from_settings(settings)
    return _client_instance
