"""Telematics provider API client."""

import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

TOKEN_ENDPOINT = "/api/standard/gettoken"
MAPPING_ENDPOINT = "/api/standard/listvehicledevicemapping"
GPS_LATEST_ENDPOINT = "/api/standard/getlastgpsstatus"
CAN_LATEST_ENDPOINT = "/api/standard/getlatestcan"
FUEL_LATEST_ENDPOINT = "/api/standard/getlastfuelstatus"
GPS_HISTORY_ENDPOINT = "/api/standard/getgpshistory"
CAN_HISTORY_ENDPOINT = "/api/standard/getbatterymetricshistory"
FUEL_HISTORY_ENDPOINT = "/api/standard/getfuelhistory"
DISTANCE_ENDPOINT = "/api/standard/getdistancetravelled"


class ProviderError(Exception):
    """Raised when a provider call cannot be completed."""

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message)
        self.payload = payload


class ProviderResponseError(ProviderError):
    """Raised when the provider answers but reports failure or omits the data payload."""
    pass


@dataclass
class ProviderEnvelope:
    """Normalized provider response: `{status, data, msg|err}`."""

    status: str
    data: Any
    message: Optional[str]
    raw: Any

    @property
    def ok(self) -> bool:
        return self.status.upper() == "SUCCESS"

    def unwrap(self, context: str) -> Any:
        """Return `data`, raising if the call failed or the payload is absent."""
        if not self.ok:
            raise ProviderResponseError(
                self.message or f"{context} returned {self.status or 'FAILURE'}", payload=self.raw
            )
        if self.data is None:
            raise ProviderResponseError(f"{context} returned no data", payload=self.raw)
        return self.data

    @classmethod
    def from_json(cls, body: Any) -> "ProviderEnvelope":
        if not isinstance(body, dict):
            return cls(status="", data=None, message="Unexpected response shape", raw=body)
        message = body.get("msg") or body.get("err") or body.get("error")
        return cls(
            status=str(body.get("status") or ""),
            data=body.get("data"),
            message=str(message) if message else None,
            raw=body,
        )


def to_num(value: Any) -> float | None:
    """Coerce a provider value to float. "NA", "", "null" and non-finite values become None."""
    if value is None or isinstance(value, bool):
        return None
    s = str(value).strip()
    if not s or s.upper() == "NA" or s.lower() == "null":
        return None
    try:
        n = float(s)
    except ValueError:
        return None
    return n if math.isfinite(n) else None


def to_int(value: Any) -> int | None:
    """Coerce a provider flag/counter to int."""
    n = to_num(value)
    return int(n) if n is not None else None


def to_dec_str(value: Any) -> str | None:
    """Coerce a provider value to a plain decimal string, or None."""
    n = to_num(value)
    if n is None:
        return None
    if n.is_integer():
        return str(int(n))
    return format(Decimal(repr(n)), "f")


def to_epoch_ms(value: Any) -> int | None:
    """Coerce a provider timestamp to epoch milliseconds. Second-resolution values are scaled."""
    n = to_num(value)
    if n is None:
        return None
    ms = int(n)
    if ms < 1_000_000_000_000:
        ms *= 1000
    return ms


class ProviderClient:
    """Async client for the telematics provider API.

    Every call is a POST carrying the session token in the JSON body. There is
    no retry here; callers decide what a failure means.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.username = username
        self.password = password
        self.timeout = timeout
        self.client = client
        self._token: Optional[str] = None

    @classmethod
    def from_settings(cls, settings) -> "ProviderClient":
        return cls(
            settings.provider_base_url,
            settings.provider_username,
            settings.provider_password,
            timeout=settings.provider_timeout_seconds,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                timeout=self.timeout
            )
        return self.client

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _post_json(self, path: str, body: dict[str, Any]) -> Any:
        client = await self._get_client()
        try:
            response = await client.post(f"{self.base_url}{path}", json=body)
        except httpx.TimeoutException as e:
            raise ProviderError(f"{path} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{path} request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(f"{path} failed: HTTP {response.status_code} {response.text[:200]}")

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"{path} returned non-JSON body: {response.text[:200]}") from e

    async def get_token(self) -> str:
        """Authenticate and return a session token (cached for this client)."""
        if self._token:
            return self._token

        if not self.username or not self.password:
            raise ProviderError("Missing provider credentials (PROVIDER_USERNAME / PROVIDER_PASSWORD)")

        body = await self._post_json(TOKEN_ENDPOINT, {"username": self.username, "password": self.password})
        envelope = ProviderEnvelope.from_json(body)
        if envelope.status and not envelope.ok:
            raise ProviderResponseError(f"Token request failed: {envelope.message or envelope.status}")

        data = body.get("data") if isinstance(body, dict) else None
        candidates = [body.get("token"), body.get("access_token")] if isinstance(body, dict) else []
        if isinstance(data, dict):
            candidates += [data.get("token"), data.get("access_token")]
        token = next((c for c in candidates if c), None)
        if not token:
            raise ProviderResponseError("Token missing in provider response")

        logger.debug("Obtained provider token")
        self._token = token
        return token

    async def post(self, path: str, body: Optional[dict[str, Any]] = None) -> ProviderEnvelope:
        """POST to a provider endpoint and normalize the response."""
        token = await self.get_token()
        payload = await self._post_json(path, {"token": token, **(body or {})})
        return ProviderEnvelope.from_json(payload)

    async def list_vehicle_device_mapping(self) -> ProviderEnvelope:
        return await self.post(MAPPING_ENDPOINT)

    async def get_last_gps_status(self, vehicleno: str) -> ProviderEnvelope:
        return await self.post(GPS_LATEST_ENDPOINT, {"vehicleno": vehicleno})

    async def get_latest_can(self, vehicleno: str) -> ProviderEnvelope:
        return await self.post(CAN_LATEST_ENDPOINT, {"vehicleno": vehicleno})

    async def get_last_fuel_status(self, vehicleno: str) -> ProviderEnvelope:
        return await self.post(FUEL_LATEST_ENDPOINT, {"vehicleno": vehicleno})

    async def get_gps_history(self, vehicleno: str, start_ms: int, end_ms: int) -> ProviderEnvelope:
        return await self.post(
            GPS_HISTORY_ENDPOINT,
            {"vehicleno": vehicleno, "starttime": start_ms, "endtime": end_ms},
        )

    async def get_battery_metrics_history(self, vehicleno: str, start_ms: int, end_ms: int) -> ProviderEnvelope:
        return await self.post(
            CAN_HISTORY_ENDPOINT,
            {"vehicleno": vehicleno, "starttime": start_ms, "endtime": end_ms},
        )

    async def get_fuel_history(
        self, vehicleno: str, in_litres: bool, start_ms: int, end_ms: int
    ) -> ProviderEnvelope:
        return await self.post(
            FUEL_HISTORY_ENDPOINT,
            {"vehicleno": vehicleno, "inlitres": in_litres, "starttime": start_ms, "endtime": end_ms},
        )

    async def get_distance_travelled(self, vehicleno: str, start_ms: int, end_ms: int) -> ProviderEnvelope:
        return await self.post(
            DISTANCE_ENDPOINT,
            {"vehicleno": vehicleno, "starttime": start_ms, "endtime": end_ms},
        )
