from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Final

import httpx

from .logging_utils import log_event
from .models import Leg, RoutePair, RouteRecord, RouteStatus, TransportMode
from .pipeline_errors import RateLimitExceeded


class OTPError(RuntimeError):
    pass


class OTPRateLimitedError(OTPError):
    """HTTP 429 from the routing service."""

    def __init__(self, message: str, *, retry_after_ms: int | None = None) -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


API_KEY_HEADER: Final[str] = "digitransit-subscription-key"

PLAN_QUERY: Final[str] = """
query Plan(
  $from: InputCoordinates!
  $to: InputCoordinates!
  $date: String!
  $time: String!
  $numItineraries: Int!
  $modes: [TransportMode]
) {
  plan(
    from: $from
    to: $to
    date: $date
    time: $time
    numItineraries: $numItineraries
    transportModes: $modes
  ) {
    itineraries {
      duration
      numberOfTransfers
      walkDistance
      legs {
        from { name lat lon }
        to { name lat lon }
        mode
        duration
        distance
        legGeometry { points }
        route { shortName longName }
      }
    }
  }
}
"""


def next_service_day(today: date | None = None) -> date:
    """Next Tuesday on or after ``today``; every run queries the same weekday schedule."""
    d = today or datetime.now(UTC).date()
    return date.fromordinal(d.toordinal() + ((1 - d.weekday()) % 7))


def transport_modes(mode: TransportMode) -> list[dict[str, str]]:
    return [{"mode": TransportMode(mode).value}, {"mode": "TRANSIT"}]


def _parse_retry_after_ms(headers: httpx.Headers) -> int | None:
    value = headers.get("Retry-After")
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        seconds = float(text)
        if seconds >= 0.0:
            return int(seconds * 1000.0)
    except ValueError:
        pass
    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return int(max(0.0, (parsed - datetime.now(UTC)).total_seconds()) * 1000.0)


def _format_http_error(resp: httpx.Response) -> str:
    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > 240:
        body = body[:240] + "..."
    if body:
        return f"HTTP {resp.status_code}: {body}"
    return f"HTTP {resp.status_code}"


class OTPClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        timeout_s: float = 30.0,
        num_itineraries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.num_itineraries = int(num_itineraries)
        headers = {"accept": "application/json", "content-type": "application/json"}
        if api_key:
            headers[API_KEY_HEADER] = api_key
        # trust_env=False keeps proxy env vars away from a local OTP instance.
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=5.0),
            trust_env=False,
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def plan(
        self,
        *,
        origin: tuple[float, float],
        destination: tuple[float, float],
        target_date: date,
        target_time: str,
        mode: TransportMode = TransportMode.WALK,
    ) -> dict[str, Any]:
        """POST one plan query and return the decoded JSON body.

        Raises OTPRateLimitedError on 429 and OTPError on any other transport
        or HTTP failure. GraphQL-level errors are returned in the body.
        """
        variables = {
            "from": {"lat": origin[0], "lon": origin[1]},
            "to": {"lat": destination[0], "lon": destination[1]},
            "date": target_date.isoformat(),
            "time": target_time,
            "numItineraries": self.num_itineraries,
            "modes": transport_modes(mode),
        }
        try:
            resp = await self._client.post(self.base_url, json={"query": PLAN_QUERY, "variables": variables})
        except httpx.TimeoutException as e:
            raise OTPError(f"Timeout: {type(e).__name__}") from e
        except httpx.TransportError as e:
            msg = str(e).strip() or type(e).__name__
            raise OTPError(f"Network error: {msg}") from e
        except httpx.HTTPError as e:
            msg = str(e).strip() or type(e).__name__
            raise OTPError(f"{type(e).__name__}: {msg}") from e

        if resp.status_code == 429:
            raise OTPRateLimitedError(
                _format_http_error(resp),
                retry_after_ms=_parse_retry_after_ms(resp.headers),
            )
        if resp.status_code >= 400:
            raise OTPError(_format_http_error(resp))
        try:
            data = resp.json()
        except ValueError as e:
            raise OTPError("OTP response is not valid JSON") from e
        if not isinstance(data, dict):
            raise OTPError("OTP response is not a JSON object")
        return data


@dataclass
class RouteOutcome:
    status: RouteStatus
    duration: int | None = None
    transfers: int | None = None
    walk_distance: float | None = None
    legs: list[Leg] | None = None
    detail: str | None = None
    rate_limited: bool = False

    def to_record(self, pair: RoutePair) -> RouteRecord:
        return RouteRecord(
            from_id=pair.from_id,
            to_id=pair.to_id,
            period=pair.period,
            mode=pair.mode,
            status=self.status,
            duration=self.duration,
            transfers=self.transfers,
            walk_distance=self.walk_distance,
            legs=self.legs,
            detail=self.detail,
        )


def _parse_leg(raw: dict[str, Any]) -> Leg:
    route = raw.get("route") or {}
    geometry = raw.get("legGeometry") or {}
    return Leg(
        mode=str(raw.get("mode") or "UNKNOWN"),
        duration=raw.get("duration"),
        distance=raw.get("distance"),
        from_name=(raw.get("from") or {}).get("name"),
        to_name=(raw.get("to") or {}).get("name"),
        route_short_name=route.get("shortName"),
        geometry=geometry.get("points"),
    )


def classify_plan_response(payload: dict[str, Any]) -> RouteOutcome:
    errors = payload.get("errors")
    if errors:
        first = errors[0] if isinstance(errors, list) and errors else {}
        message = (first.get("message") if isinstance(first, dict) else None) or "Unknown OTP error"
        path = first.get("path") if isinstance(first, dict) else None
        suffix = f" (path: {'.'.join(str(p) for p in path)})" if path else ""
        return RouteOutcome(status=RouteStatus.ERROR, detail=f"{message}{suffix}")

    plan = (payload.get("data") or {}).get("plan")
    if not plan:
        return RouteOutcome(status=RouteStatus.ERROR, detail="OTP response missing plan data")

    itineraries = plan.get("itineraries") or []
    if not itineraries:
        return RouteOutcome(status=RouteStatus.NO_ROUTE)

    # min() keeps the first of equal durations.
    best = min(itineraries, key=lambda it: float(it.get("duration") or 0))
    return RouteOutcome(
        status=RouteStatus.OK,
        duration=int(round(float(best.get("duration") or 0))),
        transfers=int(best.get("numberOfTransfers") or 0),
        walk_distance=float(best.get("walkDistance") or 0.0),
        legs=[_parse_leg(leg) for leg in best.get("legs") or [] if isinstance(leg, dict)],
    )


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 6
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30_000

    def backoff_ms(self, attempt: int, retry_after_ms: int | None = None) -> int:
        if retry_after_ms is not None:
            return int(min(max(0, retry_after_ms), self.backoff_max_ms))
        step = max(1, int(attempt))
        return int(min(self.backoff_max_ms, self.backoff_base_ms * (2 ** (step - 1))))


@dataclass
class RouteClassifier:
    """Runs one plan query per pair, retrying 429s with capped exponential backoff."""

    client: OTPClient
    target_date: date
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    async def fetch(
        self,
        pair: RoutePair,
        origin: tuple[float, float],
        destination: tuple[float, float],
        target_time: str,
    ) -> RouteOutcome:
        retries = 0
        while True:
            try:
                payload = await self.client.plan(
                    origin=origin,
                    destination=destination,
                    target_date=self.target_date,
                    target_time=target_time,
                    mode=pair.mode,
                )
            except OTPRateLimitedError as e:
                if retries >= self.policy.max_retries:
                    raise RateLimitExceeded(
                        f"rate limited after {retries + 1} attempts: {e}",
                        attempts=retries + 1,
                    ) from e
                retries += 1
                wait_ms = self.policy.backoff_ms(retries, e.retry_after_ms)
                log_event(
                    "otp_rate_limited",
                    from_id=pair.from_id,
                    to_id=pair.to_id,
                    period=pair.period.value,
                    retry=retries,
                    wait_ms=wait_ms,
                )
                await self.sleep(wait_ms / 1000.0)
                continue
            except OTPError as e:
                return RouteOutcome(status=RouteStatus.ERROR, detail=str(e))
            try:
                return classify_plan_response(payload)
            except (AttributeError, TypeError, ValueError) as e:
                return RouteOutcome(status=RouteStatus.ERROR, detail=f"Malformed OTP response: {type(e).__name__}: {e}")
