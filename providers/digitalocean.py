import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from dateutil import parser

from services.exceptions import ProviderError
from .config import digitalocean_config, DigitalOceanConfig

logger = logging.getLogger(__name__)

MONITORING_PREFIX = "/v2/monitoring/metrics/droplet"


def _last_value(series: List[Dict[str, Any]]) -> float:
    for item in series:
        values = item.get("values") or []
        if values:
            return float(values[-1][1])
    return 0.0


def _cpu_percent(series: List[Dict[str, Any]]) -> float:
    # cpu series are cumulative seconds per mode; utilisation is the non-idle share of the delta
    total = 0.0
    idle = 0.0
    for item in series:
        values = item.get("values") or []
        if len(values) < 2:
            continue
        delta = float(values[-1][1]) - float(values[0][1])
        total += delta
        if item.get("metric", {}).get("mode") == "idle":
            idle += delta
    if total <= 0:
        return 0.0
    return 100.0 * (1 - idle / total)


def _used_percent(free: float, size: float) -> float:
    if size <= 0:
        return 0.0
    return 100.0 * (1 - free / size)


class DigitalOceanClient:
    """Compute provisioning collaborator backed by the DigitalOcean v2 API."""

    def __init__(
        self,
        config: DigitalOceanConfig = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = config or digitalocean_config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            async with self._lock:
                if self._client is None or self._client.is_closed:
                    limits = httpx.Limits(
                        max_connections=self.config.max_connections,
                        max_keepalive_connections=self.config.max_keepalive
                    )
                    self._client = httpx.AsyncClient(
                        base_url=self.config.api_url,
                        headers={"Authorization": f"Bearer {self.config.api_token}"},
                        timeout=httpx.Timeout(self.config.timeout),
                        limits=limits,
                        transport=self._transport,
                        http2=True
                    )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        retry_count: int = None
    ) -> httpx.Response:
        retry_count = retry_count or self.config.retry_count
        client = await self._get_client()

        for attempt in range(retry_count):
            try:
                return await client.request(method, url, params=params)

            except httpx.TimeoutException as e:
                logger.warning(f"Request timeout (attempt {attempt + 1}/{retry_count}): {url}")
                if attempt == retry_count - 1:
                    raise ProviderError(f"Request timeout: {e}") from e
                await asyncio.sleep(self.config.retry_delay * (attempt + 1))

            except httpx.ConnectError as e:
                logger.warning(f"Connection error (attempt {attempt + 1}/{retry_count}): {url}")
                if attempt == retry_count - 1:
                    raise ProviderError(f"Connection error: {e}") from e
                await asyncio.sleep(self.config.retry_delay * (attempt + 1))

            except httpx.HTTPError as e:
                logger.error(f"Unexpected error calling {url}: {e}")
                raise ProviderError(str(e)) from e

        raise ProviderError("Max retries exceeded")

    def _raise_for_status(self, response: httpx.Response, action: str):
        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text or "Unknown error"
            raise ProviderError(f"{action} failed ({response.status_code}): {detail}", response.status_code)

    async def _destroy(self, path: str, external_id: str):
        response = await self._request("DELETE", path)
        if response.status_code == 404:
            logger.info(f"{path} already gone, nothing to destroy")
            return
        self._raise_for_status(response, f"Destroy {external_id}")

    async def destroy_instance(self, external_id: str):
        await self._destroy(f"/v2/droplets/{external_id}", external_id)

    async def destroy_volume(self, external_id: str):
        await self._destroy(f"/v2/volumes/{external_id}", external_id)

    def _payload(self, response: httpx.Response, action: str) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(f"{action} returned a malformed body: {e}", response.status_code) from e
        if not isinstance(payload, dict):
            raise ProviderError(f"{action} returned a malformed body", response.status_code)
        return payload

    async def _series(
        self,
        metric: str,
        external_id: str,
        window_seconds: Optional[int] = None,
        **extra
    ) -> List[Dict[str, Any]]:
        end = int(time.time())
        params = {
            "host_id": external_id,
            "start": str(end - (window_seconds or self.config.sample_window_seconds)),
            "end": str(end),
            **extra
        }
        response = await self._request("GET", f"{MONITORING_PREFIX}/{metric}", params=params)
        self._raise_for_status(response, f"Metric {metric}")
        result = (self._payload(response, f"Metric {metric}").get("data") or {}).get("result", [])
        if not isinstance(result, list):
            raise ProviderError(f"Metric {metric} returned a malformed result", response.status_code)
        return result

    async def _uptime_seconds(self, external_id: str) -> int:
        response = await self._request("GET", f"/v2/droplets/{external_id}")
        self._raise_for_status(response, f"Droplet {external_id}")
        try:
            created_at = parser.isoparse(self._payload(response, f"Droplet {external_id}")["droplet"]["created_at"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(f"Droplet {external_id} has no usable created_at: {e}", response.status_code) from e
        return max(0, int((datetime.now(timezone.utc) - created_at).total_seconds()))

    async def _bandwidth_bytes(self, external_id: str, direction: str, window_seconds: int) -> int:
        if window_seconds <= 0:
            return 0
        series = await self._series(
            "bandwidth", external_id, window_seconds=window_seconds, interface="public", direction=direction
        )
        rates = [float(v[1]) for item in series for v in (item.get("values") or [])]
        if not rates:
            return 0
        # Mbps averaged over the window
        mbps = sum(rates) / len(rates)
        return int(mbps * 1_000_000 / 8 * window_seconds)

    async def get_usage_sample(self, external_id: str, window_seconds: Optional[int] = None) -> Dict[str, Any]:
        """Collapse the monitoring endpoints into one raw usage snapshot.

        Traffic is the bytes moved during the trailing ``window_seconds``
        (``sample_window_seconds`` when omitted); gauges read the latest point.
        """
        if window_seconds is None:
            window_seconds = self.config.sample_window_seconds
        try:
            (
                cpu, mem_total, mem_available, fs_size, fs_free,
                load_1, load_5, load_15, network_in, network_out, uptime
            ) = await asyncio.gather(
                self._series("cpu", external_id),
                self._series("memory_total", external_id),
                self._series("memory_available", external_id),
                self._series("filesystem_size", external_id),
                self._series("filesystem_free", external_id),
                self._series("load_1", external_id),
                self._series("load_5", external_id),
                self._series("load_15", external_id),
                self._bandwidth_bytes(external_id, "inbound", window_seconds),
                self._bandwidth_bytes(external_id, "outbound", window_seconds),
                self._uptime_seconds(external_id),
            )
            return {
                "cpu": _cpu_percent(cpu),
                "memory": _used_percent(_last_value(mem_available), _last_value(mem_total)),
                "disk": _used_percent(_last_value(fs_free), _last_value(fs_size)),
                "network_in": network_in,
                "network_out": network_out,
                "load_average": [_last_value(load_1), _last_value(load_5), _last_value(load_15)],
                "uptime_seconds": uptime
            }
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
            raise ProviderError(f"Malformed monitoring data for droplet {external_id}: {e}") from e


_client_instance: Optional[DigitalOceanClient] = None


def get_compute_client() -> DigitalOceanClient:
    global _client_instance
    if _client_instance is None:
        _client_instance = DigitalOceanClient()
    return _client_instance


async def close_compute_client():
    global _client_instance
    if _client_instance:
        await _client_instance.close()
        _client_instance = None
