"""
Fleet API client contract.

FleetClient is what the engine talks to. HttpFleetClient speaks the fleet
API's HTTP/JSON dialect and RetryingFleetClient adds a small retry budget to
the read-mostly calls that run outside the main wait loops.
"""

import asyncio
import random
from abc import ABC, abstractmethod

import httpx

from .errors import FleetAPIError, LeaseConflictError
from .logger import get_logger
from .models import Lease, Machine, Volume

LEASE_NONCE_HEADER = "X-Lease-Nonce"


class FleetClient(ABC):
    """Operations the engine needs from the fleet API"""

    @abstractmethod
    async def launch(self, launch_input):
        """Create a machine, returns the Machine"""

    @abstractmethod
    async def update(self, machine_id, launch_input, nonce):
        """Update a leased machine in place, returns the Machine"""

    @abstractmethod
    async def destroy(self, machine_id, kill=False, nonce=None):
        pass

    @abstractmethod
    async def start(self, machine_id, nonce=None):
        pass

    @abstractmethod
    async def stop(self, machine_id, signal=None, nonce=None):
        pass

    @abstractmethod
    async def cordon(self, machine_id, nonce=None):
        pass

    @abstractmethod
    async def uncordon(self, machine_id, nonce=None):
        pass

    @abstractmethod
    async def list(self, state=None):
        pass

    @abstractmethod
    async def get(self, machine_id):
        pass

    @abstractmethod
    async def acquire_lease(self, machine_id, ttl):
        """Returns a Lease, raises LeaseConflictError when someone else holds it"""

    @abstractmethod
    async def refresh_lease(self, machine_id, ttl, nonce):
        pass

    @abstractmethod
    async def release_lease(self, machine_id, nonce):
        pass

    @abstractmethod
    async def wait(self, machine, state, timeout):
        """Long-poll until machine reaches state, raises FleetAPIError(408) on timeout"""

    @abstractmethod
    async def set_metadata(self, machine_id, key, value, nonce=None):
        pass

    @abstractmethod
    async def get_metadata(self, machine_id):
        pass

    @abstractmethod
    async def get_volumes(self):
        pass

    @abstractmethod
    async def create_volume(self, name, region, size_gb=1):
        pass

    @abstractmethod
    async def get_logs(self, machine_id, limit=100):
        pass

    async def close(self):
        pass


class HttpFleetClient(FleetClient):
    """Fleet API client over HTTP/JSON"""

    def __init__(self, base_url, app_name, token=None, timeout=30.0, transport=None):
        self.base_url = base_url.rstrip("/")
        self.app_name = app_name
        self.token = token
        self.timeout = timeout
        self.transport = transport
        self.logger = get_logger("fleet")
        self._client = None

    def _get_client(self):
        if self._client is None or self._client.is_closed:
            headers = {
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"

            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/v1/apps/{self.app_name}",
                headers=headers,
                timeout=httpx.Timeout(self.timeout),
                transport=self.transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(self, method, path, json=None, params=None, nonce=None, timeout=None):
        headers = {LEASE_NONCE_HEADER: nonce} if nonce else None
        kwargs = {"json": json, "params": params, "headers": headers}
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            response = await self._get_client().request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise FleetAPIError(408, f"request to {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise FleetAPIError(None, f"request to {path} failed: {e}") from e

        if response.status_code >= 400:
            message, code = self._parse_error(response)
            self.logger.debug(f"{method} {path} -> {response.status_code}: {message}")
            raise FleetAPIError(response.status_code, message, code)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _parse_error(response):
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase, None
        if isinstance(body, dict):
            return body.get("error") or body.get("message") or response.reason_phrase, body.get("code")
        return str(body), None

    async def launch(self, launch_input):
        data = await self._request("POST", "/machines", json=launch_input.to_dict())
        return Machine.from_dict(data)

    async def update(self, machine_id, launch_input, nonce):
        data = await self._request("POST", f"/machines/{machine_id}", json=launch_input.to_dict(), nonce=nonce)
        return Machine.from_dict(data)

    async def destroy(self, machine_id, kill=False, nonce=None):
        params = {"kill": "true"} if kill else None
        await self._request("DELETE", f"/machines/{machine_id}", params=params, nonce=nonce)

    async def start(self, machine_id, nonce=None):
        await self._request("POST", f"/machines/{machine_id}/start", nonce=nonce)

    async def stop(self, machine_id, signal=None, nonce=None):
        body = {"signal": signal} if signal else {}
        await self._request("POST", f"/machines/{machine_id}/stop", json=body, nonce=nonce)

    async def cordon(self, machine_id, nonce=None):
        await self._request("POST", f"/machines/{machine_id}/cordon", nonce=nonce)

    async def uncordon(self, machine_id, nonce=None):
        await self._request("POST", f"/machines/{machine_id}/uncordon", nonce=nonce)

    async def list(self, state=None):
        params = {"state": state} if state else None
        data = await self._request("GET", "/machines", params=params)
        return [Machine.from_dict(m) for m in data or []]

    async def get(self, machine_id):
        return Machine.from_dict(await self._request("GET", f"/machines/{machine_id}"))

    async def acquire_lease(self, machine_id, ttl):
        try:
            data = await self._request("POST", f"/machines/{machine_id}/lease", json={"ttl": int(ttl)})
        except FleetAPIError as e:
            if e.status_code == 409:
                raise LeaseConflictError(machine_id, f"failed to get lease on machine {machine_id}: {e.message}") from e
            raise
        return Lease.from_dict(data)

    async def refresh_lease(self, machine_id, ttl, nonce):
        data = await self._request("POST", f"/machines/{machine_id}/lease", json={"ttl": int(ttl)}, nonce=nonce)
        return Lease.from_dict(data)

    async def release_lease(self, machine_id, nonce):
        await self._request("DELETE", f"/machines/{machine_id}/lease", nonce=nonce)

    async def wait(self, machine, state, timeout):
        params = {"state": state, "timeout": int(max(1, timeout))}
        if machine.instance_id:
            params["instance_id"] = machine.instance_id
        # Server holds the request for up to timeout seconds
        await self._request("GET", f"/machines/{machine.id}/wait", params=params, timeout=timeout + 10)

    async def set_metadata(self, machine_id, key, value, nonce=None):
        await self._request("POST", f"/machines/{machine_id}/metadata/{key}", json={"value": value}, nonce=nonce)

    async def get_metadata(self, machine_id):
        return await self._request("GET", f"/machines/{machine_id}/metadata") or {}

    async def get_volumes(self):
        data = await self._request("GET", "/volumes")
        return [Volume.from_dict(v) for v in data or []]

    async def create_volume(self, name, region, size_gb=1):
        data = await self._request("POST", "/volumes", json={"name": name, "region": region, "size_gb": size_gb})
        return Volume.from_dict(data)

    async def get_logs(self, machine_id, limit=100):
        data = await self._request("GET", f"/machines/{machine_id}/logs", params={"limit": limit})
        return list((data or {}).get("lines", []))[-limit:]


class RetryingFleetClient(FleetClient):
    """Wraps a client and retries read-mostly calls on transient errors"""

    def __init__(self, inner, max_attempts=3, base_delay=0.5, max_delay=5.0):
        self.inner = inner
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.logger = get_logger("fleet")

    async def _retry(self, name, func, *args, **kwargs):
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func(*args, **kwargs)
            except FleetAPIError as e:
                if not e.retryable or attempt >= self.max_attempts:
                    raise
                backoff_time = min((2 ** (attempt - 1)) * self.base_delay, self.max_delay)
                backoff_time *= random.uniform(0.8, 1.2)
                self.logger.info(f"{name} failed ({e}), retrying in {backoff_time:.2f} seconds...")
                await asyncio.sleep(backoff_time)

    # Mutations and lease calls go straight through

    async def launch(self, launch_input):
        return await self.inner.launch(launch_input)

    async def update(self, machine_id, launch_input, nonce):
        return await self.inner.update(machine_id, launch_input, nonce)

    async def destroy(self, machine_id, kill=False, nonce=None):
        return await self.inner.destroy(machine_id, kill=kill, nonce=nonce)

    async def start(self, machine_id, nonce=None):
        return await self.inner.start(machine_id, nonce=nonce)

    async def stop(self, machine_id, signal=None, nonce=None):
        return await self.inner.stop(machine_id, signal=signal, nonce=nonce)

    async def cordon(self, machine_id, nonce=None):
        return await self.inner.cordon(machine_id, nonce=nonce)

    async def uncordon(self, machine_id, nonce=None):
        return await self.inner.uncordon(machine_id, nonce=nonce)

    async def acquire_lease(self, machine_id, ttl):
        return await self.inner.acquire_lease(machine_id, ttl)

    async def refresh_lease(self, machine_id, ttl, nonce):
        return await self.inner.refresh_lease(machine_id, ttl, nonce)

    async def release_lease(self, machine_id, nonce):
        return await self.inner.release_lease(machine_id, nonce)

    async def wait(self, machine, state, timeout):
        return await self.inner.wait(machine, state, timeout)

    async def list(self, state=None):
        return await self._retry("list", self.inner.list, state)

    async def get(self, machine_id):
        return await self._retry("get", self.inner.get, machine_id)

    async def set_metadata(self, machine_id, key, value, nonce=None):
        return await self._retry("set_metadata", self.inner.set_metadata, machine_id, key, value, nonce=nonce)

    async def get_metadata(self, machine_id):
        return await self._retry("get_metadata", self.inner.get_metadata, machine_id)

    async def get_volumes(self):
        return await self._retry("get_volumes", self.inner.get_volumes)

    async def create_volume(self, name, region, size_gb=1):
        return await self._retry("create_volume", self.inner.create_volume, name, region, size_gb)

    async def get_logs(self, machine_id, limit=100):
        return await self._retry("get_logs", self.inner.get_logs, machine_id, limit)

    async def close(self):
        await self.inner.close()
