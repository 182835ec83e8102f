"""HTTP client that hands a flight plan to a processing worker."""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from flightops.domain import FlightPlan, Worker

logger = structlog.get_logger(__name__)

UPLOAD_PATH = "/upload_plan"


@dataclass(slots=True)
class DispatchOutcome:
    """Classified result of one dispatch attempt."""

    ok: bool
    payload: str | None = None
    error: str | None = None

    @classmethod
    def success(cls, payload: str) -> "DispatchOutcome":
        return cls(ok=True, payload=payload)

    @classmethod
    def failure(cls, error: str) -> "DispatchOutcome":
        return cls(ok=False, error=error)


class Dispatcher(Protocol):
    """Contract used by the scheduler; implementations must not raise for remote failures."""

    async def dispatch(self, plan: FlightPlan, worker: Worker) -> DispatchOutcome: ...


class WorkerDispatchClient:
    """Send a plan to ``{worker.address}/upload_plan`` and wait for the result."""

    def __init__(
        self,
        *,
        timeout: float = 300.0,
        upload_path: str = UPLOAD_PATH,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if not upload_path.startswith("/"):
            upload_path = f"/{upload_path}"
        self._timeout = timeout
        self._upload_path = upload_path
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _build_url(self, worker: Worker) -> str:
        return f"{worker.address.rstrip('/')}{self._upload_path}"

    @staticmethod
    def _build_payload(plan: FlightPlan) -> dict[str, Any]:
        return {
            "id": plan.id,
            "customName": plan.custom_name,
            "fileContent": plan.file_content,
        }

    @staticmethod
    def _extract_payload(response: httpx.Response) -> DispatchOutcome:
        body = response.text
        if not body.strip():
            return DispatchOutcome.failure("worker returned an empty body")

        content_type = response.headers.get("content-type", "")
        if "json" not in content_type:
            return DispatchOutcome.success(body)

        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            return DispatchOutcome.failure("worker returned malformed JSON")

        if isinstance(data, str):
            return DispatchOutcome.success(data) if data.strip() else DispatchOutcome.failure(
                "worker returned an empty body"
            )
        if isinstance(data, dict):
            if data.get("success") is False:
                message = data.get("message") or data.get("error") or "worker reported failure"
                return DispatchOutcome.failure(str(message))
            for key in ("csv", "trajectory", "csvResult"):
                value = data.get(key)
                if isinstance(value, str) and value.strip():
                    return DispatchOutcome.success(value)
        return DispatchOutcome.success(body)

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    async def dispatch(self, plan: FlightPlan, worker: Worker) -> DispatchOutcome:
        url = self._build_url(worker)
        log = logger.bind(plan_id=plan.id, worker=worker.name)
        log.info("dispatch.started", url=url)
        try:
            # one deadline for connect, upload and the full body read
            response = await asyncio.wait_for(
                self._client.post(url, json=self._build_payload(plan), timeout=self._timeout),
                timeout=self._timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            log.warning("dispatch.timeout", timeout=self._timeout)
            return DispatchOutcome.failure(f"worker did not answer within {self._timeout:g}s")
        except httpx.HTTPError as exc:
            log.warning("dispatch.network_error", error=str(exc))
            return DispatchOutcome.failure(f"network error: {exc.__class__.__name__}: {exc}")

        if response.status_code != 200:
            log.warning("dispatch.rejected", status_code=response.status_code)
            return DispatchOutcome.failure(f"worker responded with HTTP {response.status_code}")

        outcome = self._extract_payload(response)
        if outcome.ok:
            log.info("dispatch.succeeded", size=len(outcome.payload or ""))
        else:
            log.warning("dispatch.malformed", error=outcome.error)
        return outcome

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
