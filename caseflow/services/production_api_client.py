from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable, TypeVar

import requests
from pydantic import BaseModel, ValidationError

from caseflow.core.config import settings
from caseflow.core.flow_filter import SUBMISSION, flow_logger
from caseflow.schemas.production import (
    DeletionPayload,
    DeletionResult,
    ShipmentRef,
    SubmissionPayload,
    SubmissionResult,
)
from caseflow.services.production_errors import DeletionError, SubmissionError
from caseflow.services.retry import RetryPolicy, with_retry

logger = flow_logger(__name__)

PROCESS_CASES_PATH = "/api/production/process-cases"
SHIPMENTS_PATH = "/api/production/shipments"

ModelT = TypeVar("ModelT", bound=BaseModel)

_request_executor: ThreadPoolExecutor | None = None


def _get_executor() -> ThreadPoolExecutor:
    global _request_executor
    if _request_executor is None:
        _request_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="production-api")
    return _request_executor


def _json_body(response: Any, *, error_cls: type[SubmissionError] | type[DeletionError]) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise error_cls(message="Processing endpoint returned invalid JSON.") from exc


def _parse_model(
    model: type[ModelT],
    body: Any,
    *,
    error_cls: type[SubmissionError] | type[DeletionError],
) -> ModelT:
    if not isinstance(body, dict):
        raise error_cls(message="Processing endpoint returned a non-object JSON payload.")
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise error_cls(message="Processing endpoint returned a malformed response.") from exc


class ProductionApiClient:
    """
    Client for the processing endpoint.

    Every request runs under a hard wall-clock deadline of `timeout_seconds`.
    `submit` is retried with exponential backoff, one deadline per attempt;
    `delete` is issued exactly once and its failure surfaces to the caller.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        session: Any | None = None,
        timeout_seconds: float | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        headers: dict[str, str] | None = None,
    ):
        self.base_url = (base_url or settings.PRODUCTION_API_URL).rstrip("/")
        self.session = session or requests.Session()
        self.timeout_seconds = float(timeout_seconds or settings.PRODUCTION_SUBMIT_TIMEOUT_SECONDS)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(
            retry_on=(SubmissionError,)
        )
        self.sleep = sleep
        self.headers = dict(headers or {})

    def _send(self, method: str, path: str, *, body: dict | None = None, params: dict | None = None):
        # requests' own timeout bounds each socket read, not the whole
        # response, so a server trickling bytes could hold it open indefinitely.
        future = _get_executor().submit(
            self.session.request,
            method,
            f"{self.base_url}{path}",
            json=body,
            params=params,
            headers=self.headers or None,
            timeout=self.timeout_seconds,
        )
        try:
            return future.result(timeout=self.timeout_seconds)
        except FuturesTimeoutError as exc:
            future.cancel()
            logger.warning(
                "production_request_deadline_exceeded method=%s path=%s timeout_s=%g",
                method,
                path,
                self.timeout_seconds,
            )
            raise requests.Timeout(f"No response within {self.timeout_seconds:g}s") from exc

    def _post_once(self, body: dict) -> SubmissionResult:
        try:
            response = self._send("POST", PROCESS_CASES_PATH, body=body)
        except requests.Timeout as exc:
            raise SubmissionError(
                message=f"Request timed out after {self.timeout_seconds:g}s"
            ) from exc
        except requests.RequestException as exc:
            raise SubmissionError(message=f"Network error: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise SubmissionError(
                message=f"Server responded {response.status_code}",
                upstream_status=response.status_code,
            )
        return _parse_model(
            SubmissionResult,
            _json_body(response, error_cls=SubmissionError),
            error_cls=SubmissionError,
        )

    def submit(self, payload: SubmissionPayload) -> SubmissionResult:
        body = payload.to_wire()
        logger.info(
            "production_submit_started shipments=%s records=%s",
            ",".join(payload.shipments),
            payload.meta.row_count,
            extra={"flow": SUBMISSION},
        )
        result = with_retry(
            lambda: self._post_once(body),
            self.retry_policy,
            sleep=self.sleep,
            label="production_submit",
        )
        logger.info(
            "production_submit_completed total_items=%s",
            result.total_items,
            extra={"flow": SUBMISSION},
        )
        return result

    def delete(self, payload: DeletionPayload) -> DeletionResult:
        try:
            response = self._send("DELETE", PROCESS_CASES_PATH, body=payload.to_wire())
        except requests.Timeout as exc:
            raise DeletionError(
                message=f"Request timed out after {self.timeout_seconds:g}s"
            ) from exc
        except requests.RequestException as exc:
            raise DeletionError(message=f"Network error: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise DeletionError(
                message=f"Server responded {response.status_code}",
                upstream_status=response.status_code,
            )
        result = _parse_model(
            DeletionResult,
            _json_body(response, error_cls=DeletionError),
            error_cls=DeletionError,
        )
        logger.info(
            "production_delete_completed shipments=%s total_deletes=%s",
            ",".join(payload.shipments),
            result.total_deletes,
        )
        return result

    def fetch_shipment_states(self, shipment_ids: list[str]) -> list[ShipmentRef]:
        try:
            response = self._send(
                "GET",
                SHIPMENTS_PATH,
                params={"ids": ",".join(shipment_ids)},
            )
        except requests.Timeout as exc:
            raise SubmissionError(
                message=f"Request timed out after {self.timeout_seconds:g}s"
            ) from exc
        except requests.RequestException as exc:
            raise SubmissionError(message=f"Network error: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise SubmissionError(
                message=f"Server responded {response.status_code}",
                upstream_status=response.status_code,
            )
        rows = _json_body(response, error_cls=SubmissionError)
        if not isinstance(rows, list):
            raise SubmissionError(message="Processing endpoint returned a non-list JSON payload.")
        return [_parse_model(ShipmentRef, row, error_cls=SubmissionError) for row in rows]
