from __future__ import annotations

import json
from typing import Any, Protocol

import httpx

from .config import BackendConfig
from .errors import ApplicationError, TransportError, ValidationFailure
from .models import CollectResult, ConfigEntry, HCARecord, ProbeSnapshot, RunResult
from .utils import config_path_segment


class TestBackend(Protocol):
    def list_configs(self) -> list[ConfigEntry]: ...

    def get_config(self, config_id: str) -> dict[str, Any]: ...

    def validate(self, config_id: str) -> dict[str, Any]: ...

    def precheck(self, config_id: str) -> list[HCARecord]: ...

    def run(self, config_id: str) -> RunResult: ...

    def probe(self, config_id: str) -> ProbeSnapshot: ...

    def collect(self, config_id: str) -> CollectResult: ...

    def report(self, config_id: str) -> dict[str, Any]: ...

    def stop(self, config_id: str) -> None: ...


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if str(item)]


def merge_errors(envelope: dict[str, Any]) -> list[str]:
    merged: list[str] = []
    data = envelope.get("data")
    nested = data.get("errors") if isinstance(data, dict) else None
    for item in _string_list(envelope.get("errors")) + _string_list(nested):
        if item not in merged:
            merged.append(item)
    return merged


def parse_envelope(text: str) -> dict[str, Any]:
    if not text or not text.strip():
        raise TransportError("empty response from server")
    try:
        envelope = json.loads(text)
    except json.JSONDecodeError as exc:
        raise TransportError(f"malformed response body: {exc}") from exc
    if not isinstance(envelope, dict) or "code" not in envelope:
        raise TransportError("malformed response body: missing envelope `code`")
    return envelope


def unwrap_envelope(envelope: dict[str, Any]) -> Any:
    try:
        code = int(envelope["code"])
    except (TypeError, ValueError) as exc:
        raise TransportError(f"malformed envelope code: {envelope.get('code')!r}") from exc
    if code == 0:
        return envelope.get("data")
    message = str(envelope.get("message") or "unknown error")
    errors = merge_errors(envelope)
    if errors:
        raise ValidationFailure(code, message, errors)
    raise ApplicationError(code, message)


def decode_response(response: httpx.Response, *, decode_error_status: bool = False) -> Any:
    if response.is_success:
        return unwrap_envelope(parse_envelope(response.text))
    if decode_error_status and response.is_client_error:
        try:
            envelope = parse_envelope(response.text)
        except TransportError:
            envelope = None
        if envelope is not None:
            return unwrap_envelope(envelope)
    raise TransportError(f"HTTP error: status {response.status_code}")


class HttpBackend:
    def __init__(self, config: BackendConfig, transport: httpx.BaseTransport | None = None) -> None:
        self.config = config
        self.client = httpx.Client(
            base_url=config.api_root,
            timeout=config.timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> HttpBackend:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request(self, method: str, path: str, *, decode_error_status: bool = False) -> Any:
        try:
            response = self.client.request(method, path)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        try:
            return decode_response(response, decode_error_status=decode_error_status)
        except TransportError as exc:
            raise TransportError(f"{method} {path}: {exc}") from exc

    def _config_path(self, config_id: str, action: str | None = None) -> str:
        path = f"/configs/{config_path_segment(config_id)}"
        return f"{path}/{action}" if action else path

    def list_configs(self) -> list[ConfigEntry]:
        data = self._request("GET", "/configs") or []
        if not isinstance(data, list):
            raise TransportError("malformed configs payload: expected a list")
        return [ConfigEntry.from_payload(item) for item in data]

    def get_config(self, config_id: str) -> dict[str, Any]:
        data = self._request("GET", self._config_path(config_id))
        if not isinstance(data, dict):
            raise TransportError("malformed config payload: expected an object")
        return data

    def validate(self, config_id: str) -> dict[str, Any]:
        data = self._request("POST", self._config_path(config_id, "validate"), decode_error_status=True)
        return data if isinstance(data, dict) else {}

    def precheck(self, config_id: str) -> list[HCARecord]:
        data = self._request("POST", self._config_path(config_id, "precheck"))
        if not isinstance(data, dict):
            raise TransportError("malformed precheck payload: expected an object")
        results = data.get("results") or []
        if not isinstance(results, list):
            raise TransportError("malformed precheck payload: `results` must be a list")
        return [HCARecord.from_payload(item) for item in results]

    def run(self, config_id: str) -> RunResult:
        return RunResult.from_payload(self._request("POST", self._config_path(config_id, "run")))

    def probe(self, config_id: str) -> ProbeSnapshot:
        data = self._request("POST", self._config_path(config_id, "probe"))
        try:
            return ProbeSnapshot.from_payload(data)
        except (TypeError, ValueError) as exc:
            raise TransportError(f"malformed probe payload: {exc}") from exc

    def collect(self, config_id: str) -> CollectResult:
        data = self._request("POST", self._config_path(config_id, "collect"))
        try:
            return CollectResult.from_payload(data)
        except (TypeError, ValueError) as exc:
            raise TransportError(f"malformed collect payload: {exc}") from exc

    def report(self, config_id: str) -> dict[str, Any]:
        data = self._request("GET", self._config_path(config_id, "report"))
        if not isinstance(data, dict):
            raise TransportError("malformed report payload: expected an object")
        return data

    def stop(self, config_id: str) -> None:
        self._request("POST", self._config_path(config_id, "stop"))
