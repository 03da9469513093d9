from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import status
from fastapi.responses import JSONResponse

from open_agent_router.config import AppConfig, ProviderConfig

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
}

logger = logging.getLogger("uvicorn.error")


class UnknownProviderError(LookupError):
    def __init__(self, model: str):
        self.model = model
        super().__init__(f"No configured provider for model '{model}'.")


def request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    details: dict[str, Any] = {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__ or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        request = exc.request
    except RuntimeError:
        request = None
    if request is not None:
        details["request_method"] = request.method
        details["request_url"] = str(request.url)
    return details


def filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    return {
        name: value
        for name, value in headers.items()
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS
    }


def upstream_error_response(exc: httpx.RequestError) -> JSONResponse:
    details = request_error_details(exc)
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={
            "error": {
                "type": "upstream_connection_error",
                "message": (
                    f"Could not reach backend ({details['error_type']}): "
                    f"{details['error']}"
                ),
                **details,
            }
        },
    )


class ResponseByteStream:
    def __init__(self, response: httpx.Response):
        self.response = response

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.response.aiter_bytes()

    async def aclose(self) -> None:
        await self.response.aclose()


@dataclass(slots=True)
class UpstreamTarget:
    provider: ProviderConfig
    model: str

    @property
    def label(self) -> str:
        return f"{self.provider.name},{self.model}"

    @property
    def url(self) -> str:
        return self.provider.api_base_url


def _build_upstream_headers(api_key: str | None, incoming: dict[str, str] | None) -> dict[str, str]:
    headers = {"content-type": "application/json"}
    for name in ("anthropic-version", "anthropic-beta", "accept"):
        value = (incoming or {}).get(name)
        if value:
            headers[name] = value
    if api_key:
        headers["x-api-key"] = api_key
        headers["authorization"] = f"Bearer {api_key}"
    return headers


def _build_timeout(timeout_seconds: float, connect_timeout_seconds: float) -> httpx.Timeout:
    read_timeout = max(0.1, float(timeout_seconds))
    connect_timeout = max(0.1, float(connect_timeout_seconds))
    return httpx.Timeout(
        timeout=None,
        connect=connect_timeout,
        read=read_timeout,
        write=read_timeout,
        pool=connect_timeout,
    )


class BackendProxy:
    def __init__(
        self,
        config: AppConfig,
        *,
        timeout_seconds: float,
        connect_timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.client = httpx.AsyncClient(
            timeout=_build_timeout(timeout_seconds, connect_timeout_seconds),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def resolve_target(self, model: str) -> UpstreamTarget:
        provider_name, separator, model_name = model.partition(",")
        provider = self.config.find_provider(provider_name) if separator else None
        if provider is None or not model_name.strip():
            raise UnknownProviderError(model)
        return UpstreamTarget(
            provider=provider,
            model=provider.find_model(model_name) or model_name.strip(),
        )

    async def send(
        self,
        payload: dict[str, Any],
        *,
        incoming_headers: dict[str, str] | None = None,
        stream: bool,
    ) -> tuple[UpstreamTarget, httpx.Response]:
        target = self.resolve_target(str(payload.get("model") or ""))
        body = {key: value for key, value in payload.items() if key != "sessionId"}
        body["model"] = target.model
        request = self.client.build_request(
            method="POST",
            url=target.url,
            json=body,
            headers=_build_upstream_headers(target.provider.api_key, incoming_headers),
        )
        try:
            upstream = await self.client.send(request, stream=stream)
        except httpx.RequestError as exc:
            details = request_error_details(exc)
            logger.warning(
                "proxy_request_error target=%s error_type=%s error=%s",
                target.label,
                details["error_type"],
                details["error"],
            )
            raise
        logger.info(
            "proxy_upstream_connected target=%s status=%d stream=%s",
            target.label,
            upstream.status_code,
            stream,
        )
        return target, upstream


class LoopbackCaller:
    def __init__(
        self,
        *,
        port: int,
        api_key: str | None,
        host: str = "127.0.0.1",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = f"http://{host}:{port}/v1/messages"
        self.api_key = api_key
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __call__(self, payload: dict[str, Any]) -> ResponseByteStream | None:
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        request = self.client.build_request("POST", self.url, json=payload, headers=headers)
        response = await self.client.send(request, stream=True)
        if not response.is_success:
            await response.aread()
            await response.aclose()
            logger.warning(
                "agent_splice_upstream_rejected status=%d url=%s",
                response.status_code,
                self.url,
            )
            return None
        return ResponseByteStream(response)
