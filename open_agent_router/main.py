from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from open_agent_router.agents.base import AgentRegistry
from open_agent_router.agents.loader import build_agent_registry
from open_agent_router.agents.pipeline import AgentInterceptionPipeline, UpstreamCaller
from open_agent_router.config import AppConfig, ConfigError, load_app_config
from open_agent_router.gateway.event_log import JsonlEventLog
from open_agent_router.gateway.proxy import (
    BackendProxy,
    LoopbackCaller,
    ResponseByteStream,
    UnknownProviderError,
    filter_response_headers,
    upstream_error_response,
)
from open_agent_router.routing.custom_router import load_custom_router
from open_agent_router.routing.project_resolver import ProjectResolver
from open_agent_router.routing.router_engine import RoutingEngine
from open_agent_router.routing.token_estimator import TokenEstimator
from open_agent_router.runtime.session_usage import SessionUsageCache
from open_agent_router.settings import Settings, get_settings
from open_agent_router.streaming.usage_tee import record_json_usage, tee_usage

app = FastAPI(
    title="Open Agent Router",
    description="Anthropic Messages router with rule-based model selection and agent tools.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class RouterRuntime:
    config: AppConfig
    registry: AgentRegistry
    usage_cache: SessionUsageCache
    token_estimator: TokenEstimator
    engine: RoutingEngine
    proxy: BackendProxy
    pipeline: AgentInterceptionPipeline
    loopback: LoopbackCaller | None = None
    event_log: JsonlEventLog | None = None

    async def close(self) -> None:
        await self.proxy.close()
        if self.loopback is not None:
            await self.loopback.close()
        if self.event_log is not None:
            self.event_log.close()


def build_runtime(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    upstream_caller: UpstreamCaller | None = None,
    token_estimator: TokenEstimator | None = None,
) -> RouterRuntime:
    config = load_app_config(settings.router_config_path)
    event_log = (
        JsonlEventLog(settings.event_log_path) if settings.event_log_enabled else None
    )
    event_hook = event_log.record if event_log is not None else None
    registry = build_agent_registry(config.agents)
    usage_cache = SessionUsageCache(
        max_entries=settings.session_usage_max_entries,
        ttl_seconds=settings.session_usage_ttl_seconds,
    )
    estimator = token_estimator or TokenEstimator()
    engine = RoutingEngine(
        config,
        token_estimator=estimator,
        usage_cache=usage_cache,
        project_resolver=ProjectResolver(
            settings.projects_root,
            settings.home_root,
            cache_size=settings.session_project_cache_size,
        ),
        custom_router=(
            load_custom_router(config.custom_router_path)
            if config.custom_router_path
            else None
        ),
        event_hook=event_hook,
    )
    proxy = BackendProxy(
        config,
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        transport=transport,
    )
    loopback = None
    if upstream_caller is None:
        loopback = LoopbackCaller(port=config.port, api_key=config.api_key)
        upstream_caller = loopback
    pipeline = AgentInterceptionPipeline(
        registry, config, upstream_caller=upstream_caller, event_hook=event_hook
    )
    return RouterRuntime(
        config=config,
        registry=registry,
        usage_cache=usage_cache,
        token_estimator=estimator,
        engine=engine,
        proxy=proxy,
        pipeline=pipeline,
        loopback=loopback,
        event_log=event_log,
    )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    app.state.settings = settings
    app.state.runtime = None
    app.state.config_error = None
    try:
        runtime = build_runtime(settings)
    except (FileNotFoundError, ConfigError) as exc:
        # Stay up and report the problem on every request.
        logger.error("startup_config_error path=%s error=%s", settings.router_config_path, exc)
        app.state.config_error = exc
        return
    app.state.runtime = runtime
    logger.info(
        (
            "startup complete router_config_path=%s providers=%d agents=%d "
            "default_model=%s custom_router=%s event_log_enabled=%s"
        ),
        settings.router_config_path,
        len(runtime.config.providers),
        len(runtime.registry),
        runtime.config.router.default,
        bool(runtime.config.custom_router_path),
        settings.event_log_enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    runtime: RouterRuntime | None = getattr(app.state, "runtime", None)
    if runtime is not None:
        await runtime.close()
    logger.info("shutdown complete")


def _runtime() -> RouterRuntime:
    runtime: RouterRuntime | None = getattr(app.state, "runtime", None)
    if runtime is None:
        error = getattr(app.state, "config_error", None)
        if error is not None:
            raise error
        raise ConfigError("Router is not configured.")
    return runtime


async def _read_json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except Exception as exc:
        raise HTTPException(status_code=400, detail=f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object request body.")
    return payload


async def _close_quietly(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except (httpx.HTTPError, RuntimeError) as exc:
        logger.debug("stream_close_failed error=%r", exc)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/messages/count_tokens")
async def count_tokens(request: Request) -> dict[str, int]:
    payload = await _read_json_body(request)
    runtime = _runtime()
    return {"input_tokens": runtime.token_estimator.count_payload(payload)}


@app.post("/v1/messages")
async def messages(request: Request) -> Response:
    payload = await _read_json_body(request)
    runtime = _runtime()
    active_agents = runtime.registry.activate(payload, runtime.config)
    decision = await runtime.engine.decide(payload, runtime.config)
    is_stream = bool(payload.get("stream"))

    try:
        target, upstream = await runtime.proxy.send(
            payload, incoming_headers=dict(request.headers), stream=is_stream
        )
    except UnknownProviderError as exc:
        return JSONResponse(
            status_code=400,
            content={
                "error": {
                    "type": "unknown_provider",
                    "message": str(exc),
                    "model": exc.model,
                }
            },
        )
    except httpx.RequestError as exc:
        return upstream_error_response(exc)

    response_headers = filter_response_headers(upstream.headers)
    response_headers["x-router-model"] = target.label
    response_headers["x-router-rule"] = decision.rule

    if not is_stream:
        body = await upstream.aread()
        await upstream.aclose()
        if upstream.is_success:
            try:
                record_json_usage(
                    json.loads(body),
                    session_id=decision.session_id,
                    usage_cache=runtime.usage_cache,
                )
            except ValueError:
                logger.debug("non_json_upstream_body target=%s", target.label)
        return Response(
            content=body, status_code=upstream.status_code, headers=response_headers
        )

    media_type = response_headers.pop("content-type", "text/event-stream")
    teed = tee_usage(
        ResponseByteStream(upstream),
        session_id=decision.session_id,
        usage_cache=runtime.usage_cache,
    )
    body_stream: AsyncIterable[bytes] = teed
    if active_agents and upstream.is_success:
        body_stream = runtime.pipeline.intercept_bytes(
            teed, request=payload, active_agents=active_agents
        )

    async def stream_generator() -> AsyncIterator[bytes]:
        try:
            async for chunk in body_stream:
                yield chunk
        except httpx.RequestError as exc:
            logger.warning(
                "upstream_stream_closed_prematurely target=%s error=%r", target.label, exc
            )
        finally:
            await _close_quietly(body_stream)
            await _close_quietly(teed)
            await upstream.aclose()

    return StreamingResponse(
        content=stream_generator(),
        status_code=upstream.status_code,
        headers=response_headers,
        media_type=media_type,
    )


@app.exception_handler(FileNotFoundError)
async def config_missing_handler(_: Request, exc: FileNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(ConfigError)
async def config_error_handler(_: Request, exc: ConfigError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run() -> None:
    import uvicorn

    settings = get_settings()
    try:
        config = load_app_config(settings.router_config_path)
        host, port = config.host, config.port
    except (FileNotFoundError, ConfigError) as exc:
        logger.error("router_config_unavailable error=%s", exc)
        host, port = "127.0.0.1", 3456
    uvicorn.run(
        "open_agent_router.main:app",
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    run()
