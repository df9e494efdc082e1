# keyproxy/main.py
import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import ValidationError

import proxy
from allowlist import KeyAllowlist
from auth import require_api_key
from config import Settings
from errors import ProxyError
from metrics import MetricsLog
from proxy import Arrival, arrival
from upstream import UpstreamClient

logger = logging.getLogger(__name__)

router = APIRouter()


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info("Key proxy listening on :%s", settings.port)
    logger.info("Upstream base URL: %s", settings.openai_base_url)

    yield

    await app.state.upstream.aclose()


async def proxy_error_handler(request: Request, exc: ProxyError) -> Response:
    return exc.to_response()


@router.get("/health")
async def health() -> dict[str, bool]:
    return {"ok": True}


@router.api_route(
    "/{path:path}",
    methods=["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
)
async def catchall(
    path: str,
    request: Request,
    arrived: Arrival = Depends(arrival),
    api_key: str = Depends(require_api_key),
) -> Response:
    return await proxy.forward(request, api_key, arrived)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.verbose)

    app = FastAPI(title="Key Proxy", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.allowlist = KeyAllowlist(settings.allowed_keys_file, settings.allowed_keys_cache_ttl)
    app.state.upstream = UpstreamClient(
        settings.openai_base_url, settings.openai_api_key, settings.timeout_seconds
    )
    app.state.metrics = MetricsLog(settings.log_file)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ProxyError, proxy_error_handler)
    app.include_router(router)
    return app


def main() -> None:
    try:
        settings = Settings()
    except ValidationError as exc:
        configure_logging(verbose=False)
        logger.error("Invalid configuration (OPENAI_API_KEY is required): %s", exc)
        sys.exit(1)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
