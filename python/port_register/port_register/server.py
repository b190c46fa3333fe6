# Project RoboOrchard
#
# Copyright (c) 2024-2025 Horizon Robotics. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or
# implied. See the License for the specific language governing
# permissions and limitations under the License.

import argparse
import logging
from typing import Any, Optional

import pydantic
from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from port_register.config import PortRegisterCfg, load_config
from port_register.errors import PortRegisterError, PortValidationError
from port_register.service import PortRegisterService
from port_register.utils import coerce_int, ms_to_iso, setup_logging

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "*",
}


class RegisterRequest(pydantic.BaseModel):
    """Body of ``POST /ports/register``.

    Fields are validated by the registry so that every rejection is
    reported as a 400 with a readable message.
    """

    model_config = pydantic.ConfigDict(populate_by_name=True)

    port: Any = None
    agent: Any = None
    reason: Any = None
    ttl_minutes: Any = pydantic.Field(default=None, alias="ttlMinutes")


class AgentRequest(pydantic.BaseModel):
    """Optional body of heartbeat and release requests."""

    agent: Any = None


def get_service(request: Request) -> PortRegisterService:
    return request.app.state.service


def _query_port(value: Optional[str], name: str) -> Optional[int]:
    if value is None or not value.strip():
        return None
    port = coerce_int(value)
    if port is None:
        raise PortValidationError(f"Query parameter {name} must be an integer")
    return port


router = APIRouter()


@router.get("/ports")
async def list_ports(service: PortRegisterService = Depends(get_service)):
    """List live registrations annotated with the OS port state."""
    registrations = await service.list_ports()
    return {
        "registrations": [r.to_json_dict() for r in registrations],
        "count": len(registrations),
    }


@router.get("/ports/system")
async def system_ports(service: PortRegisterService = Depends(get_service)):
    """List every OS-bound port, 500 if the port table is unreadable."""
    ports = await service.system_ports()
    return {
        "ports": [p.to_json_dict() for p in ports],
        "total": len(ports),
    }


@router.get("/ports/check/{port}")
async def check_port(
    port: str, service: PortRegisterService = Depends(get_service)
):
    result = await service.check(port)
    return result.to_json_dict()


@router.post("/ports/register")
async def register_port(
    body: RegisterRequest, service: PortRegisterService = Depends(get_service)
):
    registration = await service.register(
        body.port, body.agent, body.reason, body.ttl_minutes
    )
    return JSONResponse(
        status_code=201,
        content={"success": True, "registration": registration.to_json_dict()},
    )


@router.post("/ports/{port}/heartbeat")
async def heartbeat(
    port: str,
    body: Optional[AgentRequest] = None,
    service: PortRegisterService = Depends(get_service),
):
    agent = body.agent if body is not None else None
    registration = await service.heartbeat(port, agent)
    return {
        "success": True,
        "expiresAt": ms_to_iso(registration.expires_at),
    }


@router.delete("/ports/{port}")
async def release_port(
    port: str,
    body: Optional[AgentRequest] = None,
    service: PortRegisterService = Depends(get_service),
):
    agent = body.agent if body is not None else None
    registration = await service.release(port, agent)
    return {"success": True, "released": registration.to_json_dict()}


@router.delete("/ports")
async def clear_ports(service: PortRegisterService = Depends(get_service)):
    """Drop every registration. Admin use, no ownership check."""
    cleared = await service.clear_all()
    return {
        "success": True,
        "message": "All registrations cleared",
        "cleared": cleared,
    }


@router.get("/suggest")
async def suggest(
    min_port: Optional[str] = Query(default=None, alias="min"),
    max_port: Optional[str] = Query(default=None, alias="max"),
    service: PortRegisterService = Depends(get_service),
):
    port, os_checked = await service.suggest(
        _query_port(min_port, "min"), _query_port(max_port, "max")
    )
    return {
        "port": port,
        "message": f"Port {port} is available",
        "osChecked": os_checked,
    }


@router.get("/health")
async def health():
    return {"status": "ok"}


async def port_register_exception_handler(
    request: Request, exc: PortRegisterError
):
    """Render a :class:`PortRegisterError` as a JSON error body.

    Args:
        request (Request): The incoming request.
        exc (PortRegisterError): The exception to handle.

    Returns:
        JSONResponse: ``{"error": ...}`` with the exception status code.
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=CORS_HEADERS,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
):
    """Report malformed request bodies as 400 instead of 422."""
    return JSONResponse(
        status_code=400,
        content={"error": "Malformed request body"},
        headers=CORS_HEADERS,
    )


async def options_handler(path: str):
    """Handle OPTIONS requests for CORS preflight."""
    return Response(status_code=200, headers=CORS_HEADERS)


async def add_cors_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


def create_app(
    service: Optional[PortRegisterService] = None,
    cfg: Optional[PortRegisterCfg] = None,
) -> FastAPI:
    """Create the port register application.

    Args:
        service (PortRegisterService, optional): Service answering the
            requests. Built from ``cfg`` when omitted.
        cfg (PortRegisterCfg, optional): Configuration. Read from the
            environment when omitted.

    Returns:
        FastAPI: The application with routes mounted under every
        configured prefix.
    """
    if cfg is None:
        cfg = load_config()
    if service is None:
        service = PortRegisterService.from_config(cfg)

    app = FastAPI(title="Port Register")
    app.state.service = service
    app.state.cfg = cfg

    for prefix in cfg.api_prefixes:
        app.include_router(router, prefix=prefix)

    app.add_exception_handler(
        PortRegisterError, port_register_exception_handler
    )
    app.add_exception_handler(
        RequestValidationError, validation_exception_handler
    )
    app.add_api_route("/{path:path}", options_handler, methods=["OPTIONS"])
    app.middleware("http")(add_cors_headers)
    return app


def main():
    parser = argparse.ArgumentParser(description="Port Register server")
    parser.add_argument(
        "--config", type=str, default=None, help="JSON config file"
    )
    parser.add_argument("--host", type=str, default=None)
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to run the server on (default: 4444)",
    )
    parser.add_argument(
        "--data-file",
        type=str,
        default=None,
        help="Path of the JSON registry document",
    )
    parser.add_argument(
        "--provider",
        type=str,
        default=None,
        choices=["auto", "netstat", "ss", "lsof", "psutil"],
        help="How the OS port table is read",
    )
    parser.add_argument("--log-level", type=str, default=None)
    args = parser.parse_args()

    cfg = load_config(
        args.config,
        host=args.host,
        port=args.port,
        data_file=args.data_file,
        provider=args.provider,
        log_level=args.log_level,
    )
    setup_logging(cfg.log_level)
    app = create_app(cfg=cfg)

    logger.info("Port register running on http://%s:%d", cfg.host, cfg.port)
    logger.info("Registry file: %s", app.state.service.registry.store.path)

    import uvicorn

    uvicorn.run(app, host=cfg.host, port=cfg.port)


if __name__ == "__main__":
    main()
