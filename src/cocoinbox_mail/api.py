"""FastAPI application factory and HTTP schemas for the Cocoinbox mail service.

This module provides the REST API interface of the mail service:

- Pydantic models defining request/response schemas for all endpoints
- A factory function to create and configure the FastAPI application
- Authentication via API token in the X-API-Token header
- Endpoints to send mail, read the free tier inbox, manage SMTP domains
  and expose Prometheus metrics

The service instance is attached to ``app.state`` by :func:`create_app`;
there is no module level service.

Example:
    Creating and running the API application::

        from cocoinbox_mail.delivery import MailService
        from cocoinbox_mail.api import create_app

        service = MailService(settings)
        app = create_app(service, api_token="secret-token")
        uvicorn.run(app, host="0.0.0.0", port=4000)
"""

from typing import Any, AsyncContextManager, Callable, List, Optional
import logging

import aiosqlite
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .delivery import MailService
from .errors import ConfigurationError, TransportExhausted, TransportFailure
from .models import DomainCreate, DomainUsage, MailUser, OutgoingMessage

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


def get_service(request: Request) -> MailService:
    svc = getattr(request.app.state, "service", None)
    if svc is None:
        raise HTTPException(500, "Service not initialized")
    return svc


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class SendMailPayload(BaseModel):
    """Payload accepted by ``POST /mail/send``."""
    user: MailUser
    message: OutgoingMessage


class SendMailResponse(CommandStatus):
    strategy: str
    domain_id: Optional[str] = None
    result: Any = None


class InboxPayload(BaseModel):
    user: MailUser


class InboxResponse(CommandStatus):
    messages: List[Any]


class DomainResponse(CommandStatus):
    """Stored SMTP domain, serialized with ``from`` and without password."""
    domain: dict[str, Any]


class DomainsResponse(CommandStatus):
    domains: List[dict[str, Any]]


class UsageResponse(CommandStatus):
    usage: List[DomainUsage]


def create_app(
    svc: MailService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`cocoinbox_mail.delivery.MailService` that
        implements the delivery policy.
    api_token:
        Optional secret used to protect every endpoint except ``/health``.
        When provided, the ``X-API-Token`` header must match this value.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    api = FastAPI(title="Cocoinbox Mail Service", lifespan=lifespan)
    api.state.service = svc
    api.state.api_token = api_token

    mail = APIRouter(prefix="/mail", tags=["mail"], dependencies=[auth_dependency])
    domains = APIRouter(tags=["domains"], dependencies=[auth_dependency])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.error(f"Validation error on {request.method} {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def service_status():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @mail.post("/send", response_model=SendMailResponse, response_model_exclude_none=True)
    async def send_mail(payload: SendMailPayload, service: MailService = Depends(get_service)):
        """Deliver a message using the tiered delivery policy."""
        try:
            delivered = await service.send_email(payload.user, payload.message)
        except ConfigurationError as exc:
            raise HTTPException(500, {"error": str(exc), "code": exc.code}) from exc
        except TransportExhausted as exc:
            detail = {"error": str(exc), "code": exc.code, "failures": [str(f) for f in exc.failures]}
            raise HTTPException(503, detail) from exc
        except TransportFailure as exc:
            raise HTTPException(502, {"error": str(exc), "code": exc.code}) from exc
        return SendMailResponse(ok=True, **delivered)

    @mail.post("/inbox", response_model=InboxResponse, response_model_exclude_none=True)
    async def inbox(payload: InboxPayload, service: MailService = Depends(get_service)):
        """Return the messages of the user's inbox (empty for premium)."""
        try:
            messages = await service.receive_emails(payload.user)
        except TransportFailure as exc:
            raise HTTPException(502, {"error": str(exc), "code": exc.code}) from exc
        return InboxResponse(ok=True, messages=messages)

    @domains.post("/domain", response_model=DomainResponse, response_model_exclude_none=True)
    async def add_domain(payload: DomainCreate, service: MailService = Depends(get_service)):
        """Register a new outbound SMTP domain."""
        try:
            domain = await service.allocator.add_domain(payload)
        except aiosqlite.IntegrityError as exc:
            raise HTTPException(409, f"Domain '{payload.id}' already exists") from exc
        return DomainResponse(ok=True, domain=domain.public_dict())

    @domains.get("/domains", response_model=DomainsResponse, response_model_exclude_none=True)
    async def list_domains(service: MailService = Depends(get_service)):
        """List configured SMTP domains in priority order."""
        items = await service.allocator.list_domains_by_priority()
        return DomainsResponse(ok=True, domains=[d.public_dict() for d in items])

    @domains.get("/domains/usage", response_model=UsageResponse, response_model_exclude_none=True)
    async def domains_usage(service: MailService = Depends(get_service)):
        """Return the stored usage counter of every domain checked so far."""
        rows = await service.persistence.list_usage()
        return UsageResponse(ok=True, usage=[DomainUsage(**row) for row in rows])

    @domains.get("/domains/{domain_id}", response_model=DomainResponse, response_model_exclude_none=True)
    async def get_domain(domain_id: str, service: MailService = Depends(get_service)):
        """Return one SMTP domain, without its password."""
        try:
            domain = await service.allocator.get_domain(domain_id)
        except ValueError as exc:
            raise HTTPException(404, str(exc)) from exc
        return DomainResponse(ok=True, domain=domain.public_dict())

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics(service: MailService = Depends(get_service)):
        """Expose Prometheus metrics collected by the delivery policy."""
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(mail)
    api.include_router(domains)
    return api
