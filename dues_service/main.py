import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .api import configuration, dues, system
from .config import Base, SessionLocal, engine, settings
from .core.errors import register_exception_handlers
from .core.logging import configure_logging
from .core.request_context import REQUEST_ID_HEADER, assign_request_id
from .core.security import SecurityHeadersMiddleware, log_security_warnings
from .services.dues_configuration import ensure_dues_configuration, get_or_create_delinquency_policy

configure_logging(settings.log_level, settings.log_format)
logger = logging.getLogger(__name__)

app = FastAPI(title="Resident Dues Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SecurityHeadersMiddleware)
register_exception_handlers(app)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = assign_request_id(request)
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


@app.on_event("startup")
def startup() -> None:
    # In dev we make sure tables exist.
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        ensure_dues_configuration(session)
        get_or_create_delinquency_policy(session)
        session.commit()
    log_security_warnings(settings.jwt_secret, settings.payment_backend, settings.stripe_api_key)
    logger.info("Dues service started (payment backend: %s)", settings.payment_backend)


app.include_router(dues.router, prefix="/dues", tags=["dues"])
app.include_router(configuration.router, prefix="/dues-config", tags=["dues-config"])
app.include_router(system.router, prefix="/system", tags=["system"])
