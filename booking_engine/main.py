import logging
from datetime import date

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from booking_engine.auth.dependencies import user_id_from_authorization
from booking_engine.core import config
from booking_engine.core.errors import BookingEngineError, PersistenceUnavailable, RateLimited
from booking_engine.database import Base, SessionLocal, engine, ensure_booking_schema
from booking_engine.models import admission_guard, appointment, availability, policy, user  # noqa: F401
from booking_engine.routes import booking_routes, policy_routes
from booking_engine.services.admission import purge_stale_guards
from booking_engine.services.rate_limiter import build_rate_limiter, classify_request

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

config.validate_runtime_config()

app = FastAPI(title='Booking Engine')

rate_limiter = build_rate_limiter()


@app.middleware('http')
async def enforce_rate_limits(request: Request, call_next):
    if not config.RATE_LIMIT_ENABLED:
        return await call_next(request)

    client_ip = request.client.host if request.client else 'unknown'
    user_id = user_id_from_authorization(request.headers.get('authorization'))
    assignment = classify_request(request.url.path, request.method, client_ip, user_id)

    try:
        decision = rate_limiter.check(assignment)
    except RateLimited as exc:
        return JSONResponse(
            status_code=exc.status_code,
            content={'success': False, 'code': exc.code, 'message': exc.message, 'tier': exc.tier},
            headers={'Retry-After': str(exc.retry_after)},
        )

    response = await call_next(request)
    response.headers['X-RateLimit-Tier'] = decision.tier
    response.headers['X-RateLimit-Limit'] = str(decision.limit)
    response.headers['X-RateLimit-Remaining'] = str(decision.remaining)
    return response


# Added after the rate limiter so CORS wraps it and 429 responses carry CORS headers.
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)


@app.exception_handler(BookingEngineError)
async def handle_booking_engine_error(request: Request, exc: BookingEngineError):
    logger.error(
        'Booking engine error %s on %s %s: %s',
        exc.code,
        request.method,
        request.url.path,
        exc.message,
    )
    message = exc.message
    if isinstance(exc, PersistenceUnavailable):
        message = 'An error occurred. Please try again later.'
    return JSONResponse(
        status_code=exc.status_code,
        content={'success': False, 'code': exc.code, 'message': message},
    )


@app.on_event('startup')
def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_booking_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL.')
        return

    try:
        with SessionLocal() as db:
            purge_stale_guards(db, date.today())
    except SQLAlchemyError:
        logger.exception('Admission guard cleanup failed.')


@app.get('/')
def root():
    return {'status': 'Booking Engine API Running'}


app.include_router(booking_routes.router)
app.include_router(policy_routes.router, prefix='/policy')
