from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from aws_lambda_powertools import Logger
import uvicorn

from booking_swap.api.routes import router
from booking_swap.config import settings
from booking_swap.db import init_db
from booking_swap.errors import SwapEngineError
from booking_swap.events import event_dispatcher
from booking_swap.services.ledger import ledger_publisher
from booking_swap.services.notification import notification_service, register_notification_handlers

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)

app = FastAPI()

# Include API routes
app.include_router(router, prefix="/api/v1")

#Allow all CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SwapEngineError)
def swap_engine_error_handler(request: Request, exc: SwapEngineError):
    """Every engine error becomes {detail, code, category, retryable}"""
    logger.warning(
        f"{request.method} {request.url.path} failed with {exc.code}: {exc}",
        extra={"category": exc.category, "retryable": exc.retryable},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
def startup_event():
    """Setup database and publishers"""
    init_db()

    notification_service.initialize(profile_name=settings.AWS_PROFILE)
    ledger_publisher.initialize(profile_name=settings.AWS_PROFILE)
    register_notification_handlers(event_dispatcher, notification_service)

    logger.info("Server is running")
    logger.info(f"Database: {settings.DATABASE_URL}")
    logger.info(f"AWS Region: {settings.AWS_REGION}")
    if not settings.NOTIFICATION_TOPIC_ARN:
        logger.warning("NOTIFICATION_TOPIC_ARN not set, notifications are skipped")
    if not settings.MINT_QUEUE_URL:
        logger.warning("MINT_QUEUE_URL not set, matches stay pending until confirmed manually")


@app.get("/")
def root():
    """Root endpoint"""
    return {
        "message": "BOOKING SWAP API",
        "version": "1.0.0",
        "docs": "/docs"
    }


#For local run
if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
