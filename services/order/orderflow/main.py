from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
import structlog

from orderflow.version import VERSION
from orderflow.api import checkout, orders, outbox
from orderflow.api.deps import get_processor
from orderflow.core.config import settings
from orderflow.core.errors import OrderflowError
from orderflow.core.logging import configure_logging
from orderflow.kafka import consumer as payment_consumer

configure_logging()
logger = structlog.get_logger(__name__)

# Create instrumentator first
instrumentator = Instrumentator()

app = FastAPI(title="Order Service", version=VERSION)

# Instrument the app BEFORE adding routes or middleware
instrumentator.instrument(app).expose(
    app,
    include_in_schema=False,
    endpoint="/order/metrics",
    should_gzip=True,
)


@app.exception_handler(OrderflowError)
async def orderflow_error_handler(request: Request, exc: OrderflowError):
    if exc.http_status >= 500:
        logger.error("request.failed", path=request.url.path, **exc.to_dict())
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# Health endpoints
@app.get("/health")
def health():
    return {"status": "ok"}

@app.get("/order/health")
def order_health():
    return {"status": "ok"}

@app.get("/v1/_info")
def info():
    return {"service": "order", "version": VERSION}


@app.on_event("startup")
async def startup_event():
    for route in app.routes:
        if hasattr(route, "methods") and hasattr(route, "path"):
            logger.debug("route", methods=sorted(route.methods), path=route.path)

    if settings.OUTBOX_PROCESSOR_ENABLED:
        get_processor().start()
    if settings.PAYMENT_CONSUMER_ENABLED:
        payment_consumer.start()

@app.on_event("shutdown")
async def shutdown_event():
    payment_consumer.stop()
    get_processor().stop()
    if settings.OUTBOX_PUBLISH_TO_KAFKA:
        from orderflow.kafka.producer import close
        close()


# Include routers
app.include_router(orders.router, prefix="/order", tags=["orders"])
app.include_router(checkout.router, prefix="/order", tags=["checkout"])
app.include_router(outbox.router, prefix="/order", tags=["outbox"])
