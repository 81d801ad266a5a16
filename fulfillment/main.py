import asyncio
import hashlib
import hmac
import json
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from typing import List, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from fulfillment import config
from fulfillment.audit import AuditHistory
from fulfillment.consumer import start_consumer
from fulfillment.database import build_engine, build_session_factory, init_db
from fulfillment.errors import FulfillmentError, WebhookError
from fulfillment.inventory import StockLedger
from fulfillment.messaging import NotificationPublisher
from fulfillment.models import StockMutationReason
from fulfillment.schemas import (
    BulkStatusUpdateRequest,
    BulkUpdateResult,
    ItemAvailability,
    OrderRead,
    RestockRequest,
    RetryResult,
    StatusHistoryRead,
    StatusUpdateRequest,
    StockItem,
    StockLevel,
    StockMutationRead,
)
from fulfillment.status import OrderStatusMachine
from fulfillment.utils.logging import configure_logging
from fulfillment.webhook import PaymentEventPipeline

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    audit: AuditHistory
    ledger: StockLedger
    status_machine: OrderStatusMachine
    pipeline: PaymentEventPipeline
    publisher: Optional[NotificationPublisher] = None


def build_services(session_factory, publisher=None) -> Services:
    """Composition root: every service is wired here, once per process."""
    audit = AuditHistory(session_factory)
    ledger = StockLedger(session_factory, audit, publisher)
    return Services(
        audit=audit,
        ledger=ledger,
        status_machine=OrderStatusMachine(session_factory, audit),
        pipeline=PaymentEventPipeline(session_factory, ledger, audit, publisher),
        publisher=publisher,
    )


async def _run_retry_consumer(pipeline):
    try:
        await start_consumer(pipeline)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error("webhook.retry.consumer.stopped", error=str(e))


def get_services(request: Request) -> Services:
    return request.app.state.services


async def verify_signature(request: Request, x_signature: Optional[str] = Header(default=None)) -> bytes:
    """Reject unsigned or tampered payment events before they reach the pipeline."""
    body = await request.body()
    secret = request.app.state.webhook_secret
    if not secret or not x_signature:
        raise HTTPException(status_code=400, detail="Missing payment event signature")
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, x_signature):
        raise HTTPException(status_code=400, detail="Invalid payment event signature")
    return body


def create_app(
    services: Optional[Services] = None,
    database_url: str = config.DATABASE_URL,
    webhook_secret: str = config.PAYMENT_WEBHOOK_SECRET,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return

        configure_logging()
        engine = build_engine(database_url)
        await init_db(engine)
        publisher = NotificationPublisher()
        await publisher.connect()
        app.state.services = build_services(build_session_factory(engine), publisher)
        consumer_task = asyncio.create_task(_run_retry_consumer(app.state.services.pipeline))
        yield
        consumer_task.cancel()
        with suppress(asyncio.CancelledError):
            await consumer_task
        await publisher.close()
        await engine.dispose()

    app = FastAPI(title="Fulfillment Service", lifespan=lifespan)
    app.state.webhook_secret = webhook_secret
    if services is not None:
        app.state.services = services

    @app.exception_handler(FulfillmentError)
    async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.post("/api/webhooks/payments")
    async def receive_payment_event(body: bytes = Depends(verify_signature), svc: Services = Depends(get_services)):
        try:
            event = json.loads(body)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        if not isinstance(event, dict):
            raise HTTPException(status_code=400, detail="Payment event must be a JSON object")

        logger.info("webhook.received", event_id=event.get("id"), event_type=event.get("type"))
        try:
            result = await svc.pipeline.ingest(event, raw_body=body.decode("utf-8"))
        except WebhookError as e:
            if e.retryable:
                return JSONResponse(
                    status_code=e.status_code,
                    content={"error": e.message, "code": e.code, "retry": True},
                )
            return JSONResponse(
                status_code=200,
                content={"received": True, "processed": False, "error": e.message, "code": e.code},
            )
        except Exception:
            logger.exception("webhook.unexpected.error")
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error processing webhook", "code": "INTERNAL_ERROR"},
            )

        if result.success:
            return {"received": True, "processed": True, "order_id": result.order_id}
        logger.warning("webhook.processing.unsuccessful", message=result.message, error=result.error)
        return {"received": True, "processed": False, "error": result.error or result.message}

    @app.post("/api/webhooks/payments/retry", response_model=RetryResult)
    async def retry_failed_payment_events(svc: Services = Depends(get_services)):
        logger.info("webhook.retry.manual")
        return await svc.pipeline.retry_failed_events()

    @app.get("/api/orders/{order_id}", response_model=OrderRead)
    async def get_order(order_id: str, svc: Services = Depends(get_services)):
        return await svc.status_machine.get_order(order_id)

    @app.get("/api/orders/{order_id}/history", response_model=List[StatusHistoryRead])
    async def get_order_history(order_id: str, svc: Services = Depends(get_services)):
        return await svc.audit.order_history(order_id)

    @app.patch("/api/orders/bulk-status", response_model=BulkUpdateResult)
    async def bulk_update_status(request: BulkStatusUpdateRequest, svc: Services = Depends(get_services)):
        return await svc.status_machine.bulk_transition(request.order_ids, request.status, request.actor, request.reason)

    @app.patch("/api/orders/{order_id}/status", response_model=OrderRead)
    async def update_status(order_id: str, request: StatusUpdateRequest, svc: Services = Depends(get_services)):
        return await svc.status_machine.transition(order_id, request.status, request.actor, request.reason)

    @app.post("/api/inventory/availability", response_model=List[ItemAvailability])
    async def check_availability(items: List[StockItem], svc: Services = Depends(get_services)):
        return await svc.ledger.check_availability(items)

    @app.get("/api/inventory/{product_id}", response_model=StockLevel)
    async def get_stock_level(product_id: str, variant_id: Optional[str] = None, svc: Services = Depends(get_services)):
        return await svc.ledger.get_stock_level(product_id, variant_id)

    @app.post("/api/inventory/{product_id}/restock", response_model=StockLevel)
    async def restock(product_id: str, request: RestockRequest, svc: Services = Depends(get_services)):
        return await svc.ledger.restock(
            product_id,
            request.quantity,
            request.variant_id,
            actor=request.actor,
            reason=StockMutationReason(request.reason),
        )

    @app.get("/api/inventory/{product_id}/history", response_model=List[StockMutationRead])
    async def get_stock_history(
        product_id: str,
        variant_id: Optional[str] = None,
        limit: int = 100,
        svc: Services = Depends(get_services),
    ):
        return await svc.audit.stock_history(product_id, variant_id, limit)

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
