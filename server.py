import logging
from decimal import Decimal
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy import text

from classes.auth import CallerIdentity, TriggerAuthenticator
from classes.backend import Backend
from classes.errors import AuthError, InputError, InvalidTransitionError, StoreError
from classes.snapshots import OrderStatus

logger = logging.getLogger("craft_backend")


class OrderItemIn(BaseModel):
    productId: str
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0)


class OrderCreate(BaseModel):
    buyer_id: str
    artisan_id: str
    total_amount: Decimal = Field(ge=0)
    items: List[OrderItemIn] = []
    product_name: Optional[str] = None
    artisan_name: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_platform: Optional[str] = None
    telegram_chat_id: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class TriggerResult(BaseModel):
    success: bool
    expiredRequestsCount: int
    timestamp: str


def create_app(backend: Optional[Backend] = None, authenticator: Optional[TriggerAuthenticator] = None) -> FastAPI:
    app = FastAPI(title="Craft request deadlines and order lifecycle")

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins for dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.backend = backend
    app.state.authenticator = authenticator

    def get_backend(request: Request) -> Backend:
        if request.app.state.backend is None:
            request.app.state.backend = Backend()
        return request.app.state.backend

    def get_caller(request: Request, authorization: Optional[str] = Header(default=None)) -> CallerIdentity:
        if request.app.state.authenticator is None:
            request.app.state.authenticator = TriggerAuthenticator()
        try:
            return request.app.state.authenticator.identify(authorization)
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=str(e))

    @app.get("/health")
    def health(backend: Backend = Depends(get_backend)):
        status = {"status": "healthy", "service": "craft-lifecycle"}
        session = backend.SessionFactory()
        try:
            session.execute(text("SELECT 1"))
            status["database"] = "connected"
        except Exception as e:
            status["database"] = f"error: {e.__class__.__name__}"
            status["status"] = "degraded"
        finally:
            session.close()
        return status

    @app.post("/deadlines/trigger", response_model=TriggerResult)
    def trigger_deadline_check(
        caller: CallerIdentity = Depends(get_caller),
        backend: Backend = Depends(get_backend),
    ):
        try:
            return backend.trigger.run_manual(caller)
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=str(e))
        except StoreError as e:
            logger.error(f"Manual deadline check failed: {e}")
            raise HTTPException(status_code=503, detail="Internal error occurred")

    @app.post("/orders", status_code=201)
    def create_order(order: OrderCreate, backend: Backend = Depends(get_backend)) -> dict[str, Any]:
        values = order.model_dump()
        values["items"] = [
            {"productId": it.productId, "quantity": it.quantity, "price": str(it.price)}
            for it in order.items
        ]
        try:
            created = backend.create_order(values)
        except StoreError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"id": created.id, "status": created.status.value}

    @app.put("/orders/{order_id}/status")
    def update_order_status(
        order_id: str,
        status_update: OrderStatusUpdate,
        backend: Backend = Depends(get_backend),
    ) -> dict[str, Any]:
        try:
            outcome = backend.orders.apply_transition(order_id, status_update.status)
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except InputError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except StoreError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return outcome.to_dict()

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
