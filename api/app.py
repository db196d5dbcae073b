"""
HTTP surface of the dispatch coordinator.

Customers and shop dashboards place orders, move them through their
lifecycle and follow the partner's position here. Partners use the same
transition and location endpoints when they are not on Telegram.
"""
import json
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from api.schemas import (
    AvailableOrderResponse, ErrorResponse, LocationRequest, LocationResponse, OrderCreatedResponse, OrderCreateRequest,
    OrderResponse, ShopResponse, TrackPointResponse, TransitionRequest, TransitionResponse,
)
from core.coordinator import DispatchCoordinator
from core.errors import (
    AlreadyAssigned, DispatchError, InvalidTransition, NotAssignedError, OrderNotFound, StaleOrderError,
)

# Outcome error code -> HTTP status
ERROR_STATUS = {
    OrderNotFound.code: status.HTTP_404_NOT_FOUND,
    AlreadyAssigned.code: status.HTTP_409_CONFLICT,
    InvalidTransition.code: 422,
    NotAssignedError.code: status.HTTP_403_FORBIDDEN,
}


def _error(code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST),
        content={"error": code, "message": message},
    )


def get_coordinator(request: Request) -> DispatchCoordinator:
    return request.app.state.coordinator


def create_app(coordinator: DispatchCoordinator) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Dispatch API starting up...")
        yield
        await coordinator.shutdown()
        logger.info("Dispatch API shut down, tracking streams closed.")

    app = FastAPI(
        title="Order Dispatch API",
        description="Order lifecycle, partner dispatch and live delivery tracking.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator

    # Web dashboards are served from another origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Exception Handlers ---

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        return _error(exc.code, exc.message)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=422,
            content={"error": "invalid_request", "message": str(exc)},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": f"HTTP {exc.status_code}", "message": exc.detail},
        )

    # --- Orders ---

    @app.post("/orders", response_model=OrderCreatedResponse, status_code=status.HTTP_201_CREATED)
    async def create_order(body: OrderCreateRequest, coordinator: DispatchCoordinator = Depends(get_coordinator)):
        order = await coordinator.create_order(
            customer_id=body.customer_id,
            shop_id=body.shop_id,
            items=[item.model_dump() for item in body.items],
            delivery_address=body.delivery_address,
            delivery_lat=body.delivery_lat,
            delivery_lng=body.delivery_lng,
            pickup_address=body.pickup_address,
            pickup_lat=body.pickup_lat,
            pickup_lng=body.pickup_lng,
            estimated_delivery_time=body.estimated_delivery_time,
        )
        return OrderCreatedResponse(id=order.id, status=order.status.value)

    @app.get("/orders", response_model=list[OrderResponse])
    async def list_orders(order_status: str | None = Query(None, alias="status"), unassigned: bool = False,
                          partner_id: str | None = None,
                          coordinator: DispatchCoordinator = Depends(get_coordinator)):
        """Order board, e.g. `?status=ready&unassigned=true` for deliveries nobody has taken yet."""
        orders = await coordinator.list_orders(order_status, unassigned=unassigned, partner_id=partner_id)
        return [OrderResponse(**order.to_dict()) for order in orders]

    @app.get("/partners/{partner_id}/available-orders", response_model=list[AvailableOrderResponse])
    async def available_orders(partner_id: str, radius_km: float | None = Query(None, ge=0),
                               coordinator: DispatchCoordinator = Depends(get_coordinator)):
        candidates = await coordinator.available_orders(partner_id, radius_km)
        return [
            AvailableOrderResponse(order=OrderResponse(**c.item.to_dict()), distance_km=round(c.distance_km, 3))
            for c in candidates
        ]

    @app.get("/orders/{order_id}", response_model=OrderResponse, responses={404: {"model": ErrorResponse}})
    async def get_order(order_id: str, coordinator: DispatchCoordinator = Depends(get_coordinator)):
        order = await coordinator.get_order(order_id)
        return OrderResponse(**order.to_dict())

    @app.post(
        "/orders/{order_id}/transition",
        response_model=TransitionResponse,
        responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    )
    async def transition_order(order_id: str, body: TransitionRequest,
                               coordinator: DispatchCoordinator = Depends(get_coordinator)):
        outcome = await coordinator.request_transition(order_id, body.actor, body.actor_id, body.action)
        if not outcome.ok:
            return _error(outcome.error, outcome.message)
        return TransitionResponse(status=outcome.status.value, changed=outcome.changed)

    # --- Tracking ---

    @app.post("/orders/{order_id}/location", response_model=LocationResponse, responses={403: {"model": ErrorResponse}})
    async def report_location(order_id: str, body: LocationRequest,
                              coordinator: DispatchCoordinator = Depends(get_coordinator)):
        outcome = await coordinator.report_location(order_id, body.partner_id, body.lat, body.lng, timestamp=body.timestamp)
        if outcome.error == NotAssignedError.code:
            return _error(outcome.error, outcome.message)
        reason = None
        if not outcome.accepted:
            reason = StaleOrderError.code if outcome.error == StaleOrderError.code else "out_of_order"
        return LocationResponse(accepted=outcome.accepted, reason=reason)

    @app.get("/orders/{order_id}/track", response_model=list[TrackPointResponse])
    async def get_track(order_id: str, coordinator: DispatchCoordinator = Depends(get_coordinator)):
        samples = await coordinator.track(order_id)
        return [
            TrackPointResponse(partner_id=s.partner_id, lat=s.lat, lng=s.lng, status=s.status.value, timestamp=s.timestamp)
            for s in samples
        ]

    @app.get("/orders/{order_id}/stream")
    async def stream_order(order_id: str, watcher_id: str = Query(...),
                           coordinator: DispatchCoordinator = Depends(get_coordinator)):
        """Newline-delimited JSON events until the order ends or the client disconnects."""
        subscription = await coordinator.subscribe(order_id, watcher_id)

        async def events():
            try:
                async for update in subscription:
                    yield json.dumps(update.to_dict()) + "\n"
            finally:
                subscription.unsubscribe()

        return StreamingResponse(events(), media_type="application/x-ndjson")

    # --- Shops ---

    @app.get("/shops/nearby", response_model=list[ShopResponse])
    async def nearby_shops(lat: float = Query(..., ge=-90, le=90), lng: float = Query(..., ge=-180, le=180),
                           radius_km: float | None = Query(None, ge=0),
                           coordinator: DispatchCoordinator = Depends(get_coordinator)):
        candidates = await coordinator.nearby_shops(lat, lng, radius_km)
        return [
            ShopResponse(
                id=c.item.id, name=c.item.name, category=c.item.category,
                lat=c.item.lat, lng=c.item.lng, distance_km=round(c.distance_km, 3),
            )
            for c in candidates
        ]

    return app
