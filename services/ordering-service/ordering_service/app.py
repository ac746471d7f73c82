from __future__ import annotations

import logging
import os
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import schemas
from .checkout import CartLine, CheckoutService, CheckoutValidationError, validate_customer
from .database import get_connection, init_db
from .mailer import LogMailer, Mailer, NotificationDispatcher, ResendMailer
from .payment_client import (
    MockPaymentClient,
    PaymentClient,
    PaymentNotCompletedError,
    PaymentServiceError,
    StripePaymentClient,
)
from .pricing import display_name, variant_display_name
from .repository import (
    MenuItemNotFoundError,
    MenuItemRecord,
    MenuRepository,
    NotificationRepository,
    OrderItemNotFoundError,
    OrderNotFoundError,
    OrderRecord,
    OrderRepository,
    VariantNotFoundError,
    VariantRecord,
)
from .stock import StockUpdateError
from .substitution import MutationResult, SubstitutionError, SubstitutionService
from .workflow import ReplacementType, SubstitutionWorkflow, WorkflowError, WorkflowNotFoundError, WorkflowRegistry

logger = logging.getLogger(__name__)

NOT_FOUND_ERRORS = (
    OrderNotFoundError,
    OrderItemNotFoundError,
    MenuItemNotFoundError,
    VariantNotFoundError,
    WorkflowNotFoundError,
)

# Parameters forwarded from WorkflowActionRequest to each workflow operation.
_WORKFLOW_ACTION_PARAMS = {
    "choose_out_of_stock_scope": ("scope",),
    "mark_out_of_stock": ("duration", "until"),
    "choose_action": ("action",),
    "choose_replacement_type": ("replacement_type",),
    "select_replacement": ("menu_item_id", "variant_name", "quantity"),
}


def build_payment_client() -> PaymentClient:
    mode = os.environ.get("PAYMENT_MODE", "mock").lower()
    if mode == "stripe":
        api_key = os.environ.get("STRIPE_SECRET_KEY")
        if not api_key:
            raise RuntimeError("STRIPE_SECRET_KEY must be set when PAYMENT_MODE=stripe")
        return StripePaymentClient(
            api_key,
            site_url=os.environ.get("PUBLIC_SITE_URL", "http://localhost:5173"),
            currency=os.environ.get("STRIPE_CURRENCY", "usd"),
        )
    return MockPaymentClient(auto_pay=True)


def build_mailer() -> Mailer:
    mode = os.environ.get("EMAIL_MODE", "log").lower()
    if mode == "resend":
        api_key = os.environ.get("RESEND_API_KEY")
        if not api_key:
            raise RuntimeError("RESEND_API_KEY must be set when EMAIL_MODE=resend")
        return ResendMailer(
            api_key,
            sender=os.environ.get("EMAIL_FROM", "Maki Express Ramen House <orders@example.com>"),
        )
    return LogMailer()


def get_menu_repository(request: Request) -> MenuRepository:
    return MenuRepository(request.app.state.connection_factory)


def get_order_repository(request: Request) -> OrderRepository:
    return OrderRepository(request.app.state.connection_factory)


def get_notification_repository(request: Request) -> NotificationRepository:
    return NotificationRepository(request.app.state.connection_factory)


def get_payment_client(request: Request) -> PaymentClient:
    return request.app.state.payment_client


def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer


def get_workflow_registry(request: Request) -> WorkflowRegistry:
    return request.app.state.workflows


def get_dispatcher(
    repo: NotificationRepository = Depends(get_notification_repository),
    mailer: Mailer = Depends(get_mailer),
) -> NotificationDispatcher:
    return NotificationDispatcher(
        repo,
        mailer,
        restaurant_email=os.environ.get("RESTAURANT_EMAIL", "orders@example.com"),
        production=os.environ.get("ENVIRONMENT", "development").lower() == "production",
        timezone_name=os.environ.get("RESTAURANT_TIMEZONE", "America/New_York"),
    )


def get_substitution_service(
    orders: OrderRepository = Depends(get_order_repository),
    menu: MenuRepository = Depends(get_menu_repository),
    payment_client: PaymentClient = Depends(get_payment_client),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> SubstitutionService:
    return SubstitutionService(orders, menu, payment_client, dispatcher)


def get_checkout_service(
    orders: OrderRepository = Depends(get_order_repository),
    menu: MenuRepository = Depends(get_menu_repository),
    payment_client: PaymentClient = Depends(get_payment_client),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> CheckoutService:
    return CheckoutService(orders, menu, payment_client, dispatcher)


def create_app(
    connection_factory=None,
    payment_client: Optional[PaymentClient] = None,
    mailer: Optional[Mailer] = None,
) -> FastAPI:
    connection_factory = connection_factory or get_connection
    init_db(connection_factory)
    app = FastAPI(
        title="Ordering Service",
        version="0.1.0",
        description="Menu, checkout and staff order changes with refunds and additional charges.",
    )
    app.state.connection_factory = connection_factory
    app.state.payment_client = payment_client or build_payment_client()
    app.state.mailer = mailer or build_mailer()
    app.state.workflows = WorkflowRegistry()

    allowed_origins = [
        origin.strip() for origin in os.environ.get("ALLOWED_ORIGINS", "*").split(",")
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)

    @app.get("/healthz", response_model=schemas.HealthResponse, tags=["system"])
    async def healthz() -> schemas.HealthResponse:
        return schemas.HealthResponse(status="ok")

    @app.get("/menu", response_model=schemas.MenuResponse, tags=["menu"])
    async def get_menu(menu: MenuRepository = Depends(get_menu_repository)) -> schemas.MenuResponse:
        return schemas.MenuResponse(
            categories=[schemas.Category(**record.__dict__) for record in menu.list_categories()],
            items=[_menu_item_schema(record) for record in menu.list_menu_items()],
        )

    @app.get(
        "/menu/items/{menu_item_id}/variants",
        response_model=List[schemas.Variant],
        tags=["menu"],
    )
    async def list_variants(
        menu_item_id: str, menu: MenuRepository = Depends(get_menu_repository)
    ) -> List[schemas.Variant]:
        item = menu.require_menu_item(menu_item_id)
        return [_variant_schema(variant, item.name) for variant in menu.list_variants(item.id)]

    @app.put("/menu/items/{menu_item_id}/stock", response_model=schemas.MenuItem, tags=["stock"])
    async def set_item_stock(
        menu_item_id: str,
        payload: schemas.StockUpdateRequest,
        menu: MenuRepository = Depends(get_menu_repository),
    ) -> schemas.MenuItem:
        record = menu.set_item_stock(menu_item_id, payload.status, payload.out_until)
        logger.info("Stock of %s set to %s", menu_item_id, record.stock_status)
        return _menu_item_schema(record)

    @app.put(
        "/menu/items/{menu_item_id}/variants/{variant_name}/stock",
        response_model=schemas.Variant,
        tags=["stock"],
    )
    async def set_variant_stock(
        menu_item_id: str,
        variant_name: str,
        payload: schemas.StockUpdateRequest,
        menu: MenuRepository = Depends(get_menu_repository),
    ) -> schemas.Variant:
        item = menu.require_menu_item(menu_item_id)
        record = menu.set_variant_stock(item.id, variant_name, payload.status, payload.out_until)
        logger.info("Stock of %s/%s set to %s", menu_item_id, variant_name, record.stock_status)
        return _variant_schema(record, item.name)

    @app.post("/menu/stock/reset", response_model=schemas.StockResetResponse, tags=["stock"])
    async def reset_stock(menu: MenuRepository = Depends(get_menu_repository)) -> schemas.StockResetResponse:
        reset = menu.reset_expired_stock()
        logger.info("Stock reset: %d rows back in stock", reset)
        return schemas.StockResetResponse(reset=reset)

    @app.post(
        "/checkout",
        response_model=schemas.CheckoutResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["checkout"],
    )
    async def create_checkout(
        payload: schemas.CheckoutRequest,
        checkout: CheckoutService = Depends(get_checkout_service),
    ) -> schemas.CheckoutResponse:
        customer = validate_customer(
            payload.customer.name,
            payload.customer.email,
            payload.customer.phone,
            payload.special_requests,
        )
        started = checkout.create_checkout(customer, _cart(payload.cart))
        return schemas.CheckoutResponse(**started.__dict__)

    @app.post("/checkout/verify", response_model=schemas.VerifiedOrder, tags=["checkout"])
    async def verify_payment(
        payload: schemas.VerifyPaymentRequest,
        checkout: CheckoutService = Depends(get_checkout_service),
    ) -> schemas.VerifiedOrder:
        verified = checkout.verify_payment(payload.session_id, _cart(payload.cart))
        return schemas.VerifiedOrder(
            order=_order_schema(verified.order),
            payment_id=verified.payment_id,
            duplicate=verified.duplicate,
        )

    @app.post("/checkout/verify-additional", response_model=schemas.VerifiedOrder, tags=["checkout"])
    async def verify_additional_charge(
        payload: schemas.VerifyAdditionalChargeRequest,
        checkout: CheckoutService = Depends(get_checkout_service),
    ) -> schemas.VerifiedOrder:
        verified = checkout.verify_additional_charge(payload.session_id, payload.order_id)
        return schemas.VerifiedOrder(
            order=_order_schema(verified.order),
            payment_id=verified.payment_id,
            additional_charge=True,
        )

    @app.get("/orders", response_model=List[schemas.Order], tags=["orders"])
    async def list_orders(
        limit: int = 50,
        order_status: Optional[str] = Query(default=None, alias="status"),
        orders: OrderRepository = Depends(get_order_repository),
    ) -> List[schemas.Order]:
        return [_order_schema(record) for record in orders.list_orders(limit=limit, status=order_status)]

    @app.get("/orders/{order_id}", response_model=schemas.Order, tags=["orders"])
    async def get_order(
        order_id: str, orders: OrderRepository = Depends(get_order_repository)
    ) -> schemas.Order:
        return _order_schema(orders.require_order(order_id))

    @app.post("/orders/{order_id}/status", response_model=schemas.MutationResponse, tags=["orders"])
    async def update_status(
        order_id: str,
        payload: schemas.StatusUpdateRequest,
        service: SubstitutionService = Depends(get_substitution_service),
    ) -> schemas.MutationResponse:
        return _mutation_schema(service.update_status(order_id, payload.status))

    @app.post("/orders/{order_id}/cancel", response_model=schemas.MutationResponse, tags=["orders"])
    async def cancel_order(
        order_id: str, service: SubstitutionService = Depends(get_substitution_service)
    ) -> schemas.MutationResponse:
        return _mutation_schema(service.cancel_order(order_id))

    @app.post(
        "/orders/{order_id}/items/{order_item_id}/cancel",
        response_model=schemas.MutationResponse,
        tags=["substitutions"],
    )
    async def cancel_item(
        order_id: str,
        order_item_id: str,
        service: SubstitutionService = Depends(get_substitution_service),
    ) -> schemas.MutationResponse:
        return _mutation_schema(service.cancel_item(order_id, order_item_id))

    @app.post(
        "/orders/{order_id}/items/{order_item_id}/swap",
        response_model=schemas.MutationResponse,
        tags=["substitutions"],
    )
    async def swap_item(
        order_id: str,
        order_item_id: str,
        payload: schemas.SwapItemRequest,
        service: SubstitutionService = Depends(get_substitution_service),
    ) -> schemas.MutationResponse:
        result = service.swap_item(
            order_id,
            order_item_id,
            payload.new_menu_item_id,
            variant_name=payload.variant_name,
            quantity=payload.quantity,
        )
        return _mutation_schema(result)

    @app.post(
        "/orders/{order_id}/items/{order_item_id}/swap-variant",
        response_model=schemas.MutationResponse,
        tags=["substitutions"],
    )
    async def swap_variant(
        order_id: str,
        order_item_id: str,
        payload: schemas.SwapVariantRequest,
        service: SubstitutionService = Depends(get_substitution_service),
    ) -> schemas.MutationResponse:
        result = service.swap_variant(order_id, order_item_id, payload.variant_name, payload.new_price_cents)
        return _mutation_schema(result)

    @app.post(
        "/workflows",
        response_model=schemas.WorkflowState,
        status_code=status.HTTP_201_CREATED,
        tags=["workflows"],
    )
    async def start_workflow(
        payload: schemas.StartWorkflowRequest,
        registry: WorkflowRegistry = Depends(get_workflow_registry),
        service: SubstitutionService = Depends(get_substitution_service),
        orders: OrderRepository = Depends(get_order_repository),
        menu: MenuRepository = Depends(get_menu_repository),
    ) -> schemas.WorkflowState:
        workflow = registry.start(service, orders, menu, payload.order_id, payload.order_item_id)
        return _workflow_schema(workflow)

    @app.get("/workflows/{workflow_id}", response_model=schemas.WorkflowState, tags=["workflows"])
    async def get_workflow(
        workflow_id: str, registry: WorkflowRegistry = Depends(get_workflow_registry)
    ) -> schemas.WorkflowState:
        return _workflow_schema(registry.get(workflow_id))

    @app.get(
        "/workflows/{workflow_id}/candidates",
        response_model=schemas.WorkflowCandidates,
        tags=["workflows"],
    )
    async def workflow_candidates(
        workflow_id: str,
        registry: WorkflowRegistry = Depends(get_workflow_registry),
        menu: MenuRepository = Depends(get_menu_repository),
    ) -> schemas.WorkflowCandidates:
        workflow = registry.get(workflow_id)
        candidates = workflow.candidates()
        if workflow.replacement_type is ReplacementType.VARIANT:
            item = menu.require_menu_item(workflow.menu_item_id)
            return schemas.WorkflowCandidates(
                replacement_type=workflow.replacement_type.value,
                variants=[_variant_schema(variant, item.name) for variant in candidates],
            )
        return schemas.WorkflowCandidates(
            replacement_type=ReplacementType.ITEM.value,
            items=[_menu_item_schema(record) for record in candidates],
        )

    @app.post("/workflows/{workflow_id}/{action}", response_model=schemas.WorkflowState, tags=["workflows"])
    async def apply_workflow_action(
        workflow_id: str,
        action: str,
        payload: Optional[schemas.WorkflowActionRequest] = None,
        registry: WorkflowRegistry = Depends(get_workflow_registry),
    ) -> schemas.WorkflowState:
        payload = payload or schemas.WorkflowActionRequest()
        params = {name: getattr(payload, name) for name in _WORKFLOW_ACTION_PARAMS.get(action, ())}
        workflow = registry.apply(workflow_id, action, **params)
        return _workflow_schema(workflow)

    @app.delete("/workflows/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["workflows"])
    async def close_workflow(
        workflow_id: str, registry: WorkflowRegistry = Depends(get_workflow_registry)
    ) -> None:
        registry.apply(workflow_id, "close")

    @app.post("/notifications/dispatch", response_model=schemas.DispatchResponse, tags=["notifications"])
    async def dispatch_notifications(
        limit: int = 100, dispatcher: NotificationDispatcher = Depends(get_dispatcher)
    ) -> schemas.DispatchResponse:
        return schemas.DispatchResponse(delivered=dispatcher.dispatch_pending(limit=limit))

    return app


def _register_error_handlers(app: FastAPI) -> None:
    def not_found(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    def bad_request(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    def conflict(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    def payment_required(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content={"detail": str(exc)})

    def payment_failed(request: Request, exc: Exception) -> JSONResponse:
        logger.warning("Payment processor error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})

    for exc_type in NOT_FOUND_ERRORS:
        app.add_exception_handler(exc_type, not_found)
    app.add_exception_handler(CheckoutValidationError, bad_request)
    app.add_exception_handler(StockUpdateError, bad_request)
    app.add_exception_handler(SubstitutionError, conflict)
    app.add_exception_handler(WorkflowError, conflict)
    app.add_exception_handler(PaymentNotCompletedError, payment_required)
    app.add_exception_handler(PaymentServiceError, payment_failed)


def _cart(lines: List[schemas.CartLine]) -> List[CartLine]:
    return [CartLine(**line.model_dump()) for line in lines]


def _menu_item_schema(record: MenuItemRecord) -> schemas.MenuItem:
    return schemas.MenuItem(**record.__dict__, orderable=record.orderable())


def _variant_schema(record: VariantRecord, item_name: str) -> schemas.Variant:
    return schemas.Variant(
        **record.__dict__,
        display_name=variant_display_name(item_name, record.variant_name),
        orderable=record.orderable(),
    )


def _order_schema(record: OrderRecord) -> schemas.Order:
    fields = {key: value for key, value in record.__dict__.items() if key != "items"}
    items = [
        schemas.OrderItem(
            **item.__dict__,
            display_name=display_name(
                item.menu_item_name, item.unit_price_cents, item.custom_name, item.variant_name
            ),
            subtotal_cents=item.subtotal_cents,
        )
        for item in record.items
    ]
    return schemas.Order(**fields, items=items)


def _mutation_schema(result: MutationResult) -> schemas.MutationResponse:
    return schemas.MutationResponse(
        order=_order_schema(result.order),
        substitution_type=result.substitution_type,
        price_difference=result.price_difference,
        refund_id=result.refund.id if result.refund else None,
        refund_amount_cents=result.refund.amount_cents if result.refund else None,
        payment_url=result.payment_url,
        notification_status=result.notification_status,
    )


def _workflow_schema(workflow: SubstitutionWorkflow) -> schemas.WorkflowState:
    return schemas.WorkflowState(
        id=workflow.id,
        order_id=workflow.order_id,
        order_item_id=workflow.order_item_id,
        menu_item_id=workflow.menu_item_id,
        step=workflow.step.value,
        cancel_only=workflow.cancel_only,
        scope=workflow.scope.value if workflow.scope else None,
        replacement_type=workflow.replacement_type.value if workflow.replacement_type else None,
        current_variant=workflow.current_variant,
        allowed_actions=workflow.allowed_actions,
        result=_mutation_schema(workflow.result) if workflow.result else None,
    )
