"""Staff-facing replacement workflow for a single order line.

The workflow is an explicit state machine: every operation names an event,
and ``TRANSITIONS`` lists the steps each event may lead to from the current
step. Workflows live only in memory and are discarded once closed.
"""
from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple, Union

from .pricing import effective_unit_price, infer_variant_from_price
from .repository import MenuItemRecord, MenuRepository, OrderRepository, VariantRecord
from .stock import StockStatus
from .substitution import MutationResult, SubstitutionService

logger = logging.getLogger(__name__)


class Step(str, Enum):
    CONFIRM = "confirm"
    OUT_OF_STOCK_CHOICE = "out_of_stock_choice"
    STOCK_OPTIONS = "stock_options"
    ACTION_CHOICE = "action_choice"
    REPLACEMENT_TYPE = "replacement_type"
    REPLACEMENT_OPTIONS = "replacement_options"
    CANCEL_CONFIRM = "cancel_confirm"
    CLOSED = "closed"


class OutOfStockScope(str, Enum):
    VARIANT = "variant"
    ENTIRE_ITEM = "entire_item"


class ReplacementType(str, Enum):
    ITEM = "item"
    VARIANT = "variant"


OUT_OF_STOCK_DURATIONS = (StockStatus.OUT_TODAY, StockStatus.OUT_INDEFINITE, StockStatus.OUT_UNTIL)

TRANSITIONS: Dict[Tuple[Step, str], FrozenSet[Step]] = {
    (Step.CONFIRM, "confirm"): frozenset({Step.ACTION_CHOICE}),
    (Step.CONFIRM, "report_out_of_stock"): frozenset({Step.OUT_OF_STOCK_CHOICE}),
    (Step.OUT_OF_STOCK_CHOICE, "choose_out_of_stock_scope"): frozenset({Step.STOCK_OPTIONS}),
    (Step.STOCK_OPTIONS, "mark_out_of_stock"): frozenset(
        {Step.REPLACEMENT_OPTIONS, Step.REPLACEMENT_TYPE, Step.CANCEL_CONFIRM}
    ),
    (Step.ACTION_CHOICE, "choose_action"): frozenset({Step.REPLACEMENT_TYPE, Step.CLOSED}),
    (Step.REPLACEMENT_TYPE, "choose_replacement_type"): frozenset({Step.REPLACEMENT_OPTIONS}),
    (Step.REPLACEMENT_OPTIONS, "select_replacement"): frozenset({Step.CLOSED}),
    (Step.CANCEL_CONFIRM, "confirm_cancel"): frozenset({Step.CLOSED}),
}


class WorkflowError(Exception):
    """Raised for an operation that is not allowed in the current step."""


class WorkflowNotFoundError(WorkflowError):
    """Raised when a workflow id is unknown or already closed."""


class SubstitutionWorkflow:
    def __init__(
        self,
        service: SubstitutionService,
        orders: OrderRepository,
        menu: MenuRepository,
        order_id: str,
        order_item_id: str,
    ):
        self._service = service
        self._orders = orders
        self._menu = menu
        order = orders.require_order(order_id)
        item = order.find_item(order_item_id)
        menu_item = menu.require_menu_item(item.menu_item_id)

        self.id = str(uuid.uuid4())
        self.order_id = order.id
        self.order_item_id = item.id
        self.menu_item_id = item.menu_item_id
        self.has_variants = bool(menu.list_variants(item.menu_item_id))
        self.current_variant: Optional[str] = None
        if self.has_variants:
            self.current_variant = item.variant_name or infer_variant_from_price(
                item.menu_item_name, item.unit_price_cents, item.custom_name
            )
        # An unorderable menu item can only be removed from the order.
        self.cancel_only = not menu_item.orderable()
        self.scope: Optional[OutOfStockScope] = None
        self.replacement_type: Optional[ReplacementType] = None
        self.result: Optional[MutationResult] = None
        self.step = Step.CANCEL_CONFIRM if self.cancel_only else Step.CONFIRM

    @property
    def closed(self) -> bool:
        return self.step is Step.CLOSED

    @property
    def allowed_actions(self) -> List[str]:
        actions = [event for (step, event) in TRANSITIONS if step is self.step]
        if not self.closed:
            actions.append("close")
        return actions

    def confirm(self) -> Step:
        return self._advance("confirm", Step.ACTION_CHOICE)

    def report_out_of_stock(self) -> Step:
        return self._advance("report_out_of_stock", Step.OUT_OF_STOCK_CHOICE)

    def choose_out_of_stock_scope(self, scope: str) -> Step:
        scope = _coerce(OutOfStockScope, scope)
        if scope is OutOfStockScope.VARIANT and not self.has_variants:
            raise WorkflowError("This item has no variants to mark out of stock")
        self._check("choose_out_of_stock_scope", Step.STOCK_OPTIONS)
        self.scope = scope
        return self._advance("choose_out_of_stock_scope", Step.STOCK_OPTIONS)

    def mark_out_of_stock(self, duration: str, until: Optional[str] = None) -> Step:
        duration = _coerce(StockStatus, duration)
        if duration not in OUT_OF_STOCK_DURATIONS:
            raise WorkflowError(f"{duration.value} is not an out-of-stock duration")
        self._check("mark_out_of_stock", None)

        if self.scope is OutOfStockScope.VARIANT:
            self._menu.set_variant_stock(self.menu_item_id, self.current_variant, duration.value, until)
            logger.info("Variant %s of %s marked %s", self.current_variant, self.menu_item_id, duration.value)
            if self._menu.variant_alternatives(self.menu_item_id, exclude_variant=self.current_variant):
                self.replacement_type = ReplacementType.VARIANT
                return self._advance("mark_out_of_stock", Step.REPLACEMENT_OPTIONS)
            return self._advance("mark_out_of_stock", Step.CANCEL_CONFIRM)

        self._menu.set_item_stock(self.menu_item_id, duration.value, until)
        logger.info("Menu item %s marked %s", self.menu_item_id, duration.value)
        order = self._orders.require_order(self.order_id)
        if len(order.items) == 1:
            return self._advance("mark_out_of_stock", Step.CANCEL_CONFIRM)
        return self._advance("mark_out_of_stock", Step.REPLACEMENT_TYPE)

    def choose_action(self, action: str) -> Step:
        if action == "replace":
            return self._advance("choose_action", Step.REPLACEMENT_TYPE)
        if action == "cancel":
            self._check("choose_action", Step.CLOSED)
            self.result = self._service.cancel_item(self.order_id, self.order_item_id)
            return self._advance("choose_action", Step.CLOSED)
        raise WorkflowError(f"Unknown action: {action}")

    def choose_replacement_type(self, replacement_type: str) -> Step:
        replacement_type = _coerce(ReplacementType, replacement_type)
        if replacement_type is ReplacementType.VARIANT:
            if not self.has_variants:
                raise WorkflowError("This item has no variants")
            if not self._menu.require_menu_item(self.menu_item_id).orderable():
                raise WorkflowError("The menu item is out of stock; choose a different item")
        self._check("choose_replacement_type", Step.REPLACEMENT_OPTIONS)
        self.replacement_type = replacement_type
        return self._advance("choose_replacement_type", Step.REPLACEMENT_OPTIONS)

    def candidates(self) -> List[Union[MenuItemRecord, VariantRecord]]:
        if self.step is not Step.REPLACEMENT_OPTIONS:
            raise WorkflowError(f"No replacement options in step {self.step.value}")
        if self.replacement_type is ReplacementType.VARIANT:
            return list(self._menu.variant_alternatives(self.menu_item_id, exclude_variant=self.current_variant))
        return list(self._menu.replacement_candidates(self.menu_item_id))

    def select_replacement(
        self,
        menu_item_id: Optional[str] = None,
        variant_name: Optional[str] = None,
        quantity: Optional[int] = None,
    ) -> Step:
        self._check("select_replacement", Step.CLOSED)
        if self.replacement_type is ReplacementType.VARIANT:
            if not variant_name:
                raise WorkflowError("A variant must be selected")
            menu_item = self._menu.require_menu_item(self.menu_item_id)
            variant = self._menu.require_variant(self.menu_item_id, variant_name)
            self.result = self._service.swap_variant(
                self.order_id,
                self.order_item_id,
                variant_name,
                effective_unit_price(menu_item.price_cents, variant.price_modifier_cents),
            )
        else:
            if not menu_item_id:
                raise WorkflowError("A replacement item must be selected")
            self.result = self._service.swap_item(
                self.order_id, self.order_item_id, menu_item_id, variant_name, quantity
            )
        return self._advance("select_replacement", Step.CLOSED)

    def confirm_cancel(self) -> Step:
        self._check("confirm_cancel", Step.CLOSED)
        self.result = self._service.cancel_item(self.order_id, self.order_item_id)
        return self._advance("confirm_cancel", Step.CLOSED)

    def close(self) -> Step:
        self.step = Step.CLOSED
        return self.step

    def _check(self, event: str, target: Optional[Step]) -> None:
        allowed = TRANSITIONS.get((self.step, event))
        if allowed is None or (target is not None and target not in allowed):
            raise WorkflowError(f"Cannot {event} from step {self.step.value}")

    def _advance(self, event: str, target: Step) -> Step:
        self._check(event, target)
        logger.debug("Workflow %s: %s --%s--> %s", self.id, self.step.value, event, target.value)
        self.step = target
        return self.step


class WorkflowRegistry:
    """Active workflows by id; at most one per order line."""

    ACTIONS = (
        "confirm",
        "report_out_of_stock",
        "choose_out_of_stock_scope",
        "mark_out_of_stock",
        "choose_action",
        "choose_replacement_type",
        "select_replacement",
        "confirm_cancel",
        "close",
    )

    def __init__(self):
        self._workflows: Dict[str, SubstitutionWorkflow] = {}

    def start(
        self,
        service: SubstitutionService,
        orders: OrderRepository,
        menu: MenuRepository,
        order_id: str,
        order_item_id: str,
    ) -> SubstitutionWorkflow:
        workflow = SubstitutionWorkflow(service, orders, menu, order_id, order_item_id)
        for existing_id, existing in list(self._workflows.items()):
            if existing.order_item_id == order_item_id:
                logger.info("Discarding workflow %s for order item %s", existing_id, order_item_id)
                del self._workflows[existing_id]
        self._workflows[workflow.id] = workflow
        return workflow

    def get(self, workflow_id: str) -> SubstitutionWorkflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    def apply(self, workflow_id: str, action: str, **params) -> SubstitutionWorkflow:
        if action not in self.ACTIONS:
            raise WorkflowError(f"Unknown workflow action: {action}")
        workflow = self.get(workflow_id)
        getattr(workflow, action)(**params)
        if workflow.closed:
            self.discard(workflow_id)
        return workflow

    def discard(self, workflow_id: str) -> None:
        self._workflows.pop(workflow_id, None)

    def __len__(self) -> int:
        return len(self._workflows)


def _coerce(enum_type, value):
    try:
        return enum_type(value)
    except ValueError as exc:
        raise WorkflowError(f"Invalid value {value!r}") from exc
