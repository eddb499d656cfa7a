"""Order workflows: placement, reads, cancellation and admin status changes."""
import math
from typing import Optional

from pydantic import ValidationError as SchemaError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from orderflow.core.logging_config import get_logger
from orderflow.domain.errors import (
    ConflictError,
    ForbiddenError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ProductUnavailableError,
)
from orderflow.domain.models import Order, OrderItem, OrderPaymentStatus, OrderStatus, money
from orderflow.infrastructure.cache import EntityCache, order_key
from orderflow.infrastructure.products import ProductCatalogClient
from orderflow.infrastructure.repositories import OrderRepository

from .pricing import PricingPolicy
from .schemas import OrderCreate, OrderRead, Page, Principal, ProductSnapshot

logger = get_logger(__name__)

ORDER_NUMBER_ATTEMPTS = 3


def build_page(items: list, page: int, limit: int, total: int) -> Page:
    total_pages = math.ceil(total / limit) if limit else 0
    return Page(
        items=items,
        page=page,
        limit=limit,
        total=total,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_prev=page > 1,
    )


class OrderService:
    def __init__(self, db: Session, catalog: ProductCatalogClient, cache: EntityCache,
                 pricing: PricingPolicy):
        self.db = db
        self.catalog = catalog
        self.cache = cache
        self.pricing = pricing
        self.orders = OrderRepository(db)

    def _load_visible(self, principal: Principal, order_id: int) -> Order:
        # Someone else's order is reported as missing, not forbidden
        order = self.orders.get(order_id)
        if order is None or not principal.can_access(order.user_id):
            raise NotFoundError("Order not found", {"order_id": order_id})
        return order

    def _publish(self, order: Order) -> OrderRead:
        read = OrderRead.model_validate(order)
        self.cache.put(order_key(order.id), read.model_dump(mode="json"))
        return read

    def _validate_items(self, data: OrderCreate) -> list[ProductSnapshot]:
        products = []
        for item in data.items:
            try:
                product = self.catalog.get_product(item.product_id)
            except NotFoundError:
                raise ProductUnavailableError(item.product_id)
            if not self.catalog.has_stock(item.product_id, item.quantity):
                raise InsufficientStockError(item.product_id, product.name)
            products.append(product)
        return products

    def create_order(self, principal: Principal, data: OrderCreate) -> OrderRead:
        products = self._validate_items(data)
        totals = self.pricing.price(data.items)

        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            order = Order(
                order_number=Order.generate_order_number(),
                user_id=principal.user_id,
                status=OrderStatus.PENDING.value,
                payment_status=OrderPaymentStatus.PENDING.value,
                subtotal=totals.subtotal,
                tax_amount=totals.tax_amount,
                shipping_amount=totals.shipping_amount,
                discount_amount=totals.discount_amount,
                total_amount=totals.total_amount,
                shipping_address=data.shipping_address.model_dump(),
                billing_address=data.billing_address.model_dump(),
                payment_method=data.payment_method,
                notes=data.notes,
            )
            for item, product in zip(data.items, products):
                line = OrderItem(
                    product_id=item.product_id,
                    product_name=product.name,
                    product_sku=product.sku,
                    product_image=product.primary_image,
                    quantity=item.quantity,
                    unit_price=money(item.unit_price),
                )
                line.total_price = line.calculate_total_price()
                order.items.append(line)

            self.db.add(order)
            try:
                self.db.commit()
                break
            except IntegrityError:
                self.db.rollback()
                logger.warning(f"Order number collision on attempt {attempt}, retrying")
        else:
            raise ConflictError("Could not allocate a unique order number")

        self.db.refresh(order)
        logger.info(
            f"Order created: {order.order_number}",
            extra={'extra_fields': {
                'order_id': order.id,
                'user_id': order.user_id,
                'total_amount': str(order.total_amount),
                'item_count': len(order.items),
            }}
        )
        return self._publish(order)

    def get_order(self, principal: Principal, order_id: int) -> OrderRead:
        cached = self.cache.get(order_key(order_id))
        if cached is not None:
            try:
                read = OrderRead.model_validate(cached)
            except SchemaError:
                logger.warning(f"Discarding unreadable cache entry for order {order_id}")
                self.cache.invalidate(order_key(order_id))
            else:
                if not principal.can_access(read.user_id):
                    raise NotFoundError("Order not found", {"order_id": order_id})
                return read
        return self._publish(self._load_visible(principal, order_id))

    def list_orders(self, principal: Principal, page: int = 1, limit: int = 10,
                    status: Optional[OrderStatus] = None) -> Page[OrderRead]:
        rows, total = self.orders.list_page(
            page, limit, user_id=principal.user_id, status=status.value if status else None
        )
        return build_page([OrderRead.model_validate(o) for o in rows], page, limit, total)

    def list_all_orders(self, principal: Principal, page: int = 1, limit: int = 10,
                        status: Optional[OrderStatus] = None,
                        user_id: Optional[int] = None) -> Page[OrderRead]:
        if not principal.is_admin:
            raise ForbiddenError("Admin access required")
        rows, total = self.orders.list_page(
            page, limit, user_id=user_id, status=status.value if status else None
        )
        return build_page([OrderRead.model_validate(o) for o in rows], page, limit, total)

    def _move(self, order: Order, new_status: OrderStatus) -> OrderRead:
        previous = order.status
        if not self.orders.compare_and_set_status(order.id, previous, new_status.value):
            # Someone else moved the order first
            self.db.rollback()
            self.db.refresh(order)
            raise InvalidTransitionError("order", order.status, new_status.value)
        self.db.commit()
        self.db.refresh(order)
        self.cache.invalidate(order_key(order.id))
        logger.info(
            f"Order {order.order_number} moved {previous} -> {new_status.value}",
            extra={'extra_fields': {'order_id': order.id, 'from': previous, 'to': new_status.value}}
        )
        return OrderRead.model_validate(order)

    def cancel_order(self, principal: Principal, order_id: int) -> OrderRead:
        order = self._load_visible(principal, order_id)
        if not order.can_be_cancelled():
            raise InvalidTransitionError("order", order.status, OrderStatus.CANCELLED.value)
        return self._move(order, OrderStatus.CANCELLED)

    def transition_status(self, principal: Principal, order_id: int,
                          new_status: OrderStatus) -> OrderRead:
        if not principal.is_admin:
            raise ForbiddenError("Admin access required")
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order not found", {"order_id": order_id})
        order.ensure_transition(new_status)
        return self._move(order, OrderStatus(new_status))

    def update_notes(self, principal: Principal, order_id: int, notes: Optional[str]) -> OrderRead:
        if not principal.is_admin:
            raise ForbiddenError("Admin access required")
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order not found", {"order_id": order_id})
        order.notes = notes
        self.db.commit()
        self.db.refresh(order)
        self.cache.invalidate(order_key(order.id))
        return OrderRead.model_validate(order)

    def apply_payment_status(self, order_id: int, payment_status: OrderPaymentStatus) -> bool:
        """Writes the order's payment status on behalf of the saga coordinator.

        Returns False when the order already carried that status.
        """
        try:
            changed = self.orders.set_payment_status(order_id, OrderPaymentStatus(payment_status).value)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.cache.invalidate(order_key(order_id))
        if changed:
            order = self.orders.get(order_id)
            if order is not None:
                self.db.refresh(order)
        return changed
