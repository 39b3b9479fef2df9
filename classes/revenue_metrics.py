# classes/revenue_metrics.py

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from classes.entities import ProductMetrics, RevenueMetrics, utcnow
from classes.errors import StoreError
from classes.google_helpers import STORE_COMMIT_ATTEMPTS
from classes.snapshots import OrderSnapshot

logger = logging.getLogger("craft_backend")


def previous_month(month: str) -> str:
    year, mon = (int(p) for p in month.split("-"))
    if mon == 1:
        return f"{year - 1}-12"
    return f"{year}-{mon - 1:02d}"


class RevenueMetricsRecorder:
    """
    Per-artisan and per-product sales counters, updated with row locks
    in a single read-modify-write transaction per order.

    A counter row that does not exist yet cannot be locked, so two first
    orders may both insert it; the loser hits IntegrityError and the whole
    transaction is replayed against the row the winner committed.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Callable[[], datetime] = utcnow,
        attempts: int = STORE_COMMIT_ATTEMPTS,
    ):
        self.SessionFactory = session_factory
        self.clock = clock
        self.attempts = max(1, int(attempts))

    def record_order(self, order: OrderSnapshot) -> None:
        now = self.clock()
        last_error: Optional[Exception] = None

        for attempt in range(1, self.attempts + 1):
            session = self.SessionFactory()
            try:
                total_orders, total_revenue = self._apply(session, order, now)
                session.commit()
                logger.info(
                    f"Revenue metrics updated for artisan {order.artisan_id}: "
                    f"orders={total_orders} revenue={total_revenue}"
                )
                return
            except (IntegrityError, OperationalError) as e:
                session.rollback()
                last_error = e
                logger.warning(f"record_order(): conflict on attempt {attempt}/{self.attempts} for order {order.id}: {e}")
            except SQLAlchemyError as e:
                session.rollback()
                raise StoreError(f"Revenue tracking failed for order {order.id}: {e}") from e
            finally:
                session.close()

        raise StoreError(f"Revenue tracking failed for order {order.id} after {self.attempts} attempts: {last_error}") from last_error

    # -----------------------
    # Internals
    # -----------------------

    def _load_artisan_metrics(self, session: Session, artisan_id: str) -> Optional[RevenueMetrics]:
        return (
            session.query(RevenueMetrics)
            .filter(RevenueMetrics.artisan_id == artisan_id)
            .with_for_update()
            .one_or_none()
        )

    def _load_product_metrics(self, session: Session, product_id: str) -> Optional[ProductMetrics]:
        return (
            session.query(ProductMetrics)
            .filter(ProductMetrics.product_id == product_id)
            .with_for_update()
            .one_or_none()
        )

    def _apply(self, session: Session, order: OrderSnapshot, now: datetime) -> tuple[int, Decimal]:
        month = now.strftime("%Y-%m")
        amount = Decimal(order.total_amount)

        metrics = self._load_artisan_metrics(session, order.artisan_id)
        if metrics is None:
            metrics = RevenueMetrics(
                artisan_id=order.artisan_id,
                total_revenue=Decimal("0"),
                total_orders=0,
                monthly_revenue={},
            )
            session.add(metrics)
            # surface a concurrent first insert now, not at commit
            session.flush()

        total_revenue = Decimal(metrics.total_revenue or 0) + amount
        total_orders = int(metrics.total_orders or 0) + 1

        monthly = {k: Decimal(str(v)) for k, v in (metrics.monthly_revenue or {}).items()}
        monthly[month] = monthly.get(month, Decimal("0")) + amount

        prev = monthly.get(previous_month(month))
        growth_rate = float((monthly[month] - prev) / prev * 100) if prev else 0.0

        metrics.total_revenue = total_revenue
        metrics.total_orders = total_orders
        metrics.average_order_value = (total_revenue / total_orders).quantize(Decimal("0.01"))
        # JSON column: assign a new dict so the change is detected
        metrics.monthly_revenue = {k: str(v) for k, v in monthly.items()}
        metrics.growth_rate = round(growth_rate, 2)
        metrics.last_updated = now

        for item in order.items:
            product_id = str(item.get("productId") or item.get("product_id") or "")
            if not product_id:
                continue
            quantity = int(item.get("quantity") or 0)
            price = Decimal(str(item.get("price") or 0))

            product = self._load_product_metrics(session, product_id)
            if product is None:
                product = ProductMetrics(product_id=product_id, total_sales=0, total_revenue=Decimal("0"))
                session.add(product)
                session.flush()
            product.total_sales = int(product.total_sales or 0) + quantity
            product.total_revenue = Decimal(product.total_revenue or 0) + price * quantity
            product.last_sale = now

        return total_orders, total_revenue
