"""Order persistence for entry orders and their protective stops."""

import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

from .base_store import BaseStore
from .database import OrderHistoryDB
from .models import Signal

logger = logging.getLogger(__name__)

JSON_COLUMNS = ("tp_levels", "dca_levels", "dca_orders")
UPDATABLE_COLUMNS = ("status", "tpsl_id", "algo_id", "stop_price", "dca_orders", "entry_price", "size")


class OrderStore(BaseStore):
    """CRUD operations for order history."""

    def record_order(
        self,
        signal: Signal,
        order_id: str,
        order_type: str,
        entry_price: float,
        size: float,
        leverage: int,
        margin_mode: str,
        status: str = "pending",
    ) -> Optional[int]:
        """
        Record a placed entry order.

        Returns:
            Row id if successful, None otherwise.
        """
        try:
            with self._db_session() as session:
                order = OrderHistoryDB(
                    signal_id=signal.signal_id,
                    inst_id=signal.inst_id,
                    side=signal.order_side,
                    position_side=signal.position_side,
                    order_type=order_type,
                    entry_price=entry_price,
                    size=size,
                    leverage=leverage,
                    margin_mode=margin_mode,
                    order_id=order_id,
                    status=status,
                    trader_name=signal.trader_name,
                    tp_levels=json.dumps([asdict(tp) for tp in signal.tp_levels]),
                    dca_levels=json.dumps([asdict(dca) for dca in signal.dca_levels]),
                )
                session.add(order)
                session.flush()  # Get the ID before commit
                row_id = order.id
                logger.info(f"[{signal.inst_id}] Recorded order {row_id}: {order_type} {signal.order_side} {size} (exchange id {order_id})")
                return row_id
        except Exception as e:
            logger.error(f"Failed to record order {order_id}: {e}")
            return None

    def update_order(self, row_id: Optional[int], **fields) -> bool:
        """Update status / stop references. List values are stored as JSON."""
        if row_id is None:
            return False

        unknown = set(fields) - set(UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update order columns: {sorted(unknown)}")

        try:
            with self._db_session() as session:
                order = session.query(OrderHistoryDB).filter(OrderHistoryDB.id == row_id).first()
                if not order:
                    return False

                for key, value in fields.items():
                    if key in JSON_COLUMNS and value is not None:
                        value = json.dumps(value)
                    setattr(order, key, value)
                order.updated_at = datetime.utcnow()

                logger.info(f"[{order.inst_id}] Updated order {order.id}: {fields}")
                return True
        except Exception as e:
            logger.error(f"Failed to update order {row_id}: {e}")
            return False

    def get_order(self, row_id: Optional[int] = None, order_id: Optional[str] = None) -> Optional[dict]:
        """Get an order by row id or exchange order id."""
        with self._db_session() as session:
            query = session.query(OrderHistoryDB)
            if row_id:
                order = query.filter(OrderHistoryDB.id == row_id).first()
            elif order_id:
                order = query.filter(OrderHistoryDB.order_id == order_id).first()
            else:
                return None
            return self._to_dict(order) if order else None

    def get_recent_orders(self, limit: int = 50, status: Optional[str] = None) -> List[dict]:
        try:
            with self._db_session() as session:
                query = session.query(OrderHistoryDB)
                if status:
                    query = query.filter(OrderHistoryDB.status == status)
                orders = query.order_by(OrderHistoryDB.created_at.desc(), OrderHistoryDB.id.desc()).limit(limit).all()
                return [self._to_dict(o) for o in orders]
        except Exception as e:
            logger.error(f"Failed to load orders: {e}")
            return []

    @staticmethod
    def _to_dict(order: OrderHistoryDB) -> dict:
        data = {c.name: getattr(order, c.name) for c in OrderHistoryDB.__table__.columns}
        for key in JSON_COLUMNS:
            data[key] = json.loads(data[key]) if data[key] else []
        for key in ("created_at", "updated_at"):
            if data[key]:
                data[key] = data[key].isoformat()
        return data
