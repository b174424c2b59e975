"""Signal and signal-edit history."""

import json
import logging
from dataclasses import asdict
from typing import Iterable, List, Optional

from sqlalchemy import func

from .base_store import BaseStore
from .database import SignalLogDB, SignalEditDB
from .models import Signal

logger = logging.getLogger(__name__)


def _loads(value: Optional[str]):
    return json.loads(value) if value else []


class SignalStore(BaseStore):
    """Gate decisions per signal and the version history of edited messages."""

    def log_signal(
        self,
        signal: Signal,
        channel_id: Optional[str] = None,
        message_id: Optional[str] = None,
        is_valid: bool = False,
        was_executed: bool = False,
        rejection_reason: Optional[str] = None,
    ) -> Optional[int]:
        """
        Record a gated signal. Re-gating the same signal id overwrites the
        earlier decision (e.g. rejected, then accepted once instruments reload).

        Returns:
            Row id, or None on failure
        """
        try:
            with self._db_session() as session:
                row = session.query(SignalLogDB).filter_by(signal_id=signal.signal_id).first()
                if row is None:
                    row = SignalLogDB(signal_id=signal.signal_id)
                    session.add(row)

                for key, value in dict(
                    channel_id=channel_id,
                    message_id=message_id,
                    raw_content=signal.raw_content,
                    ticker=signal.ticker,
                    inst_id=signal.inst_id,
                    side=signal.side,
                    entry_price=signal.entry_price,
                    leverage=signal.leverage,
                    trader_name=signal.trader_name,
                    tp_levels=json.dumps([asdict(tp) for tp in signal.tp_levels]),
                    dca_levels=json.dumps([asdict(dca) for dca in signal.dca_levels]),
                    is_valid=is_valid,
                    was_executed=was_executed,
                    rejection_reason=rejection_reason,
                ).items():
                    setattr(row, key, value)
                session.flush()
                return row.id
        except Exception as e:
            logger.error(f"Failed to log signal {signal.signal_id}: {e}")
            return None

    def mark_executed(self, signal_id: str) -> bool:
        try:
            with self._db_session() as session:
                updated = session.query(SignalLogDB).filter_by(signal_id=signal_id).update(
                    {"was_executed": True}
                )
                return updated > 0
        except Exception as e:
            logger.error(f"Failed to mark signal {signal_id} executed: {e}")
            return False

    def get_recent_signals(self, limit: int = 50) -> List[dict]:
        try:
            with self._db_session() as session:
                rows = (
                    session.query(SignalLogDB)
                    .order_by(SignalLogDB.created_at.desc(), SignalLogDB.id.desc())
                    .limit(limit)
                    .all()
                )
                return [self._signal_to_dict(r) for r in rows]
        except Exception as e:
            logger.error(f"Failed to load signals: {e}")
            return []

    def log_signal_edit(
        self,
        message_id: str,
        raw_content: str,
        status: str,
        tp_hits: Iterable[int] = (),
        final_pnl: Optional[str] = None,
        is_closed: bool = False,
    ) -> Optional[int]:
        """
        Append the next version of an edited message.

        Returns:
            The version number written (1 for the first edit), None on failure
        """
        try:
            with self._db_session() as session:
                latest = (
                    session.query(func.max(SignalEditDB.version))
                    .filter(SignalEditDB.message_id == message_id)
                    .scalar()
                )
                version = (latest or 0) + 1
                session.add(SignalEditDB(
                    message_id=message_id,
                    version=version,
                    raw_content=raw_content,
                    status=status,
                    tp_hits=json.dumps(list(tp_hits)),
                    final_pnl=final_pnl,
                    is_closed=is_closed,
                ))
                return version
        except Exception as e:
            logger.error(f"Failed to log edit for message {message_id}: {e}")
            return None

    def get_signal_edits(self, message_id: str) -> List[dict]:
        """All stored versions of a message, oldest first."""
        try:
            with self._db_session() as session:
                rows = (
                    session.query(SignalEditDB)
                    .filter_by(message_id=message_id)
                    .order_by(SignalEditDB.version)
                    .all()
                )
                return [
                    {
                        "message_id": r.message_id,
                        "version": r.version,
                        "raw_content": r.raw_content,
                        "status": r.status,
                        "tp_hits": _loads(r.tp_hits),
                        "final_pnl": r.final_pnl,
                        "is_closed": r.is_closed,
                        "created_at": r.created_at.isoformat() if r.created_at else None,
                    }
                    for r in rows
                ]
        except Exception as e:
            logger.error(f"Failed to load edits for message {message_id}: {e}")
            return []

    @staticmethod
    def _signal_to_dict(row: SignalLogDB) -> dict:
        return {
            "signal_id": row.signal_id,
            "channel_id": row.channel_id,
            "message_id": row.message_id,
            "ticker": row.ticker,
            "inst_id": row.inst_id,
            "side": row.side,
            "entry_price": row.entry_price,
            "leverage": row.leverage,
            "trader_name": row.trader_name,
            "tp_levels": _loads(row.tp_levels),
            "dca_levels": _loads(row.dca_levels),
            "is_valid": row.is_valid,
            "was_executed": row.was_executed,
            "rejection_reason": row.rejection_reason,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
