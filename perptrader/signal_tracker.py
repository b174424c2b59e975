import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .models import Signal

logger = logging.getLogger(__name__)


@dataclass
class ActiveSignalRecord:
    """A chat message whose trade is believed open."""
    message_id: str
    signal: Signal  # latest parse
    channel_id: Optional[str] = None
    version: int = 1
    order_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "signal": self.signal.to_dict(),
            "channel_id": self.channel_id,
            "version": self.version,
            "order_ids": list(self.order_ids),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class ActiveSignalTracker:
    """Per-message state used to route edit events. Single writer: the engine loop."""

    def __init__(self):
        self._records: Dict[str, ActiveSignalRecord] = {}

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def track(self, message_id: str, signal: Signal, channel_id: Optional[str] = None) -> ActiveSignalRecord:
        record = ActiveSignalRecord(message_id=message_id, signal=signal, channel_id=channel_id)
        self._records[message_id] = record
        logger.debug(f"[{signal.inst_id}] Tracking message {message_id}")
        return record

    def get(self, message_id: str) -> Optional[ActiveSignalRecord]:
        return self._records.get(message_id)

    def attach_order(self, message_id: str, order_id: str):
        record = self._records.get(message_id)
        if record and order_id not in record.order_ids:
            record.order_ids.append(order_id)

    def apply_edit(self, message_id: str, signal: Signal) -> Optional[ActiveSignalRecord]:
        """Bump the version and store the new parse. None if the message isn't tracked."""
        record = self._records.get(message_id)
        if record is None:
            return None
        record.version += 1
        record.signal = signal
        record.updated_at = datetime.utcnow()
        return record

    def remove(self, message_id: str) -> Optional[ActiveSignalRecord]:
        record = self._records.pop(message_id, None)
        if record:
            logger.info(f"[{record.signal.inst_id}] Stopped tracking message {message_id} (v{record.version})")
        return record

    def snapshot(self) -> List[dict]:
        return [r.to_dict() for r in list(self._records.values())]
