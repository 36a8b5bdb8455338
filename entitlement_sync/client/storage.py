"""
In-flight payment attempt persistence.

The attempt is one JSON blob under a fixed key so that a reload or a
navigation away and back finds it and resumes instead of charging twice.
Cleared on success, explicit cancel, or when the payment UI closes.
"""
import json
import os
from pathlib import Path
from typing import Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from entitlement_sync.core.logging import log_event


ATTEMPT_STORAGE_KEY = "entitlementSyncPaymentState"


class InFlightAttempt(BaseModel):
    """Persisted shape: {inProgress, isSubscription, paymentIntentId?, subscriptionId?, customerId?, priceId?, planName, planPrice}."""
    model_config = ConfigDict(populate_by_name=True)

    in_progress: bool = Field(True, alias="inProgress")
    is_subscription: bool = Field(False, alias="isSubscription")
    payment_intent_id: Optional[str] = Field(None, alias="paymentIntentId")
    subscription_id: Optional[str] = Field(None, alias="subscriptionId")
    customer_id: Optional[str] = Field(None, alias="customerId")
    price_id: Optional[str] = Field(None, alias="priceId")
    plan_name: str = Field(..., alias="planName")
    plan_price: Optional[str] = Field(None, alias="planPrice")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str) -> "InFlightAttempt":
        return cls.model_validate_json(raw)


class AttemptStore(Protocol):
    def load(self) -> Optional[InFlightAttempt]:
        ...

    def save(self, attempt: InFlightAttempt) -> None:
        ...

    def clear(self) -> None:
        ...


def _decode(raw: Optional[str]) -> Optional[InFlightAttempt]:
    if not raw:
        return None
    try:
        return InFlightAttempt.from_json(raw)
    except PydanticValidationError as e:
        log_event("warning", "payment.attempt_discarded", extra={"error": str(e)})
        return None


class MemoryAttemptStore:
    """Key/value store held in memory, the way browser storage behaves."""

    def __init__(self, key: str = ATTEMPT_STORAGE_KEY):
        self.key = key
        self.items: Dict[str, str] = {}

    def load(self) -> Optional[InFlightAttempt]:
        return _decode(self.items.get(self.key))

    def save(self, attempt: InFlightAttempt) -> None:
        self.items[self.key] = attempt.to_json()

    def clear(self) -> None:
        self.items.pop(self.key, None)


class FileAttemptStore:
    """
    Key/value JSON file on disk.

    Other keys in the file are left alone; writes go through a temp file
    and os.replace so a crash never leaves half a blob behind.
    """

    def __init__(self, path: Path, key: str = ATTEMPT_STORAGE_KEY):
        self.path = Path(path)
        self.key = key

    def _read_all(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log_event("warning", "payment.attempt_store_unreadable", extra={"path": str(self.path), "error": str(e)})
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def load(self) -> Optional[InFlightAttempt]:
        return _decode(self._read_all().get(self.key))

    def save(self, attempt: InFlightAttempt) -> None:
        data = self._read_all()
        data[self.key] = attempt.to_json()
        self._write_all(data)

    def clear(self) -> None:
        data = self._read_all()
        if self.key in data:
            del data[self.key]
            self._write_all(data)
