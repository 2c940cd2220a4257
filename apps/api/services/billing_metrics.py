"""In-process counters for the voice billing webhooks."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class BillingMetrics:
    total_requests: int = 0
    successful_billings: int = 0
    failed_billings: int = 0
    duplicate_requests: int = 0
    insufficient_credit_events: int = 0
    total_minutes_billed: int = 0
    total_transaction_time_ms: float = 0.0
    last_processed_at: Optional[datetime] = None
    started_at: float = field(default_factory=time.monotonic)

    def record_request(self) -> None:
        self.total_requests += 1
        self.last_processed_at = datetime.now(timezone.utc)

    def record_success(self, transaction_ms: float, minutes: int = 1) -> None:
        self.successful_billings += 1
        self.total_minutes_billed += minutes
        self.total_transaction_time_ms += transaction_ms

    @property
    def average_transaction_time_ms(self) -> float:
        if not self.successful_billings:
            return 0.0
        return self.total_transaction_time_ms / self.successful_billings

    @property
    def success_rate(self) -> Optional[float]:
        if not self.total_requests:
            return None
        return round(self.successful_billings / self.total_requests * 100, 2)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "totalRequests": self.total_requests,
            "successfulBillings": self.successful_billings,
            "failedBillings": self.failed_billings,
            "duplicateRequests": self.duplicate_requests,
            "insufficientCreditEvents": self.insufficient_credit_events,
            "totalMinutesBilled": self.total_minutes_billed,
            "averageTransactionTime": round(self.average_transaction_time_ms, 2),
            "totalTransactionTime": round(self.total_transaction_time_ms, 2),
            "lastProcessedAt": self.last_processed_at.isoformat() if self.last_processed_at else None,
            "uptime": round(time.monotonic() - self.started_at, 3),
        }

    def reset(self) -> None:
        """Zero the counters; uptime keeps counting from process start."""
        self.total_requests = 0
        self.successful_billings = 0
        self.failed_billings = 0
        self.duplicate_requests = 0
        self.insufficient_credit_events = 0
        self.total_minutes_billed = 0
        self.total_transaction_time_ms = 0.0
        self.last_processed_at = None
