"""
LoggingNotifier -- approval notifications written to the structured log.

Delivery channels (email, SMS, push) are external; the workflow only needs
something implementing ``ApprovalNotifier``.  This default records each
notification as a log event so it is visible in tests and in production
logs until a real channel is wired in.
"""

from __future__ import annotations

from typing import Sequence
from uuid import UUID

from smefin_kernel.domain.approval import ApprovalRequestRecord
from smefin_kernel.logging_config import get_logger

logger = get_logger("notifications")


class LoggingNotifier:
    def approval_requested(
        self, request: ApprovalRequestRecord, approver_ids: Sequence[UUID]
    ) -> None:
        for approver_id in approver_ids:
            logger.info(
                "approval_notification_requested",
                extra={
                    "approval_request_id": str(request.id),
                    "expense_id": str(request.expense_id),
                    "approver_id": str(approver_id),
                    "priority": request.priority.value,
                    "due_date": request.due_date,
                },
            )

    def approval_completed(self, request: ApprovalRequestRecord) -> None:
        logger.info(
            "approval_notification_completed",
            extra={
                "approval_request_id": str(request.id),
                "expense_id": str(request.expense_id),
                "requester_id": str(request.requester_id),
                "status": request.status.value,
            },
        )
