"""Tests for structured JSON logging."""

from decimal import Decimal
from uuid import uuid4

from smefin_kernel.exceptions import ExpenseNotFoundError
from smefin_kernel.logging_config import LogContext, get_logger


class TestStructuredFormatter:

    def test_message_and_extras(self, captured_logs):
        expense_id = uuid4()
        get_logger("tests").info(
            "expense_checked",
            extra={"expense_id": expense_id, "amount": Decimal("12.50")},
        )

        record = captured_logs()[-1]
        assert record["message"] == "expense_checked"
        assert record["level"] == "INFO"
        assert record["logger"] == "smefin.tests"
        assert record["expense_id"] == str(expense_id)
        assert record["amount"] == "12.50"
        assert "ts" in record

    def test_exception_fields(self, captured_logs):
        logger = get_logger("tests")
        try:
            raise ExpenseNotFoundError("exp-1")
        except ExpenseNotFoundError:
            logger.exception("lookup_failed")

        record = captured_logs()[-1]
        assert record["level"] == "ERROR"
        assert record["exc_type"] == "ExpenseNotFoundError"
        assert record["exc_code"] == "EXPENSE_NOT_FOUND"
        assert record["exc_expense_id"] == "exp-1"
        assert "Traceback" in record["traceback"]


class TestLogContext:

    def test_context_fields_added(self, captured_logs):
        LogContext.set(organization_id="org-1", actor_id="user-9")
        get_logger("tests").info("with_context")

        record = captured_logs()[-1]
        assert record["organization_id"] == "org-1"
        assert record["actor_id"] == "user-9"

    def test_bind_restores(self):
        LogContext.set(request_id="outer")
        with LogContext.bind(request_id="inner", correlation_id="c-1"):
            assert LogContext.get_all() == {"request_id": "inner", "correlation_id": "c-1"}
        assert LogContext.get_all() == {"request_id": "outer"}
