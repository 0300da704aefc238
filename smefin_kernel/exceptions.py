"""
Typed Exception Hierarchy for the SME Finance Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (the HTTP layer, background jobs, bulk operations) must be able to
react to a failure without parsing its message:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Every category has an HTTP_STATUS attribute the HTTP layer maps directly
  4. Exceptions carry structured DATA (not just a message string)

Example - WRONG way to handle errors:
    try:
        service.process_approval_decision(...)
    except Exception as e:
        if "not pending" in str(e):  # FRAGILE - message might change
            ...

Example - RIGHT way (what this module enables):
    try:
        service.process_approval_decision(...)
    except TaskNotPendingError as e:
        return error_response(e.http_status, code=e.code, task_id=e.task_id)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from SmeFinError:

    SmeFinError (base)
    |
    +-- NotFoundError                          (404)
    |   +-- ExpenseNotFoundError
    |   +-- TransactionNotFoundError
    |   +-- CategoryNotFoundError
    |   +-- ApprovalRequestNotFoundError
    |   +-- ApprovalTaskNotFoundError
    |   +-- ApprovalRuleNotFoundError
    |   +-- CategorizationRuleNotFoundError
    |
    +-- BadRequestError                        (400)
    |   +-- ExpenseNotDraftError
    |   +-- DuplicateApprovalRequestError
    |   +-- TaskNotPendingError
    |   +-- ApprovalRequestNotPendingError
    |   +-- RuleValidationError
    |   +-- InvalidRuleConditionsError
    |   +-- InvalidCategoryHierarchyError
    |   +-- CircularCategoryDependencyError
    |
    +-- ForbiddenError                         (403)
    |   +-- UnauthorizedApproverError
    |
    +-- ConflictError                          (409)
    |   +-- CategoryNameExistsError
    |   +-- CategoryInUseError
    |   +-- RuleNameExistsError
    |   +-- ApprovalRuleNameExistsError
    |
    +-- ImmutabilityViolationError             (409)

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                            | When Raised
-------------|---------------------------------|------------------------------------------
NotFound     | EXPENSE_NOT_FOUND               | Expense missing in the organization
             | TRANSACTION_NOT_FOUND           | Transaction missing or soft-deleted
             | USER_NOT_FOUND                  | User missing in the organization
             | CATEGORY_NOT_FOUND              | Category missing or soft-deleted
             | APPROVAL_REQUEST_NOT_FOUND      | Request id unknown
             | APPROVAL_TASK_NOT_FOUND         | Task id unknown
             | APPROVAL_RULE_NOT_FOUND         | Approval rule id unknown
             | CATEGORIZATION_RULE_NOT_FOUND   | Categorization rule id unknown
-------------|---------------------------------|------------------------------------------
BadRequest   | EXPENSE_NOT_DRAFT               | Submitting a non-DRAFT expense
             | DUPLICATE_APPROVAL_REQUEST      | Expense already has a request
             | TASK_NOT_PENDING                | Deciding a task that is not PENDING
             | APPROVAL_REQUEST_NOT_PENDING    | Cancelling a non-PENDING request
             | RULE_VALIDATION_ERROR           | Malformed approval rule definition
             | INVALID_RULE_CONDITIONS         | Conditions do not fit the rule type
             | INVALID_CATEGORY_HIERARCHY      | Delete with children / broken chain
             | CIRCULAR_CATEGORY_DEPENDENCY    | Re-parenting would create a cycle
-------------|---------------------------------|------------------------------------------
Forbidden    | UNAUTHORIZED_APPROVER           | Decider is not the task's assignee
-------------|---------------------------------|------------------------------------------
Conflict     | CATEGORY_NAME_EXISTS            | Duplicate name under the same parent
             | CATEGORY_IN_USE                 | Delete while transactions reference it
             | RULE_NAME_EXISTS                | Duplicate categorization rule name
             | APPROVAL_RULE_NAME_EXISTS       | Duplicate approval rule name
             | IMMUTABILITY_VIOLATION          | Update/delete of approval history

===============================================================================
HANDLING PATTERNS
===============================================================================

1. CATCH SPECIFIC EXCEPTIONS, FALL BACK TO THE CATEGORY:

    try:
        service.cancel_approval_request(...)
    except ApprovalRequestNotPendingError as e:
        ...
    except NotFoundError as e:
        ...

2. BULK OPERATIONS convert typed errors into per-item results (see
   smefin_kernel.domain.results) and let everything else propagate.

3. DATABASE ERRORS (sqlalchemy.exc.*) are never wrapped here; they propagate
   to the caller that owns the transaction.
"""


class SmeFinError(Exception):
    """
    Base exception for all kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification and inherit an `http_status` from their category.
    """

    code: str = "SMEFIN_ERROR"
    http_status: int = 500


# Categories


class NotFoundError(SmeFinError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"
    http_status: int = 404


class BadRequestError(SmeFinError):
    """Base exception for validation failures and invalid state transitions."""

    code: str = "BAD_REQUEST"
    http_status: int = 400


class ForbiddenError(SmeFinError):
    """Base exception for authorization mismatches."""

    code: str = "FORBIDDEN"
    http_status: int = 403


class ConflictError(SmeFinError):
    """Base exception for uniqueness and referential conflicts."""

    code: str = "CONFLICT"
    http_status: int = 409


# Not found


class ExpenseNotFoundError(NotFoundError):
    """Expense with given ID was not found in the organization."""

    code: str = "EXPENSE_NOT_FOUND"

    def __init__(self, expense_id: str):
        self.expense_id = expense_id
        super().__init__(f"Expense not found: {expense_id}")


class TransactionNotFoundError(NotFoundError):
    """Transaction with given ID was not found in the organization."""

    code: str = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


class CategoryNotFoundError(NotFoundError):
    """Category with given ID was not found (or is soft-deleted)."""

    code: str = "CATEGORY_NOT_FOUND"

    def __init__(self, category_id: str):
        self.category_id = category_id
        super().__init__(f"Category not found: {category_id}")


class ApprovalRequestNotFoundError(NotFoundError):
    """Approval request with given ID was not found."""

    code: str = "APPROVAL_REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Approval request not found: {request_id}")


class ApprovalTaskNotFoundError(NotFoundError):
    """Approval task with given ID was not found."""

    code: str = "APPROVAL_TASK_NOT_FOUND"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Approval task not found: {task_id}")


class ApprovalRuleNotFoundError(NotFoundError):
    """Approval rule with given ID was not found."""

    code: str = "APPROVAL_RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Approval rule not found: {rule_id}")


class CategorizationRuleNotFoundError(NotFoundError):
    """Categorization rule with given ID was not found."""

    code: str = "CATEGORIZATION_RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Categorization rule not found: {rule_id}")


# Bad request


class ExpenseNotDraftError(BadRequestError):
    """Only DRAFT expenses can enter the approval workflow."""

    code: str = "EXPENSE_NOT_DRAFT"

    def __init__(self, expense_id: str, status: str):
        self.expense_id = expense_id
        self.status = status
        super().__init__("Only draft expenses can be submitted for approval")


class DuplicateApprovalRequestError(BadRequestError):
    """
    An approval request already exists for the expense.

    Raised by the pre-check query and, under concurrent submission, by the
    unique constraint on approval_requests.expense_id.
    """

    code: str = "DUPLICATE_APPROVAL_REQUEST"

    def __init__(self, expense_id: str, existing_request_id: str | None = None):
        self.expense_id = expense_id
        self.existing_request_id = existing_request_id
        super().__init__("Approval request already exists for this expense")


class TaskNotPendingError(BadRequestError):
    """Decision attempted on a task that is no longer PENDING."""

    code: str = "TASK_NOT_PENDING"

    def __init__(self, task_id: str, status: str):
        self.task_id = task_id
        self.status = status
        super().__init__("Task is not pending approval")


class ApprovalRequestNotPendingError(BadRequestError):
    """Only PENDING approval requests can be cancelled."""

    code: str = "APPROVAL_REQUEST_NOT_PENDING"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__("Only pending approval requests can be cancelled")


class RuleValidationError(BadRequestError):
    """
    Approval rule definition failed validation.

    ``errors`` lists every problem found, not only the first.
    """

    code: str = "RULE_VALIDATION_ERROR"

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(f"Invalid rule definition: {'; '.join(self.errors)}")


class InvalidRuleConditionsError(BadRequestError):
    """Categorization rule conditions do not fit the declared rule type."""

    code: str = "INVALID_RULE_CONDITIONS"

    def __init__(self, rule_type: str, reason: str):
        self.rule_type = rule_type
        self.reason = reason
        super().__init__(f"Invalid conditions for {rule_type}: {reason}")


class InvalidCategoryHierarchyError(BadRequestError):
    """Category operation would leave the hierarchy in an invalid state."""

    code: str = "INVALID_CATEGORY_HIERARCHY"

    def __init__(self, category_id: str, reason: str):
        self.category_id = category_id
        self.reason = reason
        super().__init__(f"Invalid category hierarchy for {category_id}: {reason}")


class CircularCategoryDependencyError(BadRequestError):
    """Assigning the parent would make the category its own ancestor."""

    code: str = "CIRCULAR_CATEGORY_DEPENDENCY"

    def __init__(self, category_id: str, parent_id: str):
        self.category_id = category_id
        self.parent_id = parent_id
        super().__init__(
            f"Circular dependency: category {category_id} cannot have "
            f"parent {parent_id}"
        )


# Forbidden


class UnauthorizedApproverError(ForbiddenError):
    """The deciding user is not the approver assigned to the task."""

    code: str = "UNAUTHORIZED_APPROVER"

    def __init__(self, task_id: str, approver_id: str):
        self.task_id = task_id
        self.approver_id = approver_id
        super().__init__("You are not authorized to approve this task")


# Conflict


class CategoryNameExistsError(ConflictError):
    """A category with this name already exists under the same parent."""

    code: str = "CATEGORY_NAME_EXISTS"

    def __init__(self, name: str, parent_id: str | None = None):
        self.name = name
        self.parent_id = parent_id
        super().__init__(f"Category with name '{name}' already exists")


class CategoryInUseError(ConflictError):
    """Category is referenced by transactions and cannot be deleted."""

    code: str = "CATEGORY_IN_USE"

    def __init__(self, category_id: str, transaction_count: int):
        self.category_id = category_id
        self.transaction_count = transaction_count
        super().__init__(
            f"Category {category_id} is used by {transaction_count} transaction(s)"
        )


class RuleNameExistsError(ConflictError):
    """A categorization rule with this name already exists."""

    code: str = "RULE_NAME_EXISTS"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Categorization rule with name '{name}' already exists")


class ApprovalRuleNameExistsError(ConflictError):
    """An approval rule with this name already exists."""

    code: str = "APPROVAL_RULE_NAME_EXISTS"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Approval rule with name '{name}' already exists")


class ImmutabilityViolationError(ConflictError):
    """
    Attempted to modify or delete an append-only record.

    Approval history rows are written once and never changed.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify immutable {entity_type} {entity_id}: {reason}"
        )
