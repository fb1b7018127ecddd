"""
Typed Exception Hierarchy for the Expense Approval Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Approval routing must report failures precisely.  A transport layer
(HTTP, RPC) maps each failure to a response without parsing messages:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example - WRONG way to handle errors:
    try:
        engine.decide(expense_id, approver_id, DecisionOutcome.APPROVED)
    except Exception as e:
        if "not authorized" in str(e):  # FRAGILE
            ...

Example - RIGHT way:
    try:
        engine.decide(expense_id, approver_id, DecisionOutcome.APPROVED)
    except UnauthorizedApproverError as e:
        api_response(code=e.code, expense=e.expense_id, step=e.step_index)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ExpenseKernelError (base)
    |
    +-- ApprovalRoutingError
    |   +-- NoApproverFoundError
    |   +-- InvalidApproverRoleError
    |
    +-- DecisionError
    |   +-- UnauthorizedApproverError
    |   +-- AlreadyDecidedError
    |   |   +-- ConflictingDecisionError
    |   +-- ExpenseAlreadyFinalizedError
    |
    +-- ExpenseError
    |   +-- ExpenseNotFoundError
    |   +-- InvalidExpenseTransitionError
    |   +-- EmptyExpenseError
    |   +-- PolicySnapshotTamperedError
    |
    +-- PolicyError
    |   +-- InvalidRuleConfigurationError
    |   +-- ApprovalPolicyNotFoundError
    |
    +-- AuthorizationError
    |   +-- OverrideNotPermittedError
    |   +-- AdminRoleRequiredError
    |
    +-- UserError
    |   +-- UserNotFoundError
    |   +-- ManagerRequiredError
    |   +-- InvalidManagerError
    |   +-- ManagerCycleError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- PersistenceFailureError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. IDEMPOTENT RETRIES ARE SUCCESS:

    A retried decision with an identical payload is not an error at all --
    ``decide()`` returns ``DecisionResult(duplicate=True)``.  Only a
    *different* decision from the same approver on the same step raises
    ``ConflictingDecisionError``.

2. PERSISTENCE FAILURES MEAN "NOTHING HAPPENED":

    except PersistenceFailureError:
        # ledger append and status update were rolled back together;
        # the caller retries the whole operation.

3. NO AUTOMATIC RETRIES:

    The kernel never retries.  ConcurrencyError and PersistenceFailureError
    are the two categories a transport layer may choose to retry.

===============================================================================
"""


class ExpenseKernelError(Exception):
    """
    Base exception for all expense kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "EXPENSE_KERNEL_ERROR"


# Approver routing


class ApprovalRoutingError(ExpenseKernelError):
    """Base exception for approver resolution errors."""

    code: str = "APPROVAL_ROUTING_ERROR"


class NoApproverFoundError(ApprovalRoutingError):
    """No approver could be derived for a step."""

    code: str = "NO_APPROVER_FOUND"

    def __init__(self, expense_id: str, step_index: int, anchor_user_id: str):
        self.expense_id = expense_id
        self.step_index = step_index
        self.anchor_user_id = anchor_user_id
        super().__init__(
            f"No approver found for expense {expense_id} step {step_index}: "
            f"user {anchor_user_id} has no manager"
        )


class InvalidApproverRoleError(ApprovalRoutingError):
    """A resolved approver is unknown, inactive, or not a Manager/Admin."""

    code: str = "INVALID_APPROVER_ROLE"

    def __init__(self, user_id: str, role: str | None, reason: str = ""):
        self.user_id = user_id
        self.role = role
        self.reason = reason
        super().__init__(
            f"User {user_id} cannot approve (role={role}): {reason}"
            if reason else f"User {user_id} cannot approve (role={role})"
        )


# Decision events


class DecisionError(ExpenseKernelError):
    """Base exception for rejected decision events."""

    code: str = "DECISION_ERROR"


class UnauthorizedApproverError(DecisionError):
    """Approver is not a member of the current step's approver set."""

    code: str = "UNAUTHORIZED_APPROVER"

    def __init__(self, expense_id: str, approver_id: str, step_index: int):
        self.expense_id = expense_id
        self.approver_id = approver_id
        self.step_index = step_index
        super().__init__(
            f"User {approver_id} is not an approver for expense "
            f"{expense_id} step {step_index}"
        )


class AlreadyDecidedError(DecisionError):
    """Approver has already decided on this step."""

    code: str = "ALREADY_DECIDED"

    def __init__(
        self,
        expense_id: str,
        approver_id: str,
        step_index: int,
        message: str | None = None,
    ):
        self.expense_id = expense_id
        self.approver_id = approver_id
        self.step_index = step_index
        super().__init__(
            message
            or f"User {approver_id} already decided expense {expense_id} "
            f"step {step_index}"
        )


class ConflictingDecisionError(AlreadyDecidedError):
    """A different decision arrived from an approver who already decided."""

    code: str = "CONFLICTING_DECISION"

    def __init__(
        self,
        expense_id: str,
        approver_id: str,
        step_index: int,
        recorded: str,
        attempted: str,
    ):
        self.recorded = recorded
        self.attempted = attempted
        super().__init__(
            expense_id,
            approver_id,
            step_index,
            f"User {approver_id} already decided {recorded} on expense "
            f"{expense_id} step {step_index}; cannot change to {attempted}",
        )


class ExpenseAlreadyFinalizedError(DecisionError):
    """Expense has reached a terminal status."""

    code: str = "EXPENSE_ALREADY_FINALIZED"

    def __init__(self, expense_id: str, status: str):
        self.expense_id = expense_id
        self.status = status
        super().__init__(f"Expense {expense_id} is already {status}")


# Expense lifecycle


class ExpenseError(ExpenseKernelError):
    """Base exception for expense lifecycle errors."""

    code: str = "EXPENSE_ERROR"


class ExpenseNotFoundError(ExpenseError):
    """Expense with given ID was not found."""

    code: str = "EXPENSE_NOT_FOUND"

    def __init__(self, expense_id: str):
        self.expense_id = expense_id
        super().__init__(f"Expense not found: {expense_id}")


class InvalidExpenseTransitionError(ExpenseError):
    """Requested status change is not in the transition table."""

    code: str = "INVALID_EXPENSE_TRANSITION"

    def __init__(self, expense_id: str, from_status: str, to_status: str):
        self.expense_id = expense_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Expense {expense_id}: invalid transition "
            f"{from_status} -> {to_status}"
        )


class EmptyExpenseError(ExpenseError):
    """Expense has no line items and cannot be submitted."""

    code: str = "EMPTY_EXPENSE"

    def __init__(self, expense_id: str):
        self.expense_id = expense_id
        super().__init__(f"Expense {expense_id} has no items")


class PolicySnapshotTamperedError(ExpenseError):
    """Stored policy snapshot no longer matches its recorded hash."""

    code: str = "POLICY_SNAPSHOT_TAMPERED"

    def __init__(self, expense_id: str, expected_hash: str | None, computed_hash: str | None):
        self.expense_id = expense_id
        self.expected_hash = expected_hash
        self.computed_hash = computed_hash
        super().__init__(
            f"Policy snapshot for expense {expense_id} was modified: "
            f"{str(expected_hash)[:16]}... != {str(computed_hash)[:16]}..."
        )


# Policy configuration


class PolicyError(ExpenseKernelError):
    """Base exception for approval policy errors."""

    code: str = "POLICY_ERROR"


class InvalidRuleConfigurationError(PolicyError):
    """Approval rule or policy is malformed."""

    code: str = "INVALID_RULE_CONFIGURATION"

    def __init__(self, rule: str, reason: str):
        self.rule = rule
        self.reason = reason
        super().__init__(f"Invalid rule configuration {rule}: {reason}")


class ApprovalPolicyNotFoundError(PolicyError):
    """No policy applies to an organization/category."""

    code: str = "APPROVAL_POLICY_NOT_FOUND"

    def __init__(self, organization_id: str, category: str | None):
        self.organization_id = organization_id
        self.category = category
        super().__init__(
            f"No approval policy for organization {organization_id} "
            f"(category={category})"
        )


# Authorization


class AuthorizationError(ExpenseKernelError):
    """Base exception for role checks."""

    code: str = "AUTHORIZATION_ERROR"


class OverrideNotPermittedError(AuthorizationError):
    """Override attempted by a user without the Admin role."""

    code: str = "OVERRIDE_NOT_PERMITTED"

    def __init__(self, expense_id: str, actor_id: str):
        self.expense_id = expense_id
        self.actor_id = actor_id
        super().__init__(
            f"User {actor_id} is not permitted to override expense {expense_id}"
        )


class AdminRoleRequiredError(AuthorizationError):
    """Administrative action attempted by a non-Admin."""

    code: str = "ADMIN_ROLE_REQUIRED"

    def __init__(self, actor_id: str, action: str):
        self.actor_id = actor_id
        self.action = action
        super().__init__(f"User {actor_id} needs the Admin role to {action}")


# Users and org chart


class UserError(ExpenseKernelError):
    """Base exception for user directory errors."""

    code: str = "USER_ERROR"


class UserNotFoundError(UserError):
    """User with given ID was not found."""

    code: str = "USER_NOT_FOUND"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class ManagerRequiredError(UserError):
    """Employees must report to a manager."""

    code: str = "MANAGER_REQUIRED"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Employee {user_id} must be assigned a manager")


class InvalidManagerError(UserError):
    """Manager reference is unusable."""

    code: str = "INVALID_MANAGER"

    def __init__(self, user_id: str, manager_id: str, reason: str):
        self.user_id = user_id
        self.manager_id = manager_id
        self.reason = reason
        super().__init__(
            f"User {manager_id} cannot manage {user_id}: {reason}"
        )


class ManagerCycleError(UserError):
    """Manager assignment would create a reporting cycle."""

    code: str = "MANAGER_CYCLE"

    def __init__(self, user_id: str, manager_id: str):
        self.user_id = user_id
        self.manager_id = manager_id
        super().__init__(
            f"Assigning {manager_id} as manager of {user_id} creates a cycle"
        )


# Concurrency


class ConcurrencyError(ExpenseKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Immutability


class ImmutabilityError(ExpenseKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Approval decisions are append-only; terminal expenses are frozen.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Persistence


class PersistenceFailureError(ExpenseKernelError):
    """The atomic save failed; the transition did not happen."""

    code: str = "PERSISTENCE_FAILURE"

    def __init__(self, operation: str, expense_id: str | None, reason: str):
        self.operation = operation
        self.expense_id = expense_id
        self.reason = reason
        super().__init__(
            f"Persistence failure during {operation} "
            f"(expense={expense_id}): {reason}"
        )
