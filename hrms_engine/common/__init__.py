"""Common module — shared utilities for the attendance & leave engine."""

from hrms_engine.common.audit import AuditTrail, create_audit_entry
from hrms_engine.common.constants import (
    ROLE_RANK,
    AttendanceStatus,
    CompensatoryStatus,
    Decision,
    EmployeeType,
    LeaveType,
    LoginType,
    NotificationType,
    RequestKind,
    RequestState,
    StageStatus,
)
from hrms_engine.common.exceptions import (
    AppException,
    ConflictError,
    ExternalSourceException,
    ForbiddenException,
    InsufficientBalanceException,
    NotFoundException,
    ValidationException,
    register_exception_handlers,
)
from hrms_engine.common.pagination import (
    PaginatedResponse,
    PaginationMeta,
    PaginationParams,
    paginate,
)

__all__ = [
    # Audit
    "AuditTrail",
    "create_audit_entry",
    # Constants / Enums
    "ROLE_RANK",
    "AttendanceStatus",
    "CompensatoryStatus",
    "Decision",
    "EmployeeType",
    "LeaveType",
    "LoginType",
    "NotificationType",
    "RequestKind",
    "RequestState",
    "StageStatus",
    # Exceptions
    "AppException",
    "ConflictError",
    "ExternalSourceException",
    "ForbiddenException",
    "InsufficientBalanceException",
    "NotFoundException",
    "ValidationException",
    "register_exception_handlers",
    # Pagination
    "PaginatedResponse",
    "PaginationMeta",
    "PaginationParams",
    "paginate",
]
