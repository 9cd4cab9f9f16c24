"""同步错误分类."""

from enum import StrEnum


class ErrorCategory(StrEnum):
    """同步失败的错误类型."""

    AUTH = "auth"
    ESI_API = "esi_api"
    NETWORK = "network"
    DATABASE = "database"
    VALIDATION = "validation"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class SyncError(Exception):
    """同步过程中的可分类错误."""

    category: ErrorCategory = ErrorCategory.UNKNOWN


class RecordValidationError(SyncError):
    """转换后的数据未通过结构校验."""

    category = ErrorCategory.VALIDATION


class SyncCancelledError(SyncError):
    """同步被取消."""

    category = ErrorCategory.CANCELLED


def classify_error(exc: BaseException) -> ErrorCategory:
    """将任意异常映射到错误类型."""
    if isinstance(exc, SyncError):
        return exc.category
    return ErrorCategory.UNKNOWN
