from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class BaseAPIException(HTTPException):
    """Base exception for API errors"""

    retryable: bool = False

    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}

        super().__init__(
            status_code=status_code,
            detail={
                "success": False,
                "error": {
                    "code": error_code,
                    "message": message,
                    "details": self.details,
                    "retryable": self.retryable,
                }
            }
        )

    def __str__(self) -> str:  # Ensure str(e) returns the human message
        return self.message


class AuthenticationError(BaseAPIException):
    """Authentication related errors"""
    def __init__(self, message: str = "Authentication failed", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="AUTH_001",
            message=message,
            details=details
        )


class ValidationError(BaseAPIException):
    """잘못된 입력 (0 이하 금액, 이미 지난 만료 시각 등)"""
    def __init__(self, message: str = "Validation failed", details: Optional[Dict] = None):
        super().__init__(
            status_code=422,
            error_code="VALIDATION_001",
            message=message,
            details=details
        )


class NotFoundError(BaseAPIException):
    """Resource not found errors"""
    def __init__(self, message: str = "Resource not found", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="NOT_FOUND_001",
            message=message,
            details=details
        )


class InsufficientBalanceError(BaseAPIException):
    """사용 가능한 포인트가 요청 금액보다 적음"""
    def __init__(self, requested: int, available: int, message: Optional[str] = None):
        self.requested = requested
        self.available = available
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="BALANCE_001",
            message=message
            or f"Insufficient balance. Required: {requested}, Available: {available}",
            details={"requested": requested, "available": available},
        )


class InvariantViolationError(BaseAPIException):
    """잔액 불변식 위반 - 버그 또는 데이터 손상. 재시도 불가"""
    def __init__(self, message: str = "Ledger invariant violated", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="INVARIANT_001",
            message=message,
            details=details
        )


class StoreConflictError(BaseAPIException):
    """동시성 충돌 (버전 불일치, 직렬화 실패, 락 경합)"""

    retryable = True

    def __init__(self, message: str = "Concurrent modification conflict", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error_code="CONFLICT_002",
            message=message,
            details=details
        )


class StoreUnavailableError(BaseAPIException):
    """저장소 인프라 장애"""

    retryable = True

    def __init__(self, message: str = "Ledger store unavailable", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="STORE_001",
            message=message,
            details=details
        )


class OperationTimeoutError(BaseAPIException):
    """커밋 전에 작업 제한 시간 초과 - 변경사항 없음"""

    retryable = True

    def __init__(self, message: str = "Operation timed out", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            error_code="TIMEOUT_001",
            message=message,
            details=details
        )


class InternalServerError(BaseAPIException):
    """Internal server errors"""
    def __init__(self, message: str = "Internal server error", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="INTERNAL_001",
            message=message,
            details=details
        )
