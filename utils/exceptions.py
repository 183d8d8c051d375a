from fastapi import HTTPException


class CustomException(HTTPException):
    code = "ERROR"
    status_code_default = 400

    def __init__(self, message: str, dev_message: str = "", status_code: int = None, detail: str = "", code: str = None):
        status_code = status_code or self.status_code_default
        super().__init__(status_code=status_code, detail=message)
        self.code = code or self.code
        self.message = message
        self.dev_message = dev_message or message
        self.detail = detail

    def __str__(self):
        return self.message

    def to_dict(self):
        return {
            "code": self.code,
            "message": self.message,
            "detail": self.detail,
            "dev_message": self.dev_message
        }


# 생성/수정 요청 입력 오류
class ValidationError(CustomException):
    code = "VALIDATION_ERROR"
    status_code_default = 400


# deployment/version/rollback/alert 미존재
class NotFoundError(CustomException):
    code = "NOT_FOUND"
    status_code_default = 404


# 동시 상태 충돌 (예: 이미 롤백 중)
class ConflictError(CustomException):
    code = "CONFLICT"
    status_code_default = 409


# 현재 status에서 허용되지 않는 작업
class InvalidStateError(CustomException):
    code = "INVALID_STATE"
    status_code_default = 409


# store 또는 외부 substrate 실패
class InfrastructureError(CustomException):
    code = "INFRASTRUCTURE_ERROR"
    status_code_default = 503


class RollbackVerificationError(Exception):
    pass
