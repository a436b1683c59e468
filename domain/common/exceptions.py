"""领域层业务异常基类。

异常携带业务码与错误类型，由 core.exceptions 统一映射为 HTTP 状态码与响应信封；
领域层不依赖 core 层。
"""
from __future__ import annotations

from typing import Optional

from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class ResourceNotFoundException(BusinessException):
    """按ID查找的记录不存在"""

    def __init__(self, code: int, resource: str, resource_id: str) -> None:
        super().__init__(
            code=code,
            message=f"{resource.capitalize()} not found: {resource_id}",
            error_type="not_found",
            details={f"{resource}_id": resource_id},
        )


class DomainValidationException(BusinessException):
    """实体不变量被破坏（金额非正、币种非法等）"""

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="validation_error",
            details=details,
            field=field,
        )
