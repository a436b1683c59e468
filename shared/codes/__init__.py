"""
跨层共享的通用业务码（Domain/Core/API 共用）

支付相关的业务码与渠道状态映射位于 `shared.codes.payment_codes`。
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    """通用业务码，HTTP 状态映射见 core.exceptions"""

    SUCCESS = 0

    # 参数错误 (1xxxx)
    PARAM_ERROR = 10000
    PARAM_VALIDATION_ERROR = 10003

    # 资源 (2xxxx)
    NOT_FOUND = 20006

    # 访问控制 (3xxxx)
    UNAUTHORIZED = 30001
    FORBIDDEN = 30002

    # 系统错误 (4xxxx)
    SYSTEM_ERROR = 40000
    SERVICE_UNAVAILABLE = 40003

    TOO_MANY_REQUESTS = 50001


__all__ = ["BusinessCode"]
