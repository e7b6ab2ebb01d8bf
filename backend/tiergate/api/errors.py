"""
自定义异常模块

所有业务异常都继承自 AppError，在 main.py 中有统一的异常处理器，
渲染为 {"code", "message", "data"} 格式。

错误码规则：<HTTP 状态码><3 位细分码>，例如 401001。
"""
from __future__ import annotations


class AppError(Exception):
    """
    应用自定义异常类

    - code: 业务错误码（用于前端区分不同错误）
    - message: 错误消息
    - status_code: HTTP 状态码

    使用示例：
        raise AppError(code=404001, message="Profile not found", status_code=404)
    """

    def __init__(self, *, code: int, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


def unauthorized(message: str = "Could not validate credentials") -> AppError:
    """身份无法确认（AuthenticationFailure）"""
    return AppError(code=401001, message=message, status_code=401)


def invalid_signature() -> AppError:
    return AppError(code=401002, message="Invalid signature", status_code=401)


def forbidden(message: str = "Forbidden") -> AppError:
    """身份已知但没有权限（仅用于管理员接口和邮箱不匹配）"""
    return AppError(code=403001, message=message, status_code=403)


def not_found(message: str = "Not found") -> AppError:
    return AppError(code=404001, message=message, status_code=404)


def invalid_payload(message: str = "Invalid payload") -> AppError:
    return AppError(code=400001, message=message, status_code=400)


def configuration_error(message: str = "Server misconfigured") -> AppError:
    """缺少必需的外部配置（ConfigurationError），对当前请求是致命的"""
    return AppError(code=500001, message=message, status_code=500)


def upstream_error(message: str = "Payment provider unavailable") -> AppError:
    return AppError(code=502001, message=message, status_code=502)


def service_unavailable(message: str = "Service temporarily unavailable") -> AppError:
    return AppError(code=503001, message=message, status_code=503)
