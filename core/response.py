"""
统一响应格式定义

所有接口返回 {code, message, data, error} 信封；网关结果本身
（APPROVED / DECLINED / REDIRECT ...）放在 data 中，
HTTP 状态码只反映请求是否被受理。
"""
from typing import Any, Optional, Generic, TypeVar
from pydantic import BaseModel, Field, field_serializer
from datetime import datetime, timezone
from shared.codes import BusinessCode


T = TypeVar("T")


class ErrorDetail(BaseModel):
    """错误详情"""
    type: str
    details: Optional[dict] = None
    field: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer('timestamp')
    def serialize_timestamp(self, timestamp: datetime) -> str:
        """UTC ISO8601，以 Z 结尾"""
        ts = timestamp.replace(tzinfo=timezone.utc) if timestamp.tzinfo is None else timestamp.astimezone(timezone.utc)
        return ts.isoformat().replace("+00:00", "Z")


class Response(BaseModel, Generic[T]):
    """统一响应模型"""
    code: int
    message: str
    data: Optional[T] = None
    error: Optional[ErrorDetail] = None


def success_response(
    data: Any = None,
    message: str = "Success",
    code: int = BusinessCode.SUCCESS
) -> Response:
    """创建成功响应"""
    return Response(code=code, message=message, data=data)


def model_response(model: BaseModel, message: str = "Success") -> Response:
    """
    以 JSON 模式导出 pydantic 模型作为 data

    Decimal 金额导出为字符串，枚举导出为值，保证与幂等重放的结果一致。
    """
    return success_response(data=model.model_dump(mode="json"), message=message)


def error_response(
    code: int,
    message: str,
    error_type: str = "BusinessError",
    details: Optional[dict] = None,
    field: Optional[str] = None,
    request_id: Optional[str] = None
) -> Response:
    """
    创建错误响应

    Args:
        code: 业务状态码（BusinessCode / PaymentCode）
        message: 错误消息
        error_type: 异常类型名，如 InvalidAmount、OperationInFlight
        details: 错误详情
        field: 出错的请求字段
        request_id: 请求ID
    """
    return Response(
        code=code,
        message=message,
        error=ErrorDetail(
            type=error_type,
            details=details,
            field=field,
            request_id=request_id
        )
    )
