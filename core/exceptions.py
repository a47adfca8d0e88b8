"""
全局异常处理器

领域异常（BusinessException 及其子类）按业务码映射 HTTP 状态码；
网关返回的 DECLINED / ERROR 属于正常结果，不经过这里。
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
import traceback
import uuid
from starlette import status as http_status

from .response import error_response
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException


# 业务码 -> HTTP 状态码（未列出的默认 400）
_HTTP_STATUS_BY_CODE = {
    BusinessCode.PARAM_VALIDATION_ERROR: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
    BusinessCode.NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.CONFLICT: http_status.HTTP_409_CONFLICT,
    BusinessCode.SYSTEM_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.DATABASE_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.NETWORK_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.SERVICE_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,

    # 账本
    PaymentCode.TRANSACTION_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    PaymentCode.DUPLICATE_REF: http_status.HTTP_409_CONFLICT,
    PaymentCode.VERSION_CONFLICT: http_status.HTTP_409_CONFLICT,
    PaymentCode.INVALID_TRANSITION: http_status.HTTP_409_CONFLICT,
    PaymentCode.OPERATION_IN_FLIGHT: http_status.HTTP_409_CONFLICT,
    PaymentCode.INVALID_AMOUNT: http_status.HTTP_422_UNPROCESSABLE_ENTITY,

    # 网关
    PaymentCode.PROVIDER_ERROR: http_status.HTTP_502_BAD_GATEWAY,
    PaymentCode.PROVIDER_RECOVERABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentCode.TIMEOUT: http_status.HTTP_503_SERVICE_UNAVAILABLE,
}

# HTTPException 状态码 -> 业务码
_CODE_BY_HTTP_STATUS = {
    404: BusinessCode.NOT_FOUND,
    409: BusinessCode.CONFLICT,
    503: BusinessCode.SERVICE_UNAVAILABLE,
}


def business_code_to_http_status(code: int) -> int:
    """根据业务码映射HTTP状态码（默认400）。"""
    return _HTTP_STATUS_BY_CODE.get(code, http_status.HTTP_400_BAD_REQUEST)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _envelope(request: Request, status_code: int, headers=None, **error) -> JSONResponse:
    """组装错误信封，error 参数透传给 error_response。"""
    response = error_response(request_id=_request_id(request), **error)
    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(mode="json"),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI):
    """注册全局异常处理器"""
    logger = get_logger(__name__)

    @app.exception_handler(BusinessException)
    async def business_exception_handler(request: Request, exc: BusinessException):
        status_code = business_code_to_http_status(exc.code)
        # 4xx 为调用方问题，5xx 为网关或基础设施问题
        log = logger.warning if status_code >= 500 else logger.info
        log(
            "business_exception",
            code=int(exc.code),
            error_type=exc.error_type,
            status_code=status_code,
        )
        return _envelope(
            request,
            status_code,
            code=exc.code,
            message=exc.message,
            error_type=exc.error_type,
            details=exc.details,
            field=exc.field,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """请求体不合法（币种格式、金额精度等）"""
        errors = exc.errors()
        first_error = errors[0] if errors else {}
        return _envelope(
            request,
            http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=f"Validation failed: {first_error.get('msg', 'unknown')}",
            error_type="ValidationError",
            details={"errors": jsonable_encoder(errors)},
            field=".".join(str(loc) for loc in first_error.get("loc", [])[1:]),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return _envelope(
            request,
            exc.status_code,
            headers=getattr(exc, "headers", None),
            code=_CODE_BY_HTTP_STATUS.get(exc.status_code, BusinessCode.SYSTEM_ERROR),
            message=str(exc.detail),
            error_type="HTTPError",
            details={"status_code": exc.status_code},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """未捕获异常：记录日志，DEBUG 下附带堆栈"""
        logger.error("unhandled_exception", error=str(exc), exc_info=True)
        details = None
        if app.debug:
            details = {"exception": str(exc), "traceback": traceback.format_exc()}
        return _envelope(
            request,
            http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=BusinessCode.SYSTEM_ERROR,
            message="Internal server error",
            error_type="SystemError",
            details=details,
        )
