"""User-facing error messages for API failures.

Learn: The UI never shows a raw transport error or stack trace. Every
ApiError maps, by HTTP status, to an ErrorMessage: a localized sentence,
whether retrying can help (`recoverable`), and an optional hint on what
to do next. Status 0 is a failure with no HTTP response (network down,
DNS, timeout). Unknown statuses get a generic recoverable message.
"""

from dataclasses import dataclass
from typing import Optional

from vaultsync.client.api_client import NETWORK_ERROR_STATUS, ApiError

DEFAULT_LOCALE = "en"


@dataclass(frozen=True)
class ErrorMessage:
    message: str
    recoverable: bool
    action_hint: Optional[str] = None


CATALOGS: dict[str, dict[int, ErrorMessage]] = {
    "en": {
        NETWORK_ERROR_STATUS: ErrorMessage(
            "Could not reach the server", True, "Check your connection and try again"
        ),
        400: ErrorMessage("Invalid data", True, "Please check your input"),
        401: ErrorMessage("Your session has expired", True, "Please sign in again"),
        403: ErrorMessage("You are not allowed to do this", False),
        404: ErrorMessage("Resource not found", False),
        409: ErrorMessage("The action conflicts with the current state", True, "Please try again"),
        413: ErrorMessage("File too large", True, "Please choose a file under 10MB"),
        415: ErrorMessage("Unsupported file type", True, "Only JPEG and PNG are supported"),
        422: ErrorMessage("Invalid data", True, "Please check your input"),
        429: ErrorMessage("Too many requests", True, "Please wait a moment and try again"),
        500: ErrorMessage("Something went wrong on our side", True, "Please try again later"),
        502: ErrorMessage("The server is not responding", True, "Please try again later"),
        503: ErrorMessage("Service temporarily unavailable", True, "Please try again later"),
    },
    "vi": {
        NETWORK_ERROR_STATUS: ErrorMessage(
            "Không thể kết nối tới máy chủ", True, "Vui lòng kiểm tra kết nối và thử lại"
        ),
        400: ErrorMessage("Dữ liệu không hợp lệ", True, "Vui lòng kiểm tra lại thông tin"),
        401: ErrorMessage("Phiên đăng nhập đã hết hạn", True, "Vui lòng đăng nhập lại"),
        403: ErrorMessage("Bạn không có quyền thực hiện thao tác này", False),
        404: ErrorMessage("Không tìm thấy tài nguyên", False),
        409: ErrorMessage("Thao tác bị xung đột", True, "Vui lòng thử lại"),
        413: ErrorMessage("Tệp quá lớn", True, "Vui lòng chọn tệp nhỏ hơn 10MB"),
        415: ErrorMessage("Định dạng tệp không được hỗ trợ", True, "Chỉ hỗ trợ JPEG và PNG"),
        422: ErrorMessage("Dữ liệu không hợp lệ", True, "Vui lòng kiểm tra lại thông tin"),
        429: ErrorMessage("Quá nhiều yêu cầu", True, "Vui lòng đợi một lát rồi thử lại"),
        500: ErrorMessage("Đã xảy ra lỗi hệ thống", True, "Vui lòng thử lại sau"),
        502: ErrorMessage("Máy chủ không phản hồi", True, "Vui lòng thử lại sau"),
        503: ErrorMessage("Dịch vụ tạm thời không khả dụng", True, "Vui lòng thử lại sau"),
    },
}

DEFAULTS: dict[str, ErrorMessage] = {
    "en": ErrorMessage("An unknown error occurred", True, "Please try again"),
    "vi": ErrorMessage("Đã xảy ra lỗi không xác định", True, "Vui lòng thử lại"),
}

FIELD_ERRORS: dict[str, dict[str, str]] = {
    "en": {
        "email": "Invalid email address",
        "password": "Password must be at least 8 characters",
        "category": "Please choose a category",
        "image": "Please choose an image",
        "title": "Title cannot be empty",
    },
    "vi": {
        "email": "Email không hợp lệ",
        "password": "Mật khẩu phải có ít nhất 8 ký tự",
        "category": "Vui lòng chọn danh mục",
        "image": "Vui lòng chọn ảnh",
        "title": "Tiêu đề không được để trống",
    },
}

_FIELD_DEFAULT = {"en": "This field is invalid", "vi": "Trường này không hợp lệ"}


def _locale(locale: str) -> str:
    return locale if locale in CATALOGS else DEFAULT_LOCALE


def get_error_message(status: int, locale: str = DEFAULT_LOCALE) -> ErrorMessage:
    loc = _locale(locale)
    return CATALOGS[loc].get(status, DEFAULTS[loc])


def format_api_error(error: BaseException, locale: str = DEFAULT_LOCALE) -> str:
    """One display string for any error raised by an API call.

    ApiError: the server's message (English locale) or the catalog message
    for its status (other locales), with the action hint appended. Network
    failures always use the catalog text.
    """
    if isinstance(error, ApiError):
        config = get_error_message(error.status, locale)
        message = config.message
        if error.status != NETWORK_ERROR_STATUS and error.message and locale == DEFAULT_LOCALE:
            message = error.message
        if config.action_hint:
            return f"{message}. {config.action_hint}"
        return message
    return str(error) or DEFAULTS[_locale(locale)].message


def is_recoverable(status: int) -> bool:
    config = CATALOGS[DEFAULT_LOCALE].get(status)
    return config.recoverable if config else True


def get_field_error(field: str, locale: str = DEFAULT_LOCALE, default: Optional[str] = None) -> str:
    loc = _locale(locale)
    return FIELD_ERRORS[loc].get(field) or default or _FIELD_DEFAULT[loc]
