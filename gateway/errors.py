import re
from typing import Optional


class GatewayError(Exception):
    code = "gateway_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputValidationError(GatewayError):
    """Bad caller input. Surfaced before any streaming starts."""

    code = "invalid_input"


class ImageTooLargeError(InputValidationError):
    code = "image_too_large"


class ConfigurationError(GatewayError):
    code = "not_configured"


class ModelNotConfiguredError(ConfigurationError):
    code = "model_not_configured"


class MissingCredentialError(ConfigurationError):
    code = "missing_credential"


class UpstreamError(GatewayError):
    code = "upstream_error"

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class NoContentError(UpstreamError):
    code = "no_content"


class UnsupportedParameterError(UpstreamError):
    code = "unsupported_parameter"


class UpstreamStatusError(UpstreamError):
    code = "upstream_status"


class UpstreamTimeoutError(UpstreamError):
    code = "upstream_timeout"


class UpstreamParseError(UpstreamError):
    code = "upstream_parse"


class FallbackLoopError(UpstreamError):
    code = "fallback_loop"


class AugmentationError(GatewayError):
    """Search or query-refinement failure. Never leaves the augmentation step."""

    code = "augmentation_failed"


_UNSUPPORTED_RE = re.compile(r"unsupported parameter|not supported", re.IGNORECASE)
_REJECTED_RE = re.compile(r"bad request|\b(400|422)\b", re.IGNORECASE)
_NO_CONTENT_RE = re.compile(r"no content", re.IGNORECASE)
_TIMED_OUT_RE = re.compile(r"timed out", re.IGNORECASE)


def is_fallback_eligible(exc: BaseException) -> bool:
    """Return True when a failed attempt may be retried against the fallback model."""
    if isinstance(exc, (InputValidationError, ConfigurationError, FallbackLoopError)):
        return False
    if isinstance(exc, (NoContentError, UnsupportedParameterError, UpstreamTimeoutError)):
        return True
    if isinstance(exc, UpstreamStatusError):
        status = exc.status_code or 0
        if 400 <= status < 500:
            return True
        return bool(_UNSUPPORTED_RE.search(exc.message) or _REJECTED_RE.search(exc.message))
    if isinstance(exc, UpstreamError):
        text = exc.message
        return bool(
            _NO_CONTENT_RE.search(text)
            or _UNSUPPORTED_RE.search(text)
            or _REJECTED_RE.search(text)
            or _TIMED_OUT_RE.search(text)
        )
    return False
