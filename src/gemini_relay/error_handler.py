import re
import json
from typing import Optional, Dict, Any, Union

import httpx
from litellm.exceptions import RateLimitError

# Case-insensitive substrings that mark a quota / rate-limit condition in an
# upstream error body or in the CLI's stderr.
RATE_LIMIT_MARKERS = ("rate limit exceeded", "quota", "limit", "resource_exhausted")


class RelayError(Exception):
    """Base class for errors that surface to the client as an OpenAI error document."""

    status_code: int = 500
    error_type: str = "stream_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_openai_error(self) -> Dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.status_code,
            }
        }


class AuthenticationRequired(RelayError):
    """No usable stored credential. The user must re-authenticate out of band."""

    error_type = "authentication_error"


class RefreshFailed(RelayError):
    """The token endpoint rejected the refresh, or the refreshed credential could not be persisted."""

    error_type = "authentication_error"


class CredentialStoreError(RelayError):
    error_type = "authentication_error"


class DiscoveryError(RelayError):
    error_type = "discovery_error"


class DiscoveryTimeout(DiscoveryError):
    pass


class DiscoveryMalformed(DiscoveryError):
    pass


class DiscoveryFailed(DiscoveryError):
    pass


class StreamError(RelayError):
    """Transport failure while invoking or reading the backend."""

    error_type = "stream_error"

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class BackendRateLimited(RateLimitError):
    """
    The backend reported a quota / rate-limit condition.

    Subclasses litellm's RateLimitError so callers that already classify
    provider errors the litellm way keep working.
    """

    error_type = "rate_limit_exceeded"

    def __init__(
        self,
        detail: str,
        model: str,
        backend: str = "gemini_cli",
        response: Optional[httpx.Response] = None,
    ):
        super().__init__(
            message=detail, llm_provider=backend, model=model, response=response
        )
        self.detail = detail
        self.status_code = 429

    def to_openai_error(self) -> Dict[str, Any]:
        return {
            "error": {
                "message": self.detail,
                "type": self.error_type,
                "code": 429,
            }
        }


def is_rate_limit_message(text: Optional[str]) -> bool:
    """Checks a free-form error text for any of the rate-limit markers."""
    if not text:
        return False
    lowered = text.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def get_retry_after(error: Union[Exception, str, None]) -> Optional[int]:
    """
    Extracts a retry delay in seconds from an error or error body.
    Understands Google's RetryInfo detail as well as common free-text patterns.
    """
    if error is None:
        return None
    error_str = str(error)

    try:
        json_match = re.search(r"(\{.*\})", error_str, re.DOTALL)
        if json_match:
            error_json = json.loads(json_match.group(1))
            for detail in error_json.get("error", {}).get("details", []) or []:
                if detail.get("@type") == "type.googleapis.com/google.rpc.RetryInfo":
                    delay = detail.get("retryDelay")
                    if isinstance(delay, dict) and delay.get("seconds"):
                        return int(delay["seconds"])
                    if isinstance(delay, str) and delay.endswith("s"):
                        return int(float(delay[:-1]))
    except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
        pass

    patterns = [
        r"retry after:?\s*(\d+)",
        r"retry_after:?\s*(\d+)",
        r"retry in\s*(\d+)\s*seconds",
        r'"retrydelay":\s*"(\d+)s"',
    ]
    lowered = error_str.lower()
    for pattern in patterns:
        match = re.search(pattern, lowered)
        if match:
            return int(match.group(1))

    value = getattr(error, "retry_after", None)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def mask_credential(value: Optional[str]) -> str:
    """Masks a token or a credential path for logging, keeping only the last characters."""
    if not value:
        return "N/A"
    if len(value) <= 8:
        return "****"
    return f"...{value[-6:]}"


def openai_error_body(error: Exception) -> Dict[str, Any]:
    """Builds the OpenAI-shaped error document for any exception."""
    if isinstance(error, (RelayError, BackendRateLimited)):
        return error.to_openai_error()
    return {
        "error": {
            "message": str(error) or type(error).__name__,
            "type": "stream_error",
            "code": 500,
        }
    }


def error_status_code(error: Exception) -> int:
    if isinstance(error, BackendRateLimited):
        return 429
    if isinstance(error, RelayError):
        return error.status_code
    return 500
