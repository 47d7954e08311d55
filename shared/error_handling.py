"""Standardized error handling utilities for Blockflow surfaces (API, CLI)"""

import traceback
from typing import Any, Dict, Optional


def create_error_response(
    error_message: str,
    exception: Optional[Exception] = None,
    **details: Any,
) -> Dict[str, Any]:
    """
    Create standardized error response with optional traceback.

    Args:
        error_message: User-friendly error message
        exception: Optional exception to include traceback from
        **details: Extra fields (e.g. block_id) merged into the payload

    Returns:
        Dict with standardized error format
    """
    error_data: Dict[str, Any] = {
        "success": False,
        "error": error_message,
    }
    error_data.update({key: value for key, value in details.items() if value is not None})

    if exception is not None:
        error_data["traceback"] = "".join(
            traceback.format_exception(type(exception), exception, exception.__traceback__)
        )

    return error_data


def create_success_response(data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Create standardized success response.

    Args:
        data: Optional additional data to include

    Returns:
        Dict with standardized success format
    """
    response: Dict[str, Any] = {"success": True}
    if data:
        response.update(data)

    return response


def describe_exception(error: BaseException) -> str:
    """
    Extract a meaningful message from an exception, never returning an empty string.
    """
    message = str(error).strip()
    if message:
        return message
    return type(error).__name__
