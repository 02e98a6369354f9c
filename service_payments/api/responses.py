"""Response helpers: the JSON envelope and the browser redirect page."""
import html
from typing import Any, Optional

from fastapi import status
from fastapi.responses import HTMLResponse, JSONResponse

from service_payments.core.exceptions import PaymentServiceError


def envelope(content: Any = None, description: str = "") -> dict[str, Any]:
    return {
        "success": True,
        "exception": None,
        "description": description,
        "content": content,
    }


def error_response(exc: PaymentServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def error_envelope(
    status_code: int,
    error_code: str,
    description: str,
    content: Optional[Any] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "exception": error_code,
            "description": description,
            "content": content,
        },
    )


def redirect_page(url: str, status_code: int = status.HTTP_200_OK) -> HTMLResponse:
    """
    Minimal page that sends the browser on to ``url``.

    The gateway posts the callback from the customer's browser, so the
    answer must be a page the browser follows, not JSON. Error pages keep
    the error's status code; the meta refresh still moves the browser on.
    """
    safe_url = html.escape(url, quote=True)
    body = (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "<head>\n"
        '<meta charset="utf-8">\n'
        f'<meta http-equiv="refresh" content="0;url={safe_url}">\n'
        "<title>Redirecting...</title>\n"
        "</head>\n"
        "<body>\n"
        f'<p>Redirecting... If nothing happens, <a href="{safe_url}">continue</a>.</p>\n'
        "</body>\n"
        "</html>\n"
    )
    return HTMLResponse(content=body, status_code=status_code)
