from aiohttp import web

from social.graze.notify.atproto.errors import NotifyError, TransientError


def error_status(error: NotifyError) -> int:
    if isinstance(error, TransientError):
        return 503
    return 400


def error_response(error: NotifyError, status: int = 0) -> web.Response:
    """JSON body for a failed request, safe to show to the user."""
    return web.json_response(
        {
            "success": False,
            "error": error.user_message,
            "code": error.code,
            "error_type": type(error).__name__,
        },
        status=status or error_status(error),
    )
