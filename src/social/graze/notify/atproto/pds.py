from typing import Any, Dict, Optional

from aiohttp import ClientSession, ClientTimeout


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str, timeout: float = 10.0
) -> Optional[Dict[str, Any]]:
    """Fetch the OAuth authorization server metadata document.

    Returns None unless the server answers 200 with a JSON object.
    """
    async with session.get(
        f"{authorization_server.rstrip('/')}/.well-known/oauth-authorization-server",
        timeout=ClientTimeout(total=timeout),
    ) as resp:
        if resp.status != 200:
            return None
        try:
            body = await resp.json(content_type=None)
        except ValueError:
            return None
    return body if isinstance(body, dict) else None
