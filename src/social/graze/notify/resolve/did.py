"""DID resolution utilities.

Resolves the subject DID returned by the token endpoint to the account handle and the PDS
endpoint that serves its feeds. Supports the did:plc and did:web methods.
"""

from typing import Any, Optional

from aiohttp import ClientSession, ClientTimeout
from pydantic import BaseModel


class ResolvedSubject(BaseModel):
    """DID, handle and PDS endpoint for a fully resolved subject."""

    did: str
    handle: str
    pds: str


def handle_predicate(value: Any) -> bool:
    """True for `alsoKnownAs` entries of the form `at://handle`."""
    return isinstance(value, str) and value.startswith("at://")


def pds_predicate(value: Any) -> bool:
    """True for the AtprotoPersonalDataServer service entry of a DID document."""
    return (
        isinstance(value, dict)
        and value.get("type", None) == "AtprotoPersonalDataServer"
        and "serviceEndpoint" in value
    )


def subject_from_document(did: str, body: Any) -> Optional[ResolvedSubject]:
    if not isinstance(body, dict):
        return None
    handle = next(filter(handle_predicate, body.get("alsoKnownAs", [])), None)
    pds = next(filter(pds_predicate, body.get("service", [])), None)
    if handle is None or pds is None:
        return None
    return ResolvedSubject(
        did=did,
        handle=handle.removeprefix("at://"),
        pds=str(pds.get("serviceEndpoint")).rstrip("/"),
    )


def did_document_url(plc_hostname: str, did: str) -> Optional[str]:
    """Where the DID document for `did` is published, or None for unsupported methods."""
    if did.startswith("did:plc:"):
        return f"https://{plc_hostname}/{did}"

    if did.startswith("did:web:"):
        parts = did.removeprefix("did:web:").split(":")
        if len(parts) == 1:
            parts.append(".well-known")
        return "https://{inner}/did.json".format(inner="/".join(parts))

    return None


async def resolve_did(
    session: ClientSession, plc_hostname: str, did: str, timeout: float = 10.0
) -> Optional[ResolvedSubject]:
    """Resolve a DID to its handle and PDS.

    Returns None when the method is unsupported, the document is missing or is not JSON,
    or it lacks a handle or PDS. Network errors propagate to the caller.
    """
    url = did_document_url(plc_hostname, did)
    if url is None:
        return None

    async with session.get(url, timeout=ClientTimeout(total=timeout)) as resp:
        if resp.status != 200:
            return None
        try:
            body = await resp.json(content_type=None)
        except ValueError:
            return None

    return subject_from_document(did, body)
