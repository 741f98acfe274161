"""Client for a deployed aggregation endpoint."""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp


logger = logging.getLogger(__name__)


class TriggerError(Exception):
    """Raised when the remote aggregation run cannot be completed."""
    pass


async def trigger_remote(
    url: str,
    school_id: Optional[str] = None,
    token: Optional[str] = None,
    timeout: float = 120.0,
    session: Optional[aiohttp.ClientSession] = None,
) -> Dict[str, Any]:
    """
    POST to the aggregation endpoint and return its JSON body.

    Raises:
        TriggerError: on transport errors, timeouts or a non-200 answer
    """
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    payload = {"school_id": school_id} if school_id else {}

    owns_session = session is None
    if session is None:
        session = aiohttp.ClientSession()

    try:
        async with session.post(
            url,
            json=payload,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = {"error": await response.text()}

            if response.status != 200:
                message = body.get("error") if isinstance(body, dict) else None
                raise TriggerError(f"Aggregation endpoint returned {response.status}: {message or 'no details'}")

            if not isinstance(body, dict):
                raise TriggerError(f"Aggregation endpoint returned an unexpected body: {body!r}")

            logger.info(f"Remote aggregation finished: {body.get('message')}")
            return body
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TriggerError(f"Could not reach aggregation endpoint: {e}") from e
    finally:
        if owns_session:
            await session.close()
