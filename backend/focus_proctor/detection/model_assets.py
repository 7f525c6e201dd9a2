import os
from typing import Union

import httpx


async def load_model_source(location: str) -> Union[str, bytes]:
    """Local path as-is, remote URLs downloaded into memory"""
    if location.startswith(('http://', 'https://')):
        async with httpx.AsyncClient(timeout=60.0, follow_redirects=True) as client:
            response = await client.get(location)
            response.raise_for_status()
            return response.content

    if not os.path.exists(location):
        raise FileNotFoundError(f"Model not found at {location}")
    return location
