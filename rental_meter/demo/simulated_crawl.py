# rental_meter/demo/simulated_crawl.py

import asyncio
from typing import Dict, List


def start_requests(count: int) -> List[str]:
    return [f"https://example.com/page-{i + 1}" for i in range(count)]


def make_fetcher(latency: float = 1.0):
    """Dummy slow fetch standing in for a real crawler."""
    async def fetch(url: str) -> Dict[str, str]:
        await asyncio.sleep(latency)
        return {"url": url}
    return fetch
