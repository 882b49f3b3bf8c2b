import asyncio
import logging
from pathlib import Path
from typing import Optional

import aiohttp

from .actions import ActionOutcome, RetryingAction

logger = logging.getLogger(__name__)


class FetchAction:
    """Fetch a URL into a file in a single attempt."""

    def __init__(self, url: str, target: Path, timeout: Optional[float] = 60.0) -> None:
        self.url = url
        self.target = Path(target)
        self.timeout = timeout

    def describe(self) -> str:
        return f"GET {self.url} -> {self.target}"

    async def __call__(self) -> ActionOutcome:
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(self.url) as response:
                    response.raise_for_status()
                    self.target.parent.mkdir(parents=True, exist_ok=True)
                    size = 0
                    with open(self.target, "wb") as handle:
                        async for chunk in response.content.iter_chunked(64 * 1024):
                            handle.write(chunk)
                            size += len(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            self.target.unlink(missing_ok=True)
            logger.warning("Download failed", extra={"url": self.url, "error": str(e)})
            return ActionOutcome(1, f"Download of {self.url} failed: {str(e) or type(e).__name__}")

        return ActionOutcome(0, f"Downloaded {size} bytes to {self.target}")


class DownloadAction(RetryingAction):
    """Download with a bounded number of attempts and a fixed delay between them."""

    def __init__(
        self,
        url: str,
        target: Path,
        attempts: int = 5,
        delay: float = 3.0,
        timeout: Optional[float] = 60.0,
    ) -> None:
        super().__init__(FetchAction(url, target, timeout=timeout), attempts=attempts, delay=delay)
        self.url = url
        self.target = Path(target)
