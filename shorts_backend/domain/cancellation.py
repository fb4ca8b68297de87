import asyncio


class CancellationToken:
    """
    One-shot cancellation signal shared between a coordinator and the
    operation it launched. Cancelling twice is harmless.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
