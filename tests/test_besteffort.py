import asyncio

import pytest

from creditmeter.besteffort import Completed, Failed, best_effort


async def _value() -> "int":
    return 42


async def _boom() -> "int":
    raise RuntimeError("boom")


class TestBestEffort:
    @pytest.mark.asyncio
    async def test_returns_completed(self) -> "None":
        result = await best_effort(_value(), "side_effect_failed")
        assert result == Completed(42)

    @pytest.mark.asyncio
    async def test_returns_failed_instead_of_raising(self) -> "None":
        result = await best_effort(_boom(), "side_effect_failed", workspace_id="ws-1")

        assert isinstance(result, Failed)
        assert isinstance(result.error, RuntimeError)
        assert str(result.error) == "boom"

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self) -> "None":
        async def _sleep() -> "None":
            await asyncio.sleep(10)

        task = asyncio.ensure_future(best_effort(_sleep(), "side_effect_failed"))
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
