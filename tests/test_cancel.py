import asyncio

from qai.agent.cancel import CancelRequest, CancelSignal


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_single_press_only_arms():
    clock = FakeClock()
    signal = CancelSignal(window=1.0, clock=clock)

    assert signal.request() == CancelRequest.NOTICE
    assert not signal.is_set()


def test_second_press_inside_window_confirms():
    clock = FakeClock()
    signal = CancelSignal(window=1.0, clock=clock)

    signal.request()
    clock.now += 0.5

    assert signal.request() == CancelRequest.CONFIRMED
    assert signal.is_set()
    assert signal.request() == CancelRequest.IGNORED


def test_expired_press_rearms():
    clock = FakeClock()
    signal = CancelSignal(window=1.0, clock=clock)

    signal.request()
    clock.now += 2.0
    assert signal.request() == CancelRequest.NOTICE
    assert not signal.is_set()

    clock.now += 0.2
    assert signal.request() == CancelRequest.CONFIRMED


def test_wait_wakes_on_cancel():
    async def _run():
        signal = CancelSignal()
        waiter = asyncio.ensure_future(signal.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        signal.cancel()
        await asyncio.wait_for(waiter, timeout=1)
        return signal.is_set()

    assert asyncio.run(_run()) is True


def test_reset_clears():
    signal = CancelSignal()
    signal.cancel()
    signal.reset()

    assert not signal.is_set()
    assert signal.request() == CancelRequest.NOTICE
