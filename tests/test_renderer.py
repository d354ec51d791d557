import asyncio

import pytest

from qai.agent import renderer


class FakePromptSession:
    raises: type[BaseException] | None = None
    line = ""

    def __init__(self, *args, **kwargs):
        pass

    async def prompt_async(self, message):
        if self.raises is not None:
            raise self.raises()
        return self.line


@pytest.fixture
def fake_prompt(monkeypatch):
    monkeypatch.setattr(renderer, "PromptSession", FakePromptSession)
    monkeypatch.setattr(FakePromptSession, "raises", None)
    return FakePromptSession


def test_input_is_stripped(fake_prompt, monkeypatch):
    monkeypatch.setattr(fake_prompt, "line", "  fix the tests  ")

    assert asyncio.run(renderer.get_input_with_completion(1)) == "fix the tests"


def test_ctrl_c_at_prompt_clears_line(fake_prompt, monkeypatch):
    monkeypatch.setattr(fake_prompt, "raises", KeyboardInterrupt)

    assert asyncio.run(renderer.get_input_with_completion(1)) == ""


def test_ctrl_d_at_prompt_exits(fake_prompt, monkeypatch):
    monkeypatch.setattr(fake_prompt, "raises", EOFError)

    assert asyncio.run(renderer.get_input_with_completion(2)) == "/exit"
