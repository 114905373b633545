"""Unit tests for the context-loss retry wrapper"""

import pytest

from context_retry import is_context_loss, with_context_retry


class Flaky:
    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


def test_context_loss_markers():
    assert is_context_loss(RuntimeError("Execution context was destroyed, most likely because of a navigation"))
    assert is_context_loss(Exception("Cannot evaluate: page is navigating"))
    assert not is_context_loss(ValueError("Timeout 10000ms exceeded"))


async def test_succeeds_after_transient_context_loss():
    op = Flaky([RuntimeError("Execution context was destroyed")] * 2)
    assert await with_context_retry(op, max_attempts=3, delay=0) == "ok"
    assert op.calls == 3


async def test_gives_empty_after_attempts_run_out():
    op = Flaky([RuntimeError("page is navigating")] * 5)
    assert await with_context_retry(op, max_attempts=3, delay=0) == []
    assert op.calls == 3


async def test_custom_empty_value():
    op = Flaky([RuntimeError("execution context")] * 2)
    assert await with_context_retry(op, max_attempts=2, delay=0, empty=str) == ""


async def test_other_errors_propagate_immediately():
    op = Flaky([ValueError("selector syntax error")])
    with pytest.raises(ValueError):
        await with_context_retry(op, max_attempts=3, delay=0)
    assert op.calls == 1
