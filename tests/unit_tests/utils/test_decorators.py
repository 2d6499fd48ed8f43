import pytest

from infra_reconciler.utils.decorators import RetriesExhausted, call_with_retry, retry


class Flaky:
    def __init__(self, failures, error=ConnectionError):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return "ok"


def test_call_with_retry_backs_off_exponentially():
    func = Flaky(failures=3)
    sleeps = []

    result = call_with_retry(func, max_attempts=4, delay=1.0, backoff=3.0,
                             exceptions=(ConnectionError,), sleep=sleeps.append)

    assert result == "ok"
    assert func.calls == 4
    assert sleeps == [1.0, 3.0, 9.0]


def test_call_with_retry_wraps_last_error_when_exhausted():
    func = Flaky(failures=5)

    with pytest.raises(RetriesExhausted) as excinfo:
        call_with_retry(func, max_attempts=2, delay=0, exceptions=(ConnectionError,), sleep=lambda _: None)

    assert excinfo.value.attempts == 2
    assert str(excinfo.value.last_error) == "failure 2"


def test_call_with_retry_does_not_catch_other_errors():
    func = Flaky(failures=1, error=KeyError)

    with pytest.raises(KeyError):
        call_with_retry(func, max_attempts=3, delay=0, exceptions=(ConnectionError,), sleep=lambda _: None)
    assert func.calls == 1


def test_retry_decorator_reraises_original_error():
    calls = []

    @retry(max_attempts=2, delay=0, exceptions=(ValueError,))
    def always_fails():
        calls.append(1)
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        always_fails()
    assert len(calls) == 2


def test_retry_decorator_passes_arguments_through():
    @retry(max_attempts=1, delay=0)
    def add(a, b=0):
        return a + b

    assert add(2, b=3) == 5
    assert add.__name__ == "add"
