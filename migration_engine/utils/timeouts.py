import contextvars
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable

from migration_engine.core.exceptions import StoreTimeout


def call_with_timeout(seconds: float, what: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
    """
    Run ``fn`` on a thread of its own and wait at most ``seconds`` for its result.

    The wait starts with the call itself, never behind other queued calls, and
    a call that hangs only ties up its own daemon thread.

    Raises:
        StoreTimeout: the call did not finish in time (it may still complete
            in the background)
    """
    future: Future = Future()

    def run() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    context = contextvars.copy_context()
    threading.Thread(
        target=context.run, args=(run,), name=f"{what.lower().replace(' ', '-')}-call", daemon=True
    ).start()
    try:
        return future.result(timeout=seconds)
    except FutureTimeout:
        raise StoreTimeout(f"{what} did not answer within {seconds}s")
