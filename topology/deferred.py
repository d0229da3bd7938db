"""Single-assignment deferred values and their combinators.

A `Deferred` stands for a value that is not known until an asynchronous
create-operation completes: a database endpoint, a generated ARN, private key
material. It is settled exactly once, either with a value or with an error.

Continuations are attached with `add_callbacks`, `map`, `bind` or
`map_failure`. Each continuation runs exactly once: immediately and
synchronously when the deferred is already settled, otherwise at settlement
time in the order it was attached. `all_of` fans several deferred values in
to one tuple and fails with the first failure among its inputs.

Example:
    >>> endpoint, resolve_endpoint = new_deferred("endpoint")
    >>> topic, resolve_topic = new_deferred("topic")
    >>> joined = all_of(endpoint, topic).map(lambda pair: " ".join(pair))
    >>> resolve_topic("arn:example:topic:1")
    >>> joined.is_pending
    True
    >>> resolve_endpoint("db.internal:3306")
    >>> joined.result()
    'db.internal:3306 arn:example:topic:1'
"""

from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from topology.errors import AlreadyResolved, DeferredNotSettled

__all__ = ["Deferred", "Resolver", "all_of", "new_deferred"]

T = TypeVar("T")
U = TypeVar("U")

OnValue = Callable[[Any], None]
OnFailure = Callable[[Exception], None]


class _State(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


class Deferred(Generic[T]):
    """A value produced later by an external operation."""

    __slots__ = ("label", "_state", "_value", "_error", "_callbacks")

    def __init__(self, label: Optional[str] = None) -> None:
        self.label = label
        self._state = _State.PENDING
        self._value: Optional[T] = None
        self._error: Optional[Exception] = None
        self._callbacks: list[tuple[OnValue, Optional[OnFailure]]] = []

    @classmethod
    def resolved(cls, value: T, label: Optional[str] = None) -> "Deferred[T]":
        deferred: Deferred[T] = cls(label)
        deferred._settle(_State.RESOLVED, value)
        return deferred

    @classmethod
    def failed(cls, error: Exception, label: Optional[str] = None) -> "Deferred[Any]":
        deferred: Deferred[Any] = cls(label)
        deferred._settle(_State.FAILED, error)
        return deferred

    def __repr__(self) -> str:
        name = f" {self.label}" if self.label else ""
        if self._state is _State.RESOLVED:
            return f"<Deferred{name} resolved={self._value!r}>"
        if self._state is _State.FAILED:
            return f"<Deferred{name} failed={self._error!r}>"
        return f"<Deferred{name} pending>"

    # ---------- state ----------
    @property
    def is_pending(self) -> bool:
        return self._state is _State.PENDING

    @property
    def is_resolved(self) -> bool:
        return self._state is _State.RESOLVED

    @property
    def is_failed(self) -> bool:
        return self._state is _State.FAILED

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    def result(self) -> T:
        """Return the resolved value.

        Raises:
            DeferredNotSettled: If the value is still pending.
            Exception: The failure, if the deferred failed.
        """
        if self._state is _State.RESOLVED:
            return self._value  # type: ignore[return-value]
        if self._state is _State.FAILED:
            raise self._error  # type: ignore[misc]
        raise DeferredNotSettled(f"{self!r} has not settled")

    # ---------- continuations ----------
    def add_callbacks(
        self, on_value: OnValue, on_failure: Optional[OnFailure] = None
    ) -> None:
        """Attach a continuation pair. Exactly one of them runs, exactly once."""
        if self._state is _State.PENDING:
            self._callbacks.append((on_value, on_failure))
        else:
            self._run(on_value, on_failure)

    def map(
        self, fn: Callable[[T], U], label: Optional[str] = None
    ) -> "Deferred[U]":
        """Deferred of ``fn(value)``. An exception raised by ``fn`` fails it."""
        out, resolver = new_deferred(label or self.label)

        def on_value(value: T) -> None:
            try:
                mapped = fn(value)
            except AlreadyResolved:
                raise
            except Exception as e:
                resolver.fail(e)
                return
            resolver.resolve(mapped)

        self.add_callbacks(on_value, resolver.fail)
        return out

    def bind(
        self,
        fn: Callable[[T], Union["Deferred[U]", U]],
        label: Optional[str] = None,
    ) -> "Deferred[U]":
        """Chain a continuation that itself produces a deferred value."""
        out, resolver = new_deferred(label or self.label)

        def on_value(value: T) -> None:
            try:
                inner = fn(value)
            except AlreadyResolved:
                raise
            except Exception as e:
                resolver.fail(e)
                return
            if isinstance(inner, Deferred):
                inner.add_callbacks(resolver.resolve, resolver.fail)
            else:
                resolver.resolve(inner)

        self.add_callbacks(on_value, resolver.fail)
        return out

    def map_failure(
        self, fn: Callable[[Exception], Exception], label: Optional[str] = None
    ) -> "Deferred[T]":
        """Deferred with the same value, or with ``fn(error)`` on failure."""
        out, resolver = new_deferred(label or self.label)
        self.add_callbacks(resolver.resolve, lambda error: resolver.fail(fn(error)))
        return out

    # ---------- settlement ----------
    def _settle(self, state: _State, payload: Any) -> None:
        if self._state is not _State.PENDING:
            raise AlreadyResolved(f"{self!r} cannot be settled twice")
        if state is _State.RESOLVED:
            self._value = payload
        else:
            self._error = payload
        self._state = state
        callbacks, self._callbacks = self._callbacks, []
        for on_value, on_failure in callbacks:
            self._run(on_value, on_failure)

    def _run(self, on_value: OnValue, on_failure: Optional[OnFailure]) -> None:
        if self._state is _State.RESOLVED:
            on_value(self._value)
        elif on_failure is not None:
            on_failure(self._error)  # type: ignore[arg-type]


class Resolver(Generic[T]):
    """One-shot settler of a `Deferred`. Calling it resolves the value."""

    __slots__ = ("_deferred",)

    def __init__(self, deferred: Deferred[T]) -> None:
        self._deferred = deferred

    def __call__(self, value: T) -> None:
        self.resolve(value)

    def resolve(self, value: T) -> None:
        self._deferred._settle(_State.RESOLVED, value)

    def fail(self, error: Exception) -> None:
        if not isinstance(error, Exception):
            raise TypeError(f"Deferred failures must be exceptions, got {error!r}")
        self._deferred._settle(_State.FAILED, error)


def new_deferred(label: Optional[str] = None) -> tuple[Deferred[Any], Resolver[Any]]:
    """Create a pending deferred value and its resolver."""
    deferred: Deferred[Any] = Deferred(label)
    return deferred, Resolver(deferred)


def all_of(*deferreds: Any, label: Optional[str] = None) -> Deferred[tuple]:
    """Combine deferred values into a deferred tuple, in input order.

    Plain values are accepted and treated as already resolved. The result
    fails as soon as any input fails; values arriving afterwards are ignored.
    """
    out, resolver = new_deferred(label)
    if not deferreds:
        resolver.resolve(())
        return out

    values: list[Any] = [None] * len(deferreds)
    remaining = [len(deferreds)]

    def on_failure(error: Exception) -> None:
        if out.is_pending:
            resolver.fail(error)

    def collect(index: int) -> OnValue:
        def on_value(value: Any) -> None:
            if not out.is_pending:
                return
            values[index] = value
            remaining[0] -= 1
            if remaining[0] == 0:
                resolver.resolve(tuple(values))

        return on_value

    for index, deferred in enumerate(deferreds):
        if not isinstance(deferred, Deferred):
            deferred = Deferred.resolved(deferred)
        deferred.add_callbacks(collect(index), on_failure)
    return out
