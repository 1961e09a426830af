"""In-memory holder for the cluster password.

The secret lives in a ``bytearray`` so it can be overwritten in place. Callers
never receive it by value: ``with_secret`` lends a read-only ``memoryview`` to a
callback for the duration of that call only.
"""

from __future__ import annotations

from typing import Callable, TypeVar

T = TypeVar("T")


class SecureCredential:
    """Opaque password wrapper, zeroed on ``wipe()``, context exit, or collection."""

    __slots__ = ("_buf", "__weakref__")

    def __init__(self, secret: bytes | bytearray) -> None:
        self._buf = bytearray(secret)

    @classmethod
    def from_string(cls, secret: str) -> SecureCredential:
        return cls(secret.encode("utf-8"))

    def with_secret(self, fn: Callable[[memoryview], T]) -> T:
        """Run *fn* with a borrowed view of the secret and return its result."""
        if self._buf is None:
            raise ValueError("credential has been wiped")
        view = memoryview(self._buf).toreadonly()
        try:
            return fn(view)
        finally:
            view.release()

    def wipe(self) -> None:
        buf = getattr(self, "_buf", None)
        if buf is None:
            return
        for i in range(len(buf)):
            buf[i] = 0
        self._buf = None

    @property
    def is_empty(self) -> bool:
        return not self._buf

    @property
    def is_wiped(self) -> bool:
        return self._buf is None

    def __len__(self) -> int:
        return len(self._buf) if self._buf is not None else 0

    def __enter__(self) -> SecureCredential:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.wipe()

    def __del__(self) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return "SecureCredential([REDACTED])"

    __str__ = __repr__

    def __reduce__(self):
        raise TypeError("SecureCredential cannot be serialized")

    def __copy__(self):
        raise TypeError("SecureCredential cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("SecureCredential cannot be copied")
