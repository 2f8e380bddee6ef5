"""JIT option table for module loading and linking.

The CUDA driver takes JIT options as three parallel arguments:
``unsigned int numOptions, CUjit_option *options, void **optionValues``.
OptionTable maps option identifiers to typed values and keeps them in
insertion order so they can be marshaled into that form (``marshal``) or
into the ``[(jit_option, value), ...]`` list PyCUDA expects
(``as_pycuda_options``).

Reads are deliberately lenient: asking for the wrong type returns that
type's zero value instead of raising. Use ``key in table`` or ``kind(key)``
when a caller needs to tell "unset" from "zero".
"""

from __future__ import annotations

import ctypes
import struct
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np

_INT32_MIN = -(2**31)
_UINT32_MAX = 2**32 - 1


class OptionKind(Enum):
    """Type tag of a stored option value."""

    NONE = "none"
    INT = "int"
    FLOAT = "float"
    BYTES = "bytes"


class JitOption(IntEnum):
    """CUjit_option identifiers understood by cuModuleLoadDataEx / cuLinkCreate."""

    MAX_REGISTERS = 0
    THREADS_PER_BLOCK = 1
    WALL_TIME = 2
    INFO_LOG_BUFFER = 3
    INFO_LOG_BUFFER_SIZE_BYTES = 4
    ERROR_LOG_BUFFER = 5
    ERROR_LOG_BUFFER_SIZE_BYTES = 6
    OPTIMIZATION_LEVEL = 7
    TARGET_FROM_CUCONTEXT = 8
    TARGET = 9
    FALLBACK_STRATEGY = 10
    GENERATE_DEBUG_INFO = 11
    LOG_VERBOSE = 12
    GENERATE_LINE_INFO = 13
    CACHE_MODE = 14

    @property
    def value_kind(self) -> OptionKind:
        return _EXPECTED_KIND[self]


_EXPECTED_KIND: Dict[JitOption, OptionKind] = {
    JitOption.MAX_REGISTERS: OptionKind.INT,
    JitOption.THREADS_PER_BLOCK: OptionKind.INT,
    JitOption.WALL_TIME: OptionKind.FLOAT,
    JitOption.INFO_LOG_BUFFER: OptionKind.BYTES,
    JitOption.INFO_LOG_BUFFER_SIZE_BYTES: OptionKind.INT,
    JitOption.ERROR_LOG_BUFFER: OptionKind.BYTES,
    JitOption.ERROR_LOG_BUFFER_SIZE_BYTES: OptionKind.INT,
    JitOption.OPTIMIZATION_LEVEL: OptionKind.INT,
    JitOption.TARGET_FROM_CUCONTEXT: OptionKind.NONE,
    JitOption.TARGET: OptionKind.INT,
    JitOption.FALLBACK_STRATEGY: OptionKind.INT,
    JitOption.GENERATE_DEBUG_INFO: OptionKind.INT,
    JitOption.LOG_VERBOSE: OptionKind.INT,
    JitOption.GENERATE_LINE_INFO: OptionKind.INT,
    JitOption.CACHE_MODE: OptionKind.INT,
}


@dataclass(frozen=True)
class OptionEntry:
    kind: OptionKind
    value: Union[None, int, float, bytes] = None


def option_name(key: int) -> str:
    try:
        return JitOption(key).name
    except ValueError:
        return str(key)


def decode_c_string(data: bytes) -> str:
    """Decode ``data`` up to (not including) the first zero byte."""
    end = data.find(b"\x00")
    if end != -1:
        data = data[:end]
    return data.decode("latin-1")


@dataclass
class MarshaledOptions:
    """Parallel ctypes arrays ready for a ``(count, keys[], values[])`` call.

    ``buffers`` keeps byte values alive for as long as this object is
    referenced; the pointers in ``values`` point into them.
    """

    count: int
    keys: Any
    values: Any
    buffers: List[Any]


class OptionTable:
    def __init__(self) -> None:
        self._entries: Dict[int, OptionEntry] = {}

    # writers

    def _store(self, key: int, entry: OptionEntry) -> None:
        # dict assignment keeps the original position of an existing key
        self._entries[int(key)] = entry

    def put(self, key: int) -> None:
        """Request ``key`` without a value."""
        self._store(key, OptionEntry(OptionKind.NONE))

    def put_int(self, key: int, value: int) -> None:
        v = int(value)
        if not _INT32_MIN <= v <= _UINT32_MAX:
            raise ValueError(f"{option_name(key)}: {value} does not fit in 32 bits")
        self._store(key, OptionEntry(OptionKind.INT, v))

    def put_float(self, key: int, value: float) -> None:
        self._store(key, OptionEntry(OptionKind.FLOAT, float(np.float32(value))))

    def put_bytes(self, key: int, value: bytes) -> None:
        self._store(key, OptionEntry(OptionKind.BYTES, bytes(value)))

    def remove(self, key: int) -> None:
        self._entries.pop(int(key), None)

    # readers

    def kind(self, key: int) -> Optional[OptionKind]:
        entry = self._entries.get(int(key))
        return entry.kind if entry is not None else None

    def get_int(self, key: int) -> int:
        entry = self._entries.get(int(key))
        if entry is None or entry.kind is not OptionKind.INT:
            return 0
        return entry.value

    def get_float(self, key: int) -> float:
        entry = self._entries.get(int(key))
        if entry is None or entry.kind is not OptionKind.FLOAT:
            return 0.0
        return entry.value

    def get_bytes(self, key: int) -> Optional[bytes]:
        entry = self._entries.get(int(key))
        if entry is None or entry.kind is not OptionKind.BYTES:
            return None
        return entry.value

    def get_string(self, key: int) -> Optional[str]:
        data = self.get_bytes(key)
        if data is None:
            return None
        return decode_c_string(data)

    def keys(self) -> Tuple[int, ...]:
        return tuple(self._entries)

    def __contains__(self, key: object) -> bool:
        try:
            return int(key) in self._entries  # type: ignore[call-overload]
        except (TypeError, ValueError):
            return False

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[int]:
        return iter(self.keys())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OptionTable):
            return NotImplemented
        return list(self._entries.items()) == list(other._entries.items())

    def fingerprint(self) -> Tuple[Tuple[int, str, Any], ...]:
        """Hashable snapshot of the entries, in order; equal tables give equal fingerprints."""
        return tuple((k, e.kind.value, e.value) for k, e in self._entries.items())

    # marshaling

    def marshal(self) -> MarshaledOptions:
        """Build the ``(count, keys[], values[])`` triple in ``keys()`` order.

        Integers travel in the pointer slot itself, floats as their float32
        bit pattern, byte values as a pointer to a NUL-terminated copy.
        """
        keys = self.keys()
        n = len(keys)
        key_arr = (ctypes.c_int * n)(*keys)
        val_arr = (ctypes.c_void_p * n)()
        buffers: List[Any] = []
        for i, key in enumerate(keys):
            entry = self._entries[key]
            if entry.kind is OptionKind.INT:
                val_arr[i] = entry.value & 0xFFFFFFFF
            elif entry.kind is OptionKind.FLOAT:
                (bits,) = struct.unpack("<I", struct.pack("<f", entry.value))
                val_arr[i] = bits
            elif entry.kind is OptionKind.BYTES:
                buf = ctypes.create_string_buffer(entry.value, len(entry.value) + 1)
                buffers.append(buf)
                val_arr[i] = ctypes.addressof(buf)
            else:
                val_arr[i] = None
        return MarshaledOptions(count=n, keys=key_arr, values=val_arr, buffers=buffers)

    def as_pycuda_options(self) -> List[Tuple[Any, Any]]:
        """Return ``[(pycuda.driver.jit_option, value), ...]`` in ``keys()`` order.

        PyCUDA allocates the info/error log buffers itself, so byte-valued
        entries are not forwarded. Unvalued options are passed as 0.
        """
        import pycuda.driver as cuda  # noqa: PLC0415

        out: List[Tuple[Any, Any]] = []
        for key in self.keys():
            entry = self._entries[key]
            if entry.kind is OptionKind.BYTES:
                continue
            try:
                opt = getattr(cuda.jit_option, JitOption(key).name)
            except (ValueError, AttributeError):
                raise ValueError(f"JIT option {key} is not supported by pycuda") from None
            out.append((opt, 0 if entry.kind is OptionKind.NONE else entry.value))
        return out

    # rendering

    def _render(self, sep: str) -> str:
        parts = []
        for key, entry in self._entries.items():
            if entry.kind is OptionKind.BYTES:
                value = decode_c_string(entry.value)
            else:
                value = str(entry.value)
            parts.append(f"{option_name(key)}={value}")
        return sep.join(parts)

    def __str__(self) -> str:
        return f"{type(self).__name__}[{self._render(',')}]"

    def __repr__(self) -> str:
        return str(self)

    def to_formatted_string(self) -> str:
        """Aligned, multi-line rendering."""
        return f"{type(self).__name__}:\n    {self._render(chr(10) + '    ')}"


__all__ = [
    "OptionKind",
    "JitOption",
    "OptionEntry",
    "OptionTable",
    "MarshaledOptions",
    "decode_c_string",
    "option_name",
]
