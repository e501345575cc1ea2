"""
pulsescope - Transform Engine
In-place iterative radix-2 FFT over a caller-owned complex64 buffer.
"""

import math

import numpy as np


def _bit_reverse_table(log2n: int) -> np.ndarray:
    idx = np.arange(1 << log2n, dtype=np.intp)
    rev = np.zeros_like(idx)
    for bit in range(log2n):
        rev |= ((idx >> bit) & 1) << (log2n - 1 - bit)
    return rev


def _stage_twiddles(half: int, forward: bool) -> np.ndarray:
    """Twiddles w[k] = exp(-+2*pi*i*k / (2*half)) for k < half.

    Only the stage root comes from cos/sin; the rest follows the recurrence
    w[k + m] = w[k] * w_len**m, doubling m each pass.
    """
    angle = (-2.0 if forward else 2.0) * math.pi / (2 * half)
    stride = complex(math.cos(angle), math.sin(angle))
    w = np.empty(half, dtype=np.complex128)
    w[0] = 1.0
    filled = 1
    while filled < half:
        w[filled:2 * filled] = w[:filled] * stride
        stride *= stride
        filled *= 2
    return w.astype(np.complex64)


class FftTransform:
    """
    Radix-2 decimation-in-time FFT for one fixed power-of-two size.

    Bit-reversal indices and per-stage twiddle tables are built once at
    construction; transform() then works on the caller's buffer plus a
    private scratch array, so repeated calls do not allocate.
    """
    __slots__ = ('size', 'log2n', '_bitrev', '_forward_twiddles',
                 '_inverse_twiddles', '_scratch', '_inv_scale')

    def __init__(self, size: int = 8192):
        if not isinstance(size, (int, np.integer)) or size < 2 or (size & (size - 1)) != 0:
            raise ValueError(f"FFT size must be a power of two >= 2, got {size!r}")
        self.size = int(size)
        self.log2n = self.size.bit_length() - 1
        self._bitrev = _bit_reverse_table(self.log2n)

        halves = [1 << s for s in range(self.log2n)]
        self._forward_twiddles = [_stage_twiddles(h, True) for h in halves]
        self._inverse_twiddles = [_stage_twiddles(h, False) for h in halves]

        self._scratch = np.empty(self.size, dtype=np.complex64)
        self._inv_scale = np.float32(1.0 / self.size)

    def new_buffer(self) -> np.ndarray:
        """Allocate a zeroed working buffer of the right size and dtype."""
        return np.zeros(self.size, dtype=np.complex64)

    def transform(self, data: np.ndarray, forward: bool = True) -> None:
        """Transform ``data`` in place. Inverse output is scaled by 1/N."""
        if (not isinstance(data, np.ndarray) or data.dtype != np.complex64
                or data.shape != (self.size,) or not data.flags.c_contiguous):
            raise ValueError(
                f"expected a contiguous complex64 array of length {self.size}"
            )

        n = self.size
        scratch = self._scratch

        # Bit-reversal permutation
        np.take(data, self._bitrev, out=scratch)
        data[:] = scratch

        twiddles = self._forward_twiddles if forward else self._inverse_twiddles
        for stage, w in enumerate(twiddles):
            half = 1 << stage
            blocks = data.reshape(n // (2 * half), 2 * half)
            upper = blocks[:, :half]
            lower = blocks[:, half:]
            t = scratch[: n // 2].reshape(n // (2 * half), half)
            np.multiply(lower, w, out=t)
            np.subtract(upper, t, out=lower)
            np.add(upper, t, out=upper)

        if not forward:
            data *= self._inv_scale

    def forward(self, data: np.ndarray) -> None:
        self.transform(data, True)

    def inverse(self, data: np.ndarray) -> None:
        self.transform(data, False)
