"""Precomputed numeric tables: fast exp(-x) and the error function.

The approximate exponential dominates the innermost loops of the photon
walk and the image integration. Its error bound is a correctness
parameter of the whole engine, so the tables are validated against
``numpy.exp`` when they are built.

Algorithm
---------
Any x > 0 can be written in IEEE-754 binary32 form as

    x = (1 + f) · 2^l,     f = Σ_k b_k 2^-k,  23 mantissa bits

``math.frexp`` returns (m, e) with x = m · 2^e, m ∈ [0.5, 1), so
l = e − 1 and f = 2m − 1. Splitting the 23 bits of f into one 7-bit
byte (j0) and two 8-bit bytes (j1, j2) gives

    exp(−x) ≈ T2[j0, l] · T3[j1, 0, l] · T3[j2, 1, l]

    T2[j0, l]    = exp(−2^l (1 + j0 / 2^7))
    T3[j1, 0, l] = exp(−2^l j1 / 2^15)
    T3[j2, 1, l] = exp(−2^l j2 / 2^23)

The decomposition is done arithmetically rather than by reinterpreting
memory, so results do not depend on the host byte order. Bits below the
23rd are truncated; the resulting relative error is bounded by
1 − exp(−2^(l_max) · 2^−23) ≈ 1.9e-6 on the covered range [2^−5, 2^5).

Below 2^lowest a truncated Taylor series is used (error ~ x^4/24 for
third order), and beyond the covered range the result is 0.

References
----------
- Brinch, C. & Hogerheijde, M. R. (2010). "LIME - a flexible, non-LTE
  line excitation and radiation transfer method for millimeter and
  far-infrared wavelengths." A&A 523, A25.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
from numba import njit
from scipy.special import erf

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_MANTISSA_BITS: int = 23
_FLOAT32_EPS: float = 2.0 ** -_MANTISSA_BITS
_J0_BITS: int = 7
_BYTE_BITS: int = 8
_VALIDATION_SAMPLES: int = 200_001


# ---------------------------------------------------------------------------
# Table container
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LookupTables:
    """Immutable numeric tables shared by the transport and image kernels.

    Attributes
    ----------
    exp_table_2d : np.ndarray
        First-byte table. Shape: (128, num_exponents).
    exp_table_3d : np.ndarray
        Second/third-byte tables. Shape: (256, 2, num_exponents).
    lowest_exponent : int
        Smallest binary exponent resolved by the tables.
    num_exponents : int
        Number of binary exponents covered.
    max_taylor : int
        Taylor order used for x < 2^lowest_exponent.
    error_bound : float
        Validated relative error bound of :func:`fast_exp`.
    erf_table : np.ndarray
        erf(x) sampled on [0, erf_limit].
    erf_inv_step : float
        Table points per unit argument.
    erf_limit : float
        erf(x) is treated as 1 for x ≥ erf_limit.
    """

    exp_table_2d: np.ndarray
    exp_table_3d: np.ndarray
    lowest_exponent: int
    num_exponents: int
    max_taylor: int
    error_bound: float
    erf_table: np.ndarray
    erf_inv_step: float
    erf_limit: float

    @property
    def fast_exp_domain(self) -> float:
        """Upper end of the table range, 2^(lowest + num_exponents)."""
        return 2.0 ** (self.lowest_exponent + self.num_exponents)

    def fast_exp(self, x: float) -> float:
        """Scalar convenience wrapper around :func:`fast_exp`."""
        return fast_exp(
            float(x),
            self.exp_table_2d,
            self.exp_table_3d,
            self.lowest_exponent,
            self.num_exponents,
            self.max_taylor,
        )

    def fast_exp_array(self, x: np.ndarray) -> np.ndarray:
        """Elementwise :func:`fast_exp` over an array of any shape."""
        flat = np.ascontiguousarray(x, dtype=np.float64).ravel()
        out = _fast_exp_many(
            flat,
            self.exp_table_2d,
            self.exp_table_3d,
            self.lowest_exponent,
            self.num_exponents,
            self.max_taylor,
        )
        return out.reshape(np.shape(x))

    def erf(self, x: float) -> float:
        return erf_lookup(float(x), self.erf_table, self.erf_inv_step, self.erf_limit)


# ---------------------------------------------------------------------------
# Range derivation and table construction
# ---------------------------------------------------------------------------


def calc_fast_exp_range(max_taylor: int, num_bits: int = _BYTE_BITS) -> tuple[int, int]:
    """Derive the binary-exponent range covered by the exp tables.

    The lowest exponent is the largest l for which the Taylor remainder
    (2^l)^(n+1) / (n+1)! stays below float32 epsilon. The top exponent is
    the first one at which exp(−2^top) underflows the square of that
    epsilon, so returning 0 beyond it is harmless.

    Parameters
    ----------
    max_taylor : int
        Order n of the Taylor series.
    num_bits : int
        Bits resolved per table byte (8 for the binary32 layout).

    Returns
    -------
    lowest_exponent : int
        −5 for third order.
    num_exponents : int
        10 for third order, giving the domain [0, 32).
    """
    if num_bits != _BYTE_BITS:
        raise ValueError(
            f"Only {_BYTE_BITS}-bit mantissa bytes are supported, got {num_bits}"
        )

    factorial = math.factorial(max_taylor + 1)
    lowest = 0
    while (2.0 ** lowest) ** (max_taylor + 1) / factorial >= _FLOAT32_EPS:
        lowest -= 1

    top = lowest + 1
    while math.exp(-(2.0 ** top)) >= _FLOAT32_EPS ** 2:
        top += 1

    return lowest, top - lowest


def build_lookup_tables(
    max_taylor: int = 3,
    num_bits: int = _BYTE_BITS,
    error_bound: float = 4.0e-6,
    erf_limit: float = 6.0,
    erf_points_per_unit: int = 1024,
) -> LookupTables:
    """Build and validate the fast-exp and erf tables.

    Parameters
    ----------
    max_taylor : int
        Taylor order for small arguments.
    num_bits : int
        Mantissa bits per table byte.
    error_bound : float
        Documented relative error bound of the fast exponential.
    erf_limit : float
        Upper argument of the erf table.
    erf_points_per_unit : int
        erf table resolution.

    Returns
    -------
    LookupTables

    Raises
    ------
    ValueError
        If the measured fast-exp error exceeds ``error_bound``.
    """
    lowest, num_exp = calc_fast_exp_range(max_taylor, num_bits)

    scales = 2.0 ** (lowest + np.arange(num_exp, dtype=np.float64))  # 2^l

    j0 = np.arange(1 << _J0_BITS, dtype=np.float64)
    exp_2d = np.exp(-np.outer(1.0 + j0 / float(1 << _J0_BITS), scales))

    jb = np.arange(1 << _BYTE_BITS, dtype=np.float64)
    exp_3d = np.empty((1 << _BYTE_BITS, 2, num_exp), dtype=np.float64)
    exp_3d[:, 0, :] = np.exp(-np.outer(jb / 2.0 ** (_J0_BITS + _BYTE_BITS), scales))
    exp_3d[:, 1, :] = np.exp(-np.outer(jb / 2.0 ** _MANTISSA_BITS, scales))

    n_erf = int(round(erf_limit * erf_points_per_unit)) + 1
    erf_table = erf(np.arange(n_erf, dtype=np.float64) / erf_points_per_unit)

    for arr in (exp_2d, exp_3d, erf_table):
        arr.setflags(write=False)

    tables = LookupTables(
        exp_table_2d=exp_2d,
        exp_table_3d=exp_3d,
        lowest_exponent=lowest,
        num_exponents=num_exp,
        max_taylor=max_taylor,
        error_bound=error_bound,
        erf_table=erf_table,
        erf_inv_step=float(erf_points_per_unit),
        erf_limit=float(erf_limit),
    )

    max_err = measure_fast_exp_error(tables)
    if max_err >= error_bound:
        raise ValueError(
            f"fast_exp relative error {max_err:.3e} exceeds the documented "
            f"bound {error_bound:.3e}"
        )

    logger.info(
        "Lookup tables built: exp range [2^%d, 2^%d), max rel. error %.2e "
        "(bound %.1e), erf table %d entries",
        lowest,
        lowest + num_exp,
        max_err,
        error_bound,
        n_erf,
    )
    return tables


def measure_fast_exp_error(tables: LookupTables) -> float:
    """Maximum relative error of the fast exponential on its domain.

    Samples a uniform grid over [0, domain) and a logarithmic grid
    covering the Taylor branch.
    """
    domain = tables.fast_exp_domain
    x_lin = np.linspace(0.0, domain, _VALIDATION_SAMPLES, endpoint=False)
    x_log = np.geomspace(1e-10, domain * (1.0 - 1e-12), _VALIDATION_SAMPLES // 4)
    x = np.concatenate([x_lin, x_log])

    exact = np.exp(-x)
    approx = tables.fast_exp_array(x)
    return float(np.max(np.abs(approx - exact) / exact))


# ===================================================================
# NUMBA KERNELS
# ===================================================================


@njit(cache=True, fastmath=False, nogil=True)
def fast_exp(
    negarg: float,
    exp_2d: np.ndarray,
    exp_3d: np.ndarray,
    lowest_exponent: int,
    num_exponents: int,
    max_taylor: int,
) -> float:
    """Approximate exp(−negarg).

    Parameters
    ----------
    negarg : float
        Argument x of exp(−x).
    exp_2d, exp_3d : np.ndarray
        Tables from :func:`build_lookup_tables`.
    lowest_exponent, num_exponents : int
        Range from :func:`calc_fast_exp_range`.
    max_taylor : int
        Taylor order below the table range.

    Returns
    -------
    float
        exp(−x) within the validated bound for 0 ≤ x < 2^(lowest+num);
        exact for x < 0; exactly 1 for x == 0; 0 beyond the range.
    """
    if negarg < 0.0:
        return math.exp(-negarg)
    if negarg == 0.0:
        return 1.0

    m, e = math.frexp(negarg)
    exponent = e - 1

    if exponent < lowest_exponent:
        result = 1.0
        for i in range(max_taylor, 0, -1):
            result = 1.0 - negarg * result / i
        return result

    li = exponent - lowest_exponent
    if li >= num_exponents:
        return 0.0

    bits = int((2.0 * m - 1.0) * 8388608.0)  # 2^23
    j0 = bits >> 16
    j1 = (bits >> 8) & 0xFF
    j2 = bits & 0xFF

    return exp_2d[j0, li] * exp_3d[j1, 0, li] * exp_3d[j2, 1, li]


@njit(cache=True, fastmath=False, nogil=True)
def _fast_exp_many(
    x: np.ndarray,
    exp_2d: np.ndarray,
    exp_3d: np.ndarray,
    lowest_exponent: int,
    num_exponents: int,
    max_taylor: int,
) -> np.ndarray:
    out = np.empty(x.shape[0], dtype=np.float64)
    for i in range(x.shape[0]):
        out[i] = fast_exp(x[i], exp_2d, exp_3d, lowest_exponent, num_exponents, max_taylor)
    return out


@njit(cache=True, fastmath=False, nogil=True)
def erf_lookup(x: float, erf_table: np.ndarray, inv_step: float, limit: float) -> float:
    """erf(x) by linear interpolation in the precomputed table."""
    sign = 1.0
    if x < 0.0:
        sign = -1.0
        x = -x
    if x >= limit:
        return sign
    pos = x * inv_step
    i = int(pos)
    if i >= erf_table.shape[0] - 1:
        return sign * erf_table[erf_table.shape[0] - 1]
    frac = pos - i
    return sign * (erf_table[i] + frac * (erf_table[i + 1] - erf_table[i]))


@njit(cache=True, fastmath=False, nogil=True)
def gaussian_profile_average(
    x_a: float,
    x_b: float,
    erf_table: np.ndarray,
    inv_step: float,
    limit: float,
) -> float:
    """Mean of exp(−t²) over t ∈ [x_b, x_a].

    Used as the velocity-overlap factor when the projected velocity varies
    linearly along a path element; x is velocity offset in line widths.

    Returns ``(√π/2)·(erf(x_a) − erf(x_b)) / (x_a − x_b)``, or the profile
    at the midpoint when the interval is too short for the difference
    quotient to be accurate.
    """
    dx = x_a - x_b
    if abs(dx) < 1e-3:
        mid = 0.5 * (x_a + x_b)
        return math.exp(-mid * mid)
    val = 0.5 * math.sqrt(math.pi) * (
        erf_lookup(x_a, erf_table, inv_step, limit)
        - erf_lookup(x_b, erf_table, inv_step, limit)
    ) / dx
    if val < 0.0:
        return 0.0
    return val
