"""
Result validation.

Relative error test of the CUDA matrixMul sample:

    |<x, y>_ref - <x, y>_dev| / |<x, y>_dev| / dot_length  <  eps

Every element is checked (no early exit); each element over the tolerance is
collected as a CorrectnessViolation, and the overall check passes only if
there are none.
"""

from dataclasses import dataclass, field
from typing import Any

import numpy as np


@dataclass(frozen=True)
class CorrectnessViolation:
    """One output element outside the tolerance."""

    index: int
    computed: float
    expected: float
    rel_err: float
    epsilon: float

    def __str__(self) -> str:
        return (
            f"Error! Matrix[{self.index:05d}]={self.computed:.8f}, "
            f"ref={self.expected:.8f} error term is > {self.epsilon:E}"
        )


@dataclass
class ValidationReport:
    """Outcome of a full scan."""

    checked: int
    epsilon: float
    violations: list[CorrectnessViolation] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """True if no element violated the tolerance."""
        return not self.violations

    def __str__(self) -> str:
        return "Result = PASS" if self.passed else "Result = FAIL"

    def get_statistics(self) -> dict[str, Any]:
        """Summary counts."""
        return {
            "checked": self.checked,
            "violations": len(self.violations),
            "passed": self.passed,
        }


def validate(
    values: np.ndarray,
    expected: float | np.ndarray,
    dot_length: int,
    epsilon: float = 1e-6,
) -> ValidationReport:
    """
    Check computed values against an expected value.

    Args:
        values: Computed result (any shape; scanned in row-major order)
        expected: Scalar expected for every element, or an array of the
            same shape
        dot_length: Length of each dot product (A.width)
        epsilon: Relative error tolerance

    Returns:
        ValidationReport listing every violating element
    """
    computed = np.asarray(values, dtype=np.float64).reshape(-1)
    reference = np.broadcast_to(np.asarray(expected, dtype=np.float64), np.shape(values))
    reference = reference.reshape(-1)

    with np.errstate(divide="ignore", invalid="ignore"):
        rel_err = np.abs(computed - reference) / np.abs(computed) / dot_length

    # NaN (0/0) compares false, as in the reference check
    bad = np.flatnonzero(rel_err > epsilon)
    violations = [
        CorrectnessViolation(
            index=int(i),
            computed=float(computed[i]),
            expected=float(reference[i]),
            rel_err=float(rel_err[i]),
            epsilon=epsilon,
        )
        for i in bad
    ]
    return ValidationReport(checked=computed.size, epsilon=epsilon, violations=violations)
