"""Relative change metrics between two consecutive pressure iterations."""

import typing

import attrs
import numba
import numpy as np

from compflow.types import Vector

__all__ = ["ConvergenceMetrics", "compute_relative_changes"]


@attrs.frozen(slots=True)
class ConvergenceMetrics:
    """Relative changes between two consecutive iterations."""

    flux_change: float
    """Infinity norm of the face and perforation flux change, relative to the largest flux."""
    pressure_change: float
    """Infinity norm of the cell pressure change, relative to the largest cell pressure."""

    def is_converged(self, flux_tolerance: float, pressure_tolerance: float) -> bool:
        """Converged when either relative change is below its tolerance."""
        return (
            self.flux_change < flux_tolerance
            or self.pressure_change < pressure_tolerance
        )


@numba.njit(cache=True)
def _max_abs(values: np.ndarray) -> float:
    result = 0.0
    for i in range(values.shape[0]):
        magnitude = abs(values[i])
        if magnitude > result:
            result = magnitude
    return result


@numba.njit(cache=True)
def _max_abs_change(current: np.ndarray, previous: np.ndarray) -> float:
    result = 0.0
    for i in range(current.shape[0]):
        change = abs(current[i] - previous[i])
        if change > result:
            result = change
    return result


@numba.njit(cache=True)
def _relative(change: float, scale: float) -> float:
    if scale > 0.0:
        return change / scale
    if change == 0.0:
        return 0.0
    return np.inf


@numba.njit(cache=True)
def _compute_relative_changes(
    face_flux: np.ndarray,
    perforation_flux: np.ndarray,
    cell_pressure: np.ndarray,
    start_face_flux: np.ndarray,
    start_perforation_flux: np.ndarray,
    start_cell_pressure: np.ndarray,
) -> typing.Tuple[float, float]:
    max_flux = max(_max_abs(face_flux), _max_abs(perforation_flux))
    max_start_flux = max(_max_abs(start_face_flux), _max_abs(start_perforation_flux))
    flux_scale = max(max_flux, max_start_flux)
    pressure_scale = _max_abs(cell_pressure)

    flux_change = max(
        _max_abs_change(face_flux, start_face_flux),
        _max_abs_change(perforation_flux, start_perforation_flux),
    )
    pressure_change = _max_abs_change(cell_pressure, start_cell_pressure)
    return _relative(flux_change, flux_scale), _relative(pressure_change, pressure_scale)


def compute_relative_changes(
    face_flux: Vector,
    perforation_flux: Vector,
    cell_pressure: Vector,
    start_face_flux: Vector,
    start_perforation_flux: Vector,
    start_cell_pressure: Vector,
) -> ConvergenceMetrics:
    """
    Compute the relative flux and pressure changes over one iteration.

    The flux change is taken over faces and perforations jointly and divided by
    the largest absolute flux of either iteration. The pressure change is
    divided by the largest absolute cell pressure of the current iteration.
    A zero scale gives 0.0 when nothing changed and `inf` otherwise.

    :param face_flux: Face fluxes after the iteration.
    :param perforation_flux: Perforation fluxes after the iteration.
    :param cell_pressure: Cell pressures after the iteration.
    :param start_face_flux: Face fluxes before the iteration.
    :param start_perforation_flux: Perforation fluxes before the iteration.
    :param start_cell_pressure: Cell pressures before the iteration.
    :return: `ConvergenceMetrics` for the iteration.
    """
    flux_change, pressure_change = _compute_relative_changes(
        np.ascontiguousarray(face_flux, dtype=np.float64),
        np.ascontiguousarray(perforation_flux, dtype=np.float64),
        np.ascontiguousarray(cell_pressure, dtype=np.float64),
        np.ascontiguousarray(start_face_flux, dtype=np.float64),
        np.ascontiguousarray(start_perforation_flux, dtype=np.float64),
        np.ascontiguousarray(start_cell_pressure, dtype=np.float64),
    )
    return ConvergenceMetrics(
        flux_change=float(flux_change), pressure_change=float(pressure_change)
    )
