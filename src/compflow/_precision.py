from contextlib import contextmanager
from contextvars import ContextVar

import numpy as np


__all__ = ["get_dtype", "with_precision", "get_floating_point_info"]

_compflow_dtype: ContextVar[np.typing.DTypeLike] = ContextVar(
    "_compflow_dtype", default=np.float64
)


def get_dtype() -> np.typing.DTypeLike:
    """
    Get the data type used for the work arrays of the pressure iteration.

    Defaults to float64. Relative change and volume discrepancy tests are
    sensitive to round-off, so lower precision is opt-in via `with_precision`.

    :return: The current data type.
    """
    return _compflow_dtype.get()


@contextmanager
def with_precision(dtype: np.typing.DTypeLike):
    """
    Context manager to temporarily set the data type, and hence the precision, of the work arrays.

    :param dtype: The data type to set within the context.
    """
    token = _compflow_dtype.set(dtype)
    try:
        yield
    finally:
        _compflow_dtype.reset(token)


def get_floating_point_info() -> np.finfo:
    """
    Get the floating point information for the current data type.

    :return: The floating point information.
    """
    return np.finfo(get_dtype())  # type: ignore
