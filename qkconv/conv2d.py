"""
Direct 2D convolution with stride, dilation and valid/full border modes.

All routines compute a cross-correlation: the filter is not flipped, each
output cell is the dot product of the filter with a dilated, strided window of
the input. Layers flip the filter themselves (``rotate180``) where a true
convolution is needed.

Arrays are indexed ``[row, column]``, i.e. ``[height, width]``.
"""
import logging
from enum import Enum

import numpy as np

from qkconv.config import get_column_parallel_threshold, get_num_threads
from qkconv.errors import DimensionOverflow, ShapeMismatch
from qkconv.parallel import in_parallel_region, parallel_for
from qkconv.tensor import as_float

logger = logging.getLogger(__name__)


class BorderMode(Enum):
    VALID = "valid"
    FULL = "full"


def valid_output_size(input_size, filter_size, stride=1, dilation=1):
    """Output length of a valid convolution along one axis."""
    return (input_size - (filter_size - 1) * dilation - 1) // stride + 1


def full_padded_size(input_size, filter_size, stride=1, dilation=1):
    """
    Extent of the zero-padded buffer a full convolution runs over.

    The input is padded by ``(filter_size - 1) * dilation`` on both sides and
    its cells are placed ``stride`` apart. The extent is then grown by the
    smallest ``i < stride`` whose residue modulo the stride reproduces itself,
    so that the extent stays consistent with the strided placement.
    """
    border = 2 * (filter_size - 1) * dilation
    size = (input_size - 1) * stride + border + 1
    for i in range(stride):
        if (i + size - border - 1) % stride == i:
            return size + i
    return size


def full_output_size(input_size, filter_size, stride=1, dilation=1):
    """Output length of a full convolution along one axis."""
    padded = full_padded_size(input_size, filter_size, stride, dilation)
    return valid_output_size(padded, filter_size, 1, dilation)


def rotate180(kernel):
    """Flip a 2D filter along both axes."""
    return np.ascontiguousarray(kernel[::-1, ::-1])


def _check_step(name, value):
    if int(value) < 1:
        raise ValueError(f"{name} must be >= 1, got {value}")
    return int(value)


def _embed_full(_input, filter_shape, stride_height, stride_width, dilation_height, dilation_width):
    """Zero-pad ``_input`` for a full convolution, spacing its cells by the stride."""
    input_h, input_w = _input.shape
    filter_h, filter_w = filter_shape
    top = (filter_h - 1) * dilation_height
    left = (filter_w - 1) * dilation_width

    rows = full_padded_size(input_h, filter_h, stride_height, dilation_height)
    cols = full_padded_size(input_w, filter_w, stride_width, dilation_width)
    padded = np.zeros((rows, cols), dtype=_input.dtype)
    padded[top:top + (input_h - 1) * stride_height + 1:stride_height,
           left:left + (input_w - 1) * stride_width + 1:stride_width] = _input
    return padded


def _correlate_columns(_input, _kernel, output, start, stop,
                       stride_height, stride_width, dilation_height, dilation_width):
    """Accumulate the valid-mode correlation into ``output[:, start:stop]``."""
    out_h = output.shape[0]
    n_cols = stop - start
    kernel_h, kernel_w = _kernel.shape
    target = output[:, start:stop]

    for ki in range(kernel_h):
        row = ki * dilation_height
        rows = slice(row, row + (out_h - 1) * stride_height + 1, stride_height)
        for kj in range(kernel_w):
            col = kj * dilation_width + start * stride_width
            cols = slice(col, col + (n_cols - 1) * stride_width + 1, stride_width)
            target += _kernel[ki, kj] * _input[rows, cols]


def convolve2d(_input, _kernel, stride_width=1, stride_height=1,
               dilation_width=1, dilation_height=1,
               mode=BorderMode.VALID, output=None, accumulate=False):
    """
    Performs a 2D convolution of a single slice.

    Args:
        _input (np.array): The input 2D slice (height, width).
        _kernel (np.array): The 2D filter (kernel_height, kernel_width).
        stride_width (int): Stride along the columns.
        stride_height (int): Stride along the rows.
        dilation_width (int): Spacing between filter taps along the columns.
        dilation_height (int): Spacing between filter taps along the rows.
        mode (BorderMode): VALID or FULL.
        output (np.array): Optional destination of the exact output shape.
        accumulate (bool): Add into ``output`` instead of overwriting it.

    Returns:
        np.array: The convolved output.
    """
    mode = BorderMode(mode)
    _input = as_float(_input)
    _kernel = as_float(_kernel)
    if _input.ndim != 2 or _kernel.ndim != 2:
        raise ShapeMismatch(f"convolve2d expects 2D operands, got {_input.shape} and {_kernel.shape}")

    stride_width = _check_step("stride_width", stride_width)
    stride_height = _check_step("stride_height", stride_height)
    dilation_width = _check_step("dilation_width", dilation_width)
    dilation_height = _check_step("dilation_height", dilation_height)

    if mode is BorderMode.FULL:
        _input = _embed_full(_input, _kernel.shape, stride_height, stride_width,
                             dilation_height, dilation_width)
        stride_width = stride_height = 1

    out_h = valid_output_size(_input.shape[0], _kernel.shape[0], stride_height, dilation_height)
    out_w = valid_output_size(_input.shape[1], _kernel.shape[1], stride_width, dilation_width)
    if out_h <= 0 or out_w <= 0:
        raise DimensionOverflow(
            f"Filter {_kernel.shape} with dilation ({dilation_height}, {dilation_width}) "
            f"does not fit input {_input.shape}")

    if output is None:
        output = np.zeros((out_h, out_w), dtype=np.result_type(_input, _kernel))
    elif output.shape != (out_h, out_w):
        raise ShapeMismatch(f"Output has shape {output.shape}, expected {(out_h, out_w)}")
    elif not accumulate:
        output.fill(0)

    steps = (stride_height, stride_width, dilation_height, dilation_width)
    workers = min(get_num_threads(), out_w)
    if (workers > 1 and _input.shape[1] >= get_column_parallel_threshold()
            and not in_parallel_region()):
        # Contiguous column blocks, one per worker.
        bounds = np.linspace(0, out_w, workers + 1).astype(int)

        def block(b):
            _correlate_columns(_input, _kernel, output, bounds[b], bounds[b + 1], *steps)

        parallel_for(workers, block)
    else:
        _correlate_columns(_input, _kernel, output, 0, out_w, *steps)

    return output


def convolve(_input, _kernel, stride_width=1, stride_height=1,
             dilation_width=1, dilation_height=1, mode=BorderMode.VALID):
    """
    Convolve 2D or 3D operands slice by slice.

    (2D, 2D) is a plain ``convolve2d``. (3D, 3D) pairs slice ``i`` of the
    input with slice ``i`` of the filter. (2D, 3D) and (3D, 2D) broadcast the
    2D operand against every slice of the 3D one. 3D results have the depth of
    the 3D operand.
    """
    _input = as_float(_input)
    _kernel = as_float(_kernel)
    steps = dict(stride_width=stride_width, stride_height=stride_height,
                 dilation_width=dilation_width, dilation_height=dilation_height, mode=mode)

    if _input.ndim == 2 and _kernel.ndim == 2:
        return convolve2d(_input, _kernel, **steps)

    if _input.ndim == 3 and _kernel.ndim == 3:
        if _input.shape[0] != _kernel.shape[0]:
            raise ShapeMismatch(
                f"Slice counts differ: input {_input.shape[0]}, filter {_kernel.shape[0]}")
        depth = _input.shape[0]

        def pair(i):
            return _input[i], _kernel[i]
    elif _input.ndim == 2 and _kernel.ndim == 3:
        depth = _kernel.shape[0]

        def pair(i):
            return _input, _kernel[i]
    elif _input.ndim == 3 and _kernel.ndim == 2:
        depth = _input.shape[0]

        def pair(i):
            return _input[i], _kernel
    else:
        raise ShapeMismatch(f"Unsupported operand ranks {_input.ndim} and {_kernel.ndim}")

    if depth == 0:
        raise ShapeMismatch("Cannot convolve an empty cube")

    # The first slice fixes the output size of the cube.
    first = convolve2d(*pair(0), **steps)
    output = np.empty((depth,) + first.shape, dtype=first.dtype)
    output[0] = first

    def body(i):
        convolve2d(*pair(i + 1), output=output[i + 1], **steps)

    parallel_for(depth - 1, body)
    return output
