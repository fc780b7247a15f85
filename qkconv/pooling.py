import logging
from itertools import product

import numpy as np

from qkconv.errors import DimensionOverflow, EmptyPoolingStack, ShapeMismatch
from qkconv.layer import Layer
from qkconv.parallel import parallel_for
from qkconv.tensor import as_float

logger = logging.getLogger(__name__)

_STATE_FIELDS = (
    "kernel_width", "kernel_height", "stride_width", "stride_height",
    "batch_size", "floor", "input_width", "input_height",
    "output_width", "output_height",
)


def pool_out_size(size, kernel_size, stride, floor=True):
    """
    Number of pooling windows along one axis.

    In ceil mode the last window may run past the input, but it always
    starts inside it.
    """
    if floor:
        return (size - kernel_size) // stride + 1
    out = -((kernel_size - size) // stride) + 1
    if (out - 1) * stride >= size:
        out -= 1
    return out


class PoolingContext:
    """
    Record of one training-mode forward call, consumed by exactly one backward.

    ``indices`` holds, per output cell, the row-major flat index of the
    maximum within its input slice.
    """

    def __init__(self, indices, input_shape, slice_shape, batch_size):
        self.indices = indices
        self.input_shape = input_shape
        self.slice_shape = slice_shape
        self.batch_size = batch_size
        self.consumed = False


class MaxPooling(Layer):
    """Max pooling layer that routes gradients to the recorded maxima."""

    def __init__(self, kernel_width, kernel_height=None, stride_width=1, stride_height=None,
                 floor=True, input_width=0, input_height=0):
        super().__init__()
        self.kernel_width = kernel_width
        self.kernel_height = kernel_width if kernel_height is None else kernel_height
        self.stride_width = stride_width
        self.stride_height = stride_width if stride_height is None else stride_height
        if self.stride_width < 1 or self.stride_height < 1:
            raise ValueError(f"Strides must be >= 1, got ({self.stride_width}, {self.stride_height})")
        self.floor = floor
        self.input_width = input_width
        self.input_height = input_height
        self.output_width = 0
        self.output_height = 0
        self.batch_size = 0
        self.in_size = 0
        self._stack = []

    @property
    def pending(self):
        """Number of forward contexts still waiting for their backward."""
        return len(self._stack)

    def _input_cube(self, x):
        x = np.ascontiguousarray(as_float(x))
        if x.ndim == 4:
            batch_size, channels, height, width = x.shape
            self.input_height, self.input_width = height, width
        elif x.ndim == 2 and x.shape[0] > 0 and self.input_width > 0 and self.input_height > 0:
            batch_size = x.shape[0]
            height, width = self.input_height, self.input_width
            channels, remainder = divmod(x.size, batch_size * height * width)
            if remainder or channels == 0:
                raise ShapeMismatch(
                    f"Input of shape {x.shape} is not a whole number of {height}x{width} slices")
        else:
            raise ShapeMismatch(
                f"Expected (batch, channels, height, width) input or a flat input with "
                f"configured input size, got shape {x.shape}")
        if batch_size == 0:
            raise ShapeMismatch("Cannot pool an empty batch")
        return x.reshape(batch_size * channels, height, width), batch_size, channels

    def _pool_slice(self, _input, output, indices):
        out_h, out_w = output.shape
        height, width = _input.shape
        need_h = (out_h - 1) * self.stride_height + self.kernel_height
        need_w = (out_w - 1) * self.stride_width + self.kernel_width
        if need_h > height or need_w > width:
            # Ceil mode: cells past the input are absent, never the maximum.
            padded = np.full((max(need_h, height), max(need_w, width)), -np.inf, dtype=_input.dtype)
            padded[:height, :width] = _input
            _input = padded

        row_span = (out_h - 1) * self.stride_height + 1
        col_span = (out_w - 1) * self.stride_width + 1
        base = (np.arange(out_h)[:, None] * self.stride_height * width
                + np.arange(out_w)[None, :] * self.stride_width)

        output[...] = _input[0:row_span:self.stride_height, 0:col_span:self.stride_width]
        if indices is not None:
            indices[...] = base

        # Row-major scan, strict comparison: the first maximum wins ties.
        for ki, kj in product(range(self.kernel_height), range(self.kernel_width)):
            if ki == 0 and kj == 0:
                continue
            window = _input[ki:ki + row_span:self.stride_height, kj:kj + col_span:self.stride_width]
            better = window > output
            np.copyto(output, window, where=better)
            if indices is not None:
                np.copyto(indices, base + (ki * width + kj), where=better)

    def _forward(self, x):
        inputs, batch_size, channels = self._input_cube(x)
        height, width = inputs.shape[1:]
        out_h = pool_out_size(height, self.kernel_height, self.stride_height, self.floor)
        out_w = pool_out_size(width, self.kernel_width, self.stride_width, self.floor)
        if out_h <= 0 or out_w <= 0:
            raise DimensionOverflow(
                f"Pooling window {self.kernel_width}x{self.kernel_height} exceeds input {width}x{height}")

        depth = inputs.shape[0]
        output = np.empty((depth, out_h, out_w), dtype=inputs.dtype)
        indices = None if self.deterministic else np.empty((depth, out_h, out_w), dtype=np.intp)

        def pool(s):
            self._pool_slice(inputs[s], output[s], None if indices is None else indices[s])

        parallel_for(depth, pool)

        self.output_height, self.output_width = out_h, out_w
        self.batch_size = batch_size
        self.in_size = channels

        context = None
        if not self.deterministic:
            context = PoolingContext(indices, np.shape(x), (height, width), batch_size)
            self._stack.append(context)

        logger.debug("MaxPooling forward: %d slices %dx%d -> %dx%d, %d pending",
                     depth, height, width, out_h, out_w, len(self._stack))
        return output.reshape(batch_size, channels, out_h, out_w), context

    def forward(self, x):
        """
        Args:
            x: Input of shape (batch, channels, height, width), or
               (batch, channels * height * width) with input_width/input_height set

        Returns:
            Output of shape (batch, channels, out_height, out_width)
        """
        output, _ = self._forward(x)
        return output

    def forward_with_context(self, x):
        """Forward pass that also hands back the context for ``backward``."""
        if self.deterministic:
            raise RuntimeError("No pooling context is recorded in inference mode")
        return self._forward(x)

    def backward(self, grad_output, context=None):
        """
        Backward pass.

        Args:
            grad_output: Gradient with respect to the output of the matching forward
            context (PoolingContext): Handle of that forward, defaults to the
                most recent pending one

        Returns:
            grad_input: Gradient with respect to the input, shaped like it
        """
        if context is None:
            if not self._stack:
                raise EmptyPoolingStack("MaxPooling.backward called without a pending forward")
            context = self._stack[-1]
        elif context.consumed or all(c is not context for c in self._stack):
            raise EmptyPoolingStack("Pooling context was already consumed")

        depth, out_h, out_w = context.indices.shape
        errors = np.ascontiguousarray(as_float(grad_output))
        if errors.size != depth * out_h * out_w or errors.shape[0] != context.batch_size:
            raise ShapeMismatch(
                f"Output gradient of shape {errors.shape} does not match pooled output "
                f"({context.batch_size} items, {depth} slices of {out_h}x{out_w})")

        self._stack = [c for c in self._stack if c is not context]
        context.consumed = True

        height, width = context.slice_shape
        errors = errors.reshape(depth, out_h * out_w)
        flat_indices = context.indices.reshape(depth, out_h * out_w)
        grad_input = np.zeros((depth, height * width), dtype=errors.dtype)

        def unpool(s):
            np.add.at(grad_input[s], flat_indices[s], errors[s])

        parallel_for(depth, unpool)

        logger.debug("MaxPooling backward: %d pending", len(self._stack))
        return grad_input.reshape(context.input_shape)

    def state_dict(self):
        return {name: getattr(self, name) for name in _STATE_FIELDS}

    def load_state_dict(self, state):
        for name in _STATE_FIELDS:
            setattr(self, name, state[name])
