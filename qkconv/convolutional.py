import logging

import numpy as np

from qkconv.conv2d import BorderMode, convolve2d, rotate180
from qkconv.errors import DimensionOverflow, InvalidPadding, ShapeMismatch
from qkconv.layer import Layer
from qkconv.padding import Padding
from qkconv.parallel import parallel_for
from qkconv.tensor import ParameterBuffer, as_cube, as_float, cube_index

logger = logging.getLogger(__name__)

_STATE_FIELDS = (
    "in_channels", "out_channels", "batch_size",
    "kernel_width", "kernel_height", "stride_width", "stride_height",
    "pad_w_left", "pad_w_right", "pad_h_top", "pad_h_bottom",
    "input_width", "input_height", "output_width", "output_height",
)


def conv_out_size(size, kernel_size, stride, pad_before, pad_after):
    """O = (W - F + P_before + P_after) / S + 1"""
    return (size + pad_before + pad_after - kernel_size) // stride + 1


def _pad_pair(pad, name):
    if isinstance(pad, (int, np.integer)):
        return int(pad), int(pad)
    pad = tuple(pad)
    if len(pad) != 2:
        raise InvalidPadding(f"{name} must be an int or a (before, after) pair, got {pad}")
    return int(pad[0]), int(pad[1])


def _accumulate_overlap(target, result):
    """Add the top-left overlap of ``result`` and ``target`` into ``target``."""
    rows = min(target.shape[0], result.shape[0])
    cols = min(target.shape[1], result.shape[1])
    target[:rows, :cols] += result[:rows, :cols]


class Convolution(Layer):
    """
    2D convolution over batched multi-channel input with manual backprop.

    Inputs are ``(batch, in_channels, height, width)`` arrays or flat
    ``(batch, in_channels * height * width)`` buffers. Internally every
    tensor is a cube of slices with ``depth = channel + batch * channels``.
    """

    def __init__(self, in_channels, out_channels, kernel_width, kernel_height=None,
                 stride_width=1, stride_height=None, pad_w=0, pad_h=None,
                 input_width=0, input_height=0, padding_type="none", seed=None,
                 dtype=np.float64):
        """
        Args:
            in_channels (int): Number of input channels.
            out_channels (int): Number of output channels.
            kernel_width (int): Filter width.
            kernel_height (int): Filter height, defaults to ``kernel_width``.
            stride_width (int): Stride along the width.
            stride_height (int): Stride along the height, defaults to ``stride_width``.
            pad_w (int or tuple): Width padding, symmetric or (left, right).
            pad_h (int or tuple): Height padding, symmetric or (top, bottom),
                defaults to ``pad_w``.
            input_width (int): Input width, 0 to take it from the first 4D input.
            input_height (int): Input height, 0 to take it from the first 4D input.
            padding_type (str): "valid", "same" or "none" to keep the explicit padding.
            seed (int or np.random.Generator): Seed for the weight initialisation.
            dtype: Parameter dtype.
        """
        super().__init__()
        self.in_channels = in_channels
        self.out_channels = out_channels
        self.kernel_width = kernel_width
        self.kernel_height = kernel_width if kernel_height is None else kernel_height
        self.stride_width = stride_width
        self.stride_height = stride_width if stride_height is None else stride_height
        if self.stride_width < 1 or self.stride_height < 1:
            raise ValueError(f"Strides must be >= 1, got ({self.stride_width}, {self.stride_height})")

        self.pad_w_left, self.pad_w_right = _pad_pair(pad_w, "pad_w")
        self.pad_h_top, self.pad_h_bottom = _pad_pair(pad_w if pad_h is None else pad_h, "pad_h")
        self.input_width = input_width
        self.input_height = input_height
        self.output_width = 0
        self.output_height = 0
        self.batch_size = 0

        padding_type = (padding_type or "none").lower()
        if padding_type == "valid":
            self.pad_w_left = self.pad_w_right = self.pad_h_top = self.pad_h_bottom = 0
        elif padding_type == "same":
            self._initialize_same_padding()
        elif padding_type != "none":
            raise InvalidPadding(f"Unknown padding type {padding_type!r}")

        self.padding = Padding(self.pad_w_left, self.pad_w_right, self.pad_h_top, self.pad_h_bottom)

        # He initialization
        fan_in = in_channels * self.kernel_width * self.kernel_height
        std = np.sqrt(2.0 / fan_in)
        rng = np.random.default_rng(seed)
        self._parameters = ParameterBuffer(in_channels, out_channels,
                                           self.kernel_width, self.kernel_height, dtype=dtype)
        self._parameters.weight[...] = rng.standard_normal(self._parameters.filter_shape) * std

        logger.debug("Convolution %d -> %d, kernel %dx%d, stride %dx%d, %r",
                     in_channels, out_channels, self.kernel_width, self.kernel_height,
                     self.stride_width, self.stride_height, self.padding)

    def _initialize_same_padding(self):
        """
        Solve O = (W - F + 2P) / S + 1 for O = W.
        """
        if self.input_width == 0 or self.input_height == 0:
            logger.warning("'same' padding resolved without an input size, "
                           "only the kernel size is taken into account")
        total_w = (self.stride_width - 1) * self.input_width + self.kernel_width - self.stride_width
        total_h = (self.stride_height - 1) * self.input_height + self.kernel_height - self.stride_height
        if total_w < 0 or total_h < 0:
            raise InvalidPadding(
                f"'same' padding would be negative ({total_w}, {total_h}) for kernel "
                f"{self.kernel_width}x{self.kernel_height} and stride "
                f"{self.stride_width}x{self.stride_height}")

        self.pad_w_left = total_w // 2
        self.pad_w_right = total_w - total_w // 2
        self.pad_h_top = total_h // 2
        self.pad_h_bottom = total_h - total_h // 2

    def weight_size(self):
        return self._parameters.size

    @property
    def parameters(self):
        """Flat buffer: filters followed by one bias per output channel."""
        return self._parameters.data

    @parameters.setter
    def parameters(self, buffer):
        self._parameters.bind(buffer)

    @property
    def weight(self):
        return self._parameters.weight

    @property
    def bias(self):
        return self._parameters.bias

    def _input_cube(self, x):
        x = as_float(x)
        if x.ndim == 4:
            _, channels, height, width = x.shape
            if channels != self.in_channels:
                raise ShapeMismatch(f"Expected {self.in_channels} input channels, got {channels}")
            if self.input_width == 0 and self.input_height == 0:
                self.input_width, self.input_height = width, height
            elif (height, width) != (self.input_height, self.input_width):
                raise ShapeMismatch(
                    f"Expected {self.input_height}x{self.input_width} inputs, got {height}x{width}")
        return as_cube(x, self.input_width, self.input_height, self.in_channels)

    def _output_cube(self, grad_output, batch_size):
        errors, error_batch = as_cube(grad_output, self.output_width, self.output_height,
                                      self.out_channels)
        if error_batch != batch_size:
            raise ShapeMismatch(
                f"Output gradient holds {error_batch} items, input holds {batch_size}")
        return errors

    def _check_batch(self, batch_size):
        if self.batch_size == 0:
            raise ShapeMismatch("backward/gradient called before forward")
        if batch_size != self.batch_size:
            raise ShapeMismatch(
                f"Batch size {batch_size} differs from the preceding forward ({self.batch_size})")

    def _pad(self, inputs):
        height, width = self.padding.padded_shape(*inputs.shape[1:])
        padded = np.empty((inputs.shape[0], height, width), dtype=inputs.dtype)

        def pad_slice(i):
            self.padding.forward_into(inputs[i], padded[i])

        parallel_for(inputs.shape[0], pad_slice)
        return padded

    def forward(self, x):
        """
        Forward pass.

        Args:
            x: Input of shape (batch, in_channels, height, width) or
               (batch, in_channels * height * width)

        Returns:
            Output of shape (batch, out_channels, out_height, out_width)
        """
        inputs, batch_size = self._input_cube(x)
        if not self.padding.is_zero:
            inputs = self._pad(inputs)

        out_width = conv_out_size(self.input_width, self.kernel_width, self.stride_width,
                                  self.pad_w_left, self.pad_w_right)
        out_height = conv_out_size(self.input_height, self.kernel_height, self.stride_height,
                                   self.pad_h_top, self.pad_h_bottom)
        if out_width <= 0 or out_height <= 0:
            raise DimensionOverflow(
                f"Kernel {self.kernel_width}x{self.kernel_height} exceeds padded input "
                f"{inputs.shape[2]}x{inputs.shape[1]}")

        in_c, out_c = self.in_channels, self.out_channels
        output = np.zeros((out_c * batch_size, out_height, out_width),
                          dtype=np.result_type(inputs, self._parameters.data))

        # Filter views are built here, never inside the parallel region.
        filters = self._parameters.filters()
        bias = self._parameters.bias

        def output_map(out_map):
            out_channel = out_map % out_c
            batch = out_map // out_c
            current = output[out_map]
            for in_channel in range(in_c):
                convolve2d(inputs[cube_index(in_channel, batch, in_c)],
                           filters[out_channel * in_c + in_channel],
                           self.stride_width, self.stride_height,
                           output=current, accumulate=True)
            current += bias[out_channel]

        parallel_for(out_c * batch_size, output_map)

        self.output_width = out_width
        self.output_height = out_height
        self.batch_size = batch_size
        logger.debug("Convolution forward: %d items -> %dx%dx%d",
                     batch_size, out_c, out_height, out_width)
        return output.reshape(batch_size, out_c, out_height, out_width)

    def backward(self, x, grad_output):
        """
        Backward pass.

        Args:
            x: The input given to the matching forward
            grad_output: Gradient of shape (batch, out_channels, out_height, out_width)

        Returns:
            grad_input: Gradient with respect to input, shaped like x
        """
        x = as_float(x)
        _, batch_size = self._input_cube(x)
        self._check_batch(batch_size)
        errors = self._output_cube(grad_output, batch_size)

        in_c, out_c = self.in_channels, self.out_channels
        grad_input = np.zeros((in_c * batch_size, self.input_height, self.input_width),
                              dtype=np.result_type(errors, self._parameters.data))

        for out_channel in range(out_c):
            for in_channel in range(in_c):
                rotated = rotate180(self._parameters.filter(out_channel, in_channel))

                def batch_item(batch):
                    full = convolve2d(errors[cube_index(out_channel, batch, out_c)], rotated,
                                      self.stride_width, self.stride_height, mode=BorderMode.FULL)
                    # Crop to the unpadded region; cells the result does not
                    # reach received no contribution in forward.
                    region = full[self.pad_h_top:self.pad_h_top + self.input_height,
                                  self.pad_w_left:self.pad_w_left + self.input_width]
                    target = grad_input[cube_index(in_channel, batch, in_c)]
                    target[:region.shape[0], :region.shape[1]] += region

                parallel_for(batch_size, batch_item)

        logger.debug("Convolution backward: %d items", batch_size)
        return grad_input.reshape(x.shape)

    def gradient(self, x, grad_output):
        """
        Gradient with respect to the parameters.

        Args:
            x: The input given to the matching forward
            grad_output: Gradient of shape (batch, out_channels, out_height, out_width)

        Returns:
            Flat gradient laid out like ``parameters``
        """
        inputs, batch_size = self._input_cube(x)
        self._check_batch(batch_size)
        errors = self._output_cube(grad_output, batch_size)
        if not self.padding.is_zero:
            inputs = self._pad(inputs)

        in_c, out_c = self.in_channels, self.out_channels
        gradient = self._parameters.zeros_like()
        grad_filters = gradient.filters()
        grad_bias = gradient.bias

        def output_channel(out_channel):
            for in_channel in range(in_c):
                current = grad_filters[out_channel * in_c + in_channel]
                for batch in range(batch_size):
                    # Output-gradient taps sit one stride apart on the input.
                    result = convolve2d(inputs[cube_index(in_channel, batch, in_c)],
                                        errors[cube_index(out_channel, batch, out_c)],
                                        dilation_width=self.stride_width,
                                        dilation_height=self.stride_height)
                    _accumulate_overlap(current, result)
            grad_bias[out_channel] = errors[out_channel::out_c].sum()

        parallel_for(out_c, output_channel)

        logger.debug("Convolution gradient: %d items", batch_size)
        return gradient.data

    def state_dict(self):
        state = {name: getattr(self, name) for name in _STATE_FIELDS}
        state["padding"] = self.padding.state_dict()
        state["parameters"] = self._parameters.data.copy()
        return state

    def load_state_dict(self, state):
        for name in _STATE_FIELDS:
            setattr(self, name, state[name])
        self.padding = Padding()
        self.padding.load_state_dict(state["padding"])
        self._parameters = ParameterBuffer(self.in_channels, self.out_channels,
                                           self.kernel_width, self.kernel_height,
                                           dtype=np.asarray(state["parameters"]).dtype)
        self._parameters.bind(np.array(state["parameters"], copy=True))
