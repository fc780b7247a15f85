"""
Tensor views shared by the layers.

A cube is a C-ordered ``(depth, height, width)`` array. The depth axis packs
channel and batch as ``depth = channel + batch * channels``, so one batch item
of a flat ``(batch, channels * height * width)`` buffer maps onto
``channels`` consecutive slices without copying.
"""
import numpy as np

from qkconv.errors import ShapeMismatch


def as_float(array):
    """Return ``array`` as a floating point ndarray, copying only if needed."""
    array = np.asarray(array)
    if not np.issubdtype(array.dtype, np.floating):
        array = array.astype(np.float64)
    return array


def as_cube(array, width, height, channels):
    """
    View a batched buffer as a ``(batch * channels, height, width)`` cube.

    Args:
        array (np.array): Input of shape (batch, ...) holding
            ``channels * height * width`` elements per batch item.
        width (int): Spatial width of one slice.
        height (int): Spatial height of one slice.
        channels (int): Slices per batch item.

    Returns:
        tuple: The cube view and the batch size.
    """
    array = np.ascontiguousarray(as_float(array))
    if array.ndim < 2 or array.shape[0] == 0:
        raise ShapeMismatch(f"Expected a batched input (batch, ...), got shape {array.shape}")

    batch_size = array.shape[0]
    per_item = channels * height * width
    if width <= 0 or height <= 0 or array.size != batch_size * per_item:
        raise ShapeMismatch(
            f"Input of shape {array.shape} does not hold {batch_size} x "
            f"({channels} channels x {height} x {width})")

    return array.reshape(batch_size * channels, height, width), batch_size


def cube_index(channel, batch, channels):
    """Depth index of ``channel`` within batch item ``batch``."""
    return channel + batch * channels


class ParameterBuffer:
    """
    Flat parameter buffer with a filter bank view and a bias view.

    The buffer holds ``out * in * kernel_height * kernel_width`` filter
    weights followed by ``out`` bias scalars. ``weight`` has shape
    ``(out * in, kernel_height, kernel_width)``; slice ``o * in + i`` maps
    input channel ``i`` to output channel ``o``. Both views alias ``data``.
    """

    def __init__(self, in_channels, out_channels, kernel_width, kernel_height, dtype=np.float64):
        self.in_channels = in_channels
        self.out_channels = out_channels
        self.filter_shape = (out_channels * in_channels, kernel_height, kernel_width)
        self.weight_size = out_channels * in_channels * kernel_width * kernel_height
        self.size = self.weight_size + out_channels
        self.bind(np.zeros(self.size, dtype=dtype))

    def bind(self, buffer):
        """Use ``buffer`` as the backing storage and rebuild the views."""
        buffer = np.ascontiguousarray(as_float(buffer))
        if buffer.ndim != 1 or buffer.size != self.size:
            raise ShapeMismatch(
                f"Parameter buffer must be flat with {self.size} elements, got shape {buffer.shape}")

        self.data = buffer
        self.weight = buffer[:self.weight_size].reshape(self.filter_shape)
        self.bias = buffer[self.weight_size:]
        assert np.shares_memory(self.weight, self.data)
        assert np.shares_memory(self.bias, self.data)

    def filter(self, out_channel, in_channel):
        return self.weight[out_channel * self.in_channels + in_channel]

    def filters(self):
        """All filter slices, materialised once for use inside parallel regions."""
        return [self.weight[i] for i in range(self.weight.shape[0])]

    def zeros_like(self):
        """Fresh buffer with the same layout, used for gradients."""
        gradient = ParameterBuffer(
            self.in_channels, self.out_channels,
            self.filter_shape[2], self.filter_shape[1], dtype=self.data.dtype)
        return gradient

    def __len__(self):
        return self.size
