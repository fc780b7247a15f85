"""Exceptions raised by the convolution kernel and layers."""


class ConvolutionError(Exception):
    """Base class for every error raised by qkconv."""


class ShapeMismatch(ConvolutionError, ValueError):
    """A tensor's size does not agree with the configured dimensions."""


class InvalidPadding(ConvolutionError, ValueError):
    """Padding is negative or names an unknown padding policy."""


class DimensionOverflow(ConvolutionError, ValueError):
    """The (dilated) kernel is larger than the padded input."""


class EmptyPoolingStack(ConvolutionError, RuntimeError):
    """Pooling backward was called without a pending forward context."""
