from .conv2d import BorderMode, convolve, convolve2d, rotate180
from .convolutional import Convolution
from .errors import (
    ConvolutionError,
    DimensionOverflow,
    EmptyPoolingStack,
    InvalidPadding,
    ShapeMismatch,
)
from .padding import Padding
from .pooling import MaxPooling, PoolingContext

__all__ = [
    "BorderMode",
    "convolve",
    "convolve2d",
    "rotate180",
    "Convolution",
    "MaxPooling",
    "PoolingContext",
    "Padding",
    "ConvolutionError",
    "DimensionOverflow",
    "EmptyPoolingStack",
    "InvalidPadding",
    "ShapeMismatch",
]
